"""Crowd group membership lookups."""
from __future__ import annotations
from typing import FrozenSet, Union

from ..models import NotFound
from .client import CrowdClient, json_body
from .transformer import CrowdTransformer


class GroupService:
    """Service for reading Crowd group memberships."""

    def __init__(self, client: CrowdClient):
        self.client = client

    def fetch_groups(self, username: str) -> Union[FrozenSet[str], NotFound]:
        """Return the names of the groups the user is a *direct* member of.

        Nested group memberships are not expanded.

        Args:
            username: Crowd username

        Returns:
            Set of group names, or NotFound
        """
        path = "/1/user/group/direct"
        resp = self.client.get(path, params={"username": username})
        if resp.status_code != 200:
            return NotFound("groups", resp.status_code)
        return CrowdTransformer.group_names(json_body(resp), path)
