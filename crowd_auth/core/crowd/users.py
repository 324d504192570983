"""Crowd user lookups."""
from __future__ import annotations
import logging
from typing import Union

from ..models import NotFound, RemoteIdentity
from .client import CrowdClient, json_body
from .groups import GroupService
from .transformer import CrowdTransformer

logger = logging.getLogger(__name__)


class UserService:
    """Service for reading Crowd users."""

    def __init__(self, client: CrowdClient, groups: GroupService | None = None):
        """Initialize user service.

        Args:
            client: Crowd client authenticated as the application
            groups: Group service used to merge memberships (built from client if omitted)
        """
        self.client = client
        self.groups = groups or GroupService(client)

    def user_exists(self, username: str) -> bool:
        """Return True when Crowd answers 200 for the username."""
        resp = self.client.get("/1/user", params={"username": username})
        return resp.status_code == 200

    def fetch_identity(self, username: str) -> Union[RemoteIdentity, NotFound]:
        """Fetch the user with expanded attributes and merge direct groups.

        A user whose groups cannot be fetched is still returned, with an
        empty group set.

        Args:
            username: Crowd username

        Returns:
            RemoteIdentity, or NotFound when the user lookup fails
        """
        path = "/1/user"
        resp = self.client.get(path, params={"username": username, "expand": "attributes"})
        if resp.status_code != 200:
            return NotFound("user", resp.status_code)

        payload = json_body(resp)
        groups = self.groups.fetch_groups(username)
        if isinstance(groups, NotFound):
            logger.info(f"No direct groups available for '{username}' (status {groups.status_code})")
            groups = frozenset()
        return CrowdTransformer.user_to_identity(payload, groups, endpoint=path)
