"""Crowd REST ↔ domain transformations.

Crowd answers with loosely-typed JSON. Everything coming off the wire is
funnelled through ``CrowdTransformer`` so that a malformed payload fails here,
with the endpoint in the error, instead of leaking half-populated objects into
reconciliation.

Usage:
    # Crowd user JSON → RemoteIdentity
    identity = CrowdTransformer.user_to_identity(payload, groups, endpoint="/1/user")

    # Credentials → POST /1/session body
    body = CrowdTransformer.authentication_request(credentials, "10.0.0.5")
"""
from __future__ import annotations
from typing import Any, Dict, FrozenSet, Iterable, Optional

from .exceptions import MalformedResponseError
from ..models import Credentials, RemoteIdentity

REMOTE_ADDRESS_FACTOR = "remote_address"


def _required_str(payload: Dict[str, Any], name: str, endpoint: str) -> str:
    value = payload.get(name)
    if not isinstance(value, str) or not value.strip():
        raise MalformedResponseError(endpoint, f"missing or empty '{name}'")
    return value


def _optional_str(payload: Dict[str, Any], name: str) -> str:
    value = payload.get(name)
    return value if isinstance(value, str) else ""


class CrowdTransformer:
    """Explicit mapping between Crowd JSON documents and domain types."""

    @staticmethod
    def validation_factors(source_ip: str) -> Dict[str, Any]:
        """Build the validation-factor block binding a session to an IP."""
        return {
            "validationFactors": [
                {"name": REMOTE_ADDRESS_FACTOR, "value": source_ip},
            ]
        }

    @staticmethod
    def authentication_request(credentials: Credentials, source_ip: str) -> Dict[str, Any]:
        """Build the POST /1/session body."""
        return {
            "username": credentials.username,
            "password": credentials.password,
            "validation-factors": CrowdTransformer.validation_factors(source_ip),
        }

    @staticmethod
    def session_token(payload: Dict[str, Any], endpoint: str) -> str:
        return _required_str(payload, "token", endpoint)

    @staticmethod
    def session_username(payload: Dict[str, Any], endpoint: str) -> str:
        """Return ``user.name`` from a session document."""
        user = payload.get("user")
        if not isinstance(user, dict):
            raise MalformedResponseError(endpoint, "missing 'user' object")
        return _required_str(user, "name", endpoint)

    @staticmethod
    def attributes(payload: Dict[str, Any]) -> Dict[str, str]:
        """Flatten ``attributes.attributes[{name, values}]`` to name → first value.

        Attributes without values are skipped.
        """
        block = payload.get("attributes")
        if not isinstance(block, dict):
            return {}
        flattened: Dict[str, str] = {}
        for attribute in block.get("attributes") or []:
            if not isinstance(attribute, dict):
                continue
            name = attribute.get("name")
            values = attribute.get("values") or []
            if isinstance(name, str) and values:
                flattened[name] = str(values[0])
        return flattened

    @staticmethod
    def group_names(payload: Dict[str, Any], endpoint: str) -> FrozenSet[str]:
        """Extract the set of group names from a ``{"groups": [{"name": ...}]}`` document."""
        groups = payload.get("groups")
        if not isinstance(groups, list):
            raise MalformedResponseError(endpoint, "missing 'groups' list")
        names = set()
        for group in groups:
            if not isinstance(group, dict):
                raise MalformedResponseError(endpoint, "group entry is not an object")
            names.add(_required_str(group, "name", endpoint))
        return frozenset(names)

    @staticmethod
    def user_to_identity(
        payload: Dict[str, Any],
        groups: Optional[Iterable[str]] = None,
        endpoint: str = "/1/user",
    ) -> RemoteIdentity:
        """Convert a Crowd user document into a RemoteIdentity.

        Args:
            payload: JSON from GET /1/user?expand=attributes
            groups: Direct group names fetched separately
            endpoint: Endpoint used in error messages

        Returns:
            RemoteIdentity populated from the payload

        Raises:
            MalformedResponseError: If ``key`` or ``name`` is missing

        Example:
            >>> CrowdTransformer.user_to_identity(
            ...     {"key": "K1", "name": "alice", "email": "alice@example.com"}, ["eng"]
            ... ).groups
            frozenset({'eng'})
        """
        return RemoteIdentity(
            key=_required_str(payload, "key", endpoint),
            username=_required_str(payload, "name", endpoint),
            email=_optional_str(payload, "email"),
            display_name=_optional_str(payload, "display-name"),
            first_name=_optional_str(payload, "first-name"),
            last_name=_optional_str(payload, "last-name"),
            groups=frozenset(groups or ()),
            attributes=CrowdTransformer.attributes(payload),
        )
