"""Directory interface consumed by the session validator.

``DirectoryClient`` is the seam between the login flow and the wire protocol.
``CrowdDirectory`` implements it on top of the Crowd REST services; tests
substitute an in-memory fake with the same methods.
"""
from __future__ import annotations
from typing import FrozenSet, Protocol, Tuple, Union

from ..models import AuthFailure, Credentials, NotFound, RemoteIdentity, SessionToken
from .client import CrowdClient
from .groups import GroupService
from .sessions import SessionService
from .users import UserService


class DirectoryClient(Protocol):
    def authenticate(self, credentials: Credentials, source_ip: str) -> Union[SessionToken, AuthFailure]: ...

    def fetch_session(self, token: str) -> Union[Tuple[str, SessionToken], NotFound]: ...

    def refresh_session(self, token: str, source_ip: str) -> Union[SessionToken, NotFound]: ...

    def invalidate_session(self, token: str) -> bool: ...

    def user_exists(self, username: str) -> bool: ...

    def fetch_identity(self, username: str) -> Union[RemoteIdentity, NotFound]: ...

    def fetch_groups(self, username: str) -> Union[FrozenSet[str], NotFound]: ...


class CrowdDirectory:
    """Stateless DirectoryClient backed by the Crowd REST API."""

    def __init__(self, client: CrowdClient):
        self.client = client
        self.sessions = SessionService(client)
        self.groups = GroupService(client)
        self.users = UserService(client, self.groups)

    def authenticate(self, credentials: Credentials, source_ip: str) -> Union[SessionToken, AuthFailure]:
        return self.sessions.authenticate(credentials, source_ip)

    def fetch_session(self, token: str) -> Union[Tuple[str, SessionToken], NotFound]:
        return self.sessions.fetch_session(token)

    def refresh_session(self, token: str, source_ip: str) -> Union[SessionToken, NotFound]:
        return self.sessions.refresh_session(token, source_ip)

    def invalidate_session(self, token: str) -> bool:
        return self.sessions.invalidate_session(token)

    def user_exists(self, username: str) -> bool:
        return self.users.user_exists(username)

    def fetch_identity(self, username: str) -> Union[RemoteIdentity, NotFound]:
        return self.users.fetch_identity(username)

    def fetch_groups(self, username: str) -> Union[FrozenSet[str], NotFound]:
        return self.groups.fetch_groups(username)
