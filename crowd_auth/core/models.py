"""Shared data types for the directory bridge.

Directory operations return typed results instead of raising for expected
outcomes: a call either yields its value or an ``AuthFailure`` / ``NotFound``
marker. Exceptions are reserved for transport faults and malformed payloads.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, Optional


@dataclass(frozen=True)
class Credentials:
    """Username/password pair submitted by an end user. Never persisted."""
    username: str
    password: str = field(repr=False)


@dataclass(frozen=True)
class SessionToken:
    """Opaque SSO token issued by the directory.

    The token is bound to the source IP it was issued or refreshed for;
    its validity is decided by the directory alone.
    """
    token: str
    source_ip: Optional[str] = None

    def __str__(self) -> str:
        return self.token


@dataclass(frozen=True)
class AuthFailure:
    """Directory refused the submitted credentials."""
    status_code: int
    reason: str = "authentication rejected"


@dataclass(frozen=True)
class NotFound:
    """Directory has no such user, session or group listing."""
    resource: str
    status_code: int = 404


@dataclass(frozen=True)
class RemoteIdentity:
    """Canonical identity as fetched from the directory."""
    key: str
    username: str
    email: str = ""
    display_name: str = ""
    first_name: str = ""
    last_name: str = ""
    groups: FrozenSet[str] = frozenset()
    attributes: Dict[str, str] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class LocalUser:
    """Snapshot of a persisted user row and its group names."""
    id: int
    crowd_key: str
    username: str
    email: str
    display_name: str
    first_name: str
    last_name: str
    sso_token: Optional[str] = field(default=None, repr=False)
    remember_token: Optional[str] = field(default=None, repr=False)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    groups: FrozenSet[str] = frozenset()

    def is_member_of(self, group: str) -> bool:
        return group in self.groups


@dataclass(frozen=True)
class LocalPrincipal:
    """Authenticated, locally-backed user handed back to the host application."""
    user: LocalUser
    token: SessionToken

    @property
    def username(self) -> str:
        return self.user.username

    @property
    def groups(self) -> FrozenSet[str]:
        return self.user.groups

    def is_member_of(self, group: str) -> bool:
        return self.user.is_member_of(group)


class RejectReason(str, Enum):
    MISSING_CREDENTIALS = "missing_credentials"
    INVALID_SOURCE_IP = "invalid_source_ip"
    BAD_CREDENTIALS = "bad_credentials"
    IDENTITY_UNAVAILABLE = "identity_unavailable"
    IDENTITY_MISMATCH = "identity_mismatch"
    DIRECTORY_UNAVAILABLE = "directory_unavailable"
    PERSISTENCE_FAILURE = "persistence_failure"
    SESSION_EXPIRED = "session_expired"


@dataclass(frozen=True)
class Rejected:
    """Failed login outcome; ``reason`` tells the host which message to show."""
    reason: RejectReason
    detail: str = ""

    @property
    def is_transient(self) -> bool:
        return self.reason is RejectReason.DIRECTORY_UNAVAILABLE
