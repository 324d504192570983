"""Crowd REST API client library.

This package provides a modular, testable interface to the Crowd
usermanagement REST API, authenticated as an application.

Architecture:
- client.py: HTTP client with the ordered request pipeline (auth, headers, retry, redirect, decode)
- sessions.py: SSO session issue, lookup, refresh and invalidation
- users.py: User existence and identity lookups
- groups.py: Direct group memberships
- transformer.py: Crowd JSON ↔ domain type mapping
- directory.py: DirectoryClient protocol and the CrowdDirectory facade
- exceptions.py: Typed exceptions for transport and payload faults

Usage:
    from crowd_auth.core.crowd import CrowdClient, CrowdDirectory

    client = CrowdClient("https://crowd.example.com/crowd", "my-app", "app-secret")
    directory = CrowdDirectory(client)
    identity = directory.fetch_identity("alice")
"""
from .client import (
    CrowdClient,
    REQUEST_PIPELINE,
    REQUEST_TIMEOUT,
    REST_BASE_PATH,
    build_session,
)
from .exceptions import (
    CrowdError,
    CrowdAPIError,
    DirectoryUnavailableError,
    MalformedResponseError,
)
from .transformer import CrowdTransformer
from .sessions import SessionService
from .groups import GroupService
from .users import UserService
from .directory import CrowdDirectory, DirectoryClient

__all__ = [
    # Client
    "CrowdClient",
    "REQUEST_PIPELINE",
    "REQUEST_TIMEOUT",
    "REST_BASE_PATH",
    "build_session",

    # Exceptions
    "CrowdError",
    "CrowdAPIError",
    "DirectoryUnavailableError",
    "MalformedResponseError",

    # Services
    "CrowdTransformer",
    "SessionService",
    "GroupService",
    "UserService",
    "CrowdDirectory",
    "DirectoryClient",
]
