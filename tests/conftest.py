"""Pytest shared fixtures for the Crowd bridge tests."""
import json
import pathlib
import sys
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
from urllib.parse import parse_qs, unquote, urlsplit

# Add project root to Python path
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest
import requests
from requests.adapters import BaseAdapter

from crowd_auth import audit
from crowd_auth.core.crowd import CrowdClient, CrowdDirectory, REST_BASE_PATH
from crowd_auth.core.models import AuthFailure, NotFound, RemoteIdentity, SessionToken
from crowd_auth.core.session_validator import SessionValidator
from crowd_auth.core.sync_service import IdentitySyncEngine
from crowd_auth.store.repository import IdentityStore

CROWD_TEST_URL = "http://crowd.test/crowd"


# ─────────────────────────────────────────────────────────────────────────────
# Audit isolation
# ─────────────────────────────────────────────────────────────────────────────
@pytest.fixture(autouse=True)
def isolated_audit_log(monkeypatch, tmp_path):
    """Every test writes audit events to its own directory, signed with a test key."""
    audit_dir = tmp_path / "audit"
    monkeypatch.setattr(audit, "AUDIT_LOG_DIR", audit_dir)
    monkeypatch.setattr(audit, "AUDIT_LOG_FILE", audit_dir / "auth-events.jsonl")
    monkeypatch.setattr(audit, "_default_secret_paths", [])
    monkeypatch.setenv("AUDIT_LOG_SIGNING_KEY", "test-signing-key-for-audit-trail")
    return audit_dir


# ─────────────────────────────────────────────────────────────────────────────
# Clock
# ─────────────────────────────────────────────────────────────────────────────
class MutableClock:
    """Callable UTC clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture()
def clock():
    return MutableClock()


# ─────────────────────────────────────────────────────────────────────────────
# Local store
# ─────────────────────────────────────────────────────────────────────────────
@pytest.fixture()
def store():
    """In-memory SQLite identity store with tables created."""
    identity_store = IdentityStore.from_url("sqlite://")
    identity_store.create_schema()
    yield identity_store
    identity_store.engine.dispose()


@pytest.fixture()
def sync_engine(store, clock):
    return IdentitySyncEngine(store, clock=clock)


# ─────────────────────────────────────────────────────────────────────────────
# In-memory directory (DirectoryClient)
# ─────────────────────────────────────────────────────────────────────────────
class FakeDirectory:
    """DirectoryClient double keeping users, passwords and sessions in memory.

    ``failures`` maps an operation name to the exception it should raise.
    Every call is recorded in ``calls``.
    """

    def __init__(self):
        self.identities: Dict[str, RemoteIdentity] = {}
        self.passwords: Dict[str, str] = {}
        self.sessions: Dict[str, str] = {}
        self.failures: Dict[str, Exception] = {}
        self.calls: List[str] = []
        self._issued = 0

    def add_user(self, username, password, key, groups=(), **profile):
        self.passwords[username] = password
        self.set_identity(username, key, groups, **profile)

    def set_identity(self, username, key, groups=(), **profile):
        profile.setdefault("email", f"{username}@example.com")
        self.identities[username] = RemoteIdentity(
            key=key, username=username, groups=frozenset(groups), **profile
        )

    def _record(self, name):
        self.calls.append(name)
        if name in self.failures:
            raise self.failures[name]

    def authenticate(self, credentials, source_ip):
        self._record("authenticate")
        if self.passwords.get(credentials.username) != credentials.password:
            return AuthFailure(400)
        self._issued += 1
        token = f"sso-{self._issued}-{credentials.username}"
        self.sessions[token] = credentials.username
        return SessionToken(token, source_ip)

    def fetch_session(self, token):
        self._record("fetch_session")
        if token not in self.sessions:
            return NotFound("session")
        return self.sessions[token], SessionToken(token)

    def refresh_session(self, token, source_ip):
        self._record("refresh_session")
        if token not in self.sessions:
            return NotFound("session")
        return SessionToken(token, source_ip)

    def invalidate_session(self, token):
        self._record("invalidate_session")
        return self.sessions.pop(token, None) is not None

    def user_exists(self, username):
        self._record("user_exists")
        return username in self.identities

    def fetch_identity(self, username):
        self._record("fetch_identity")
        identity = self.identities.get(username)
        return identity if identity is not None else NotFound("user")

    def fetch_groups(self, username):
        self._record("fetch_groups")
        identity = self.identities.get(username)
        return identity.groups if identity is not None else NotFound("groups")


@pytest.fixture()
def directory():
    return FakeDirectory()


@pytest.fixture()
def validator(directory, sync_engine, store, clock):
    return SessionValidator(directory, sync_engine, store, refresh_interval=300, clock=clock)


# ─────────────────────────────────────────────────────────────────────────────
# Fake Crowd server at the requests transport-adapter boundary
# ─────────────────────────────────────────────────────────────────────────────
class FakeCrowdAdapter(BaseAdapter):
    """Answers Crowd usermanagement REST calls without touching the network.

    ``queue(status, body)`` forces the next responses regardless of route;
    ``raise_next(exc)`` makes the next send raise a transport exception.
    """

    def __init__(self):
        super().__init__()
        self.users: Dict[str, dict] = {}
        self.groups: Dict[str, List[str]] = {}
        self.passwords: Dict[str, str] = {}
        self.sessions: Dict[str, str] = {}
        self.sent: List[requests.PreparedRequest] = []
        self.timeouts: List[object] = []
        self._queued: List[tuple] = []
        self._raise: List[Exception] = []
        self._issued = 0

    # -- configuration -------------------------------------------------------
    def add_user(self, username, password, key, groups=None, **fields):
        payload = {"key": key, "name": username, "email": f"{username}@example.com", "active": True}
        payload.update(fields)
        self.users[username] = payload
        self.passwords[username] = password
        if groups is not None:
            self.groups[username] = list(groups)

    def queue(self, status, body=None):
        self._queued.append((status, body))

    def raise_next(self, exc):
        self._raise.append(exc)

    def bodies(self):
        return [json.loads(r.body) if r.body else None for r in self.sent]

    # -- transport -----------------------------------------------------------
    def send(self, request, stream=False, timeout=None, verify=True, cert=None, proxies=None):
        self.sent.append(request)
        self.timeouts.append(timeout)
        if self._raise:
            raise self._raise.pop(0)
        if self._queued:
            status, body = self._queued.pop(0)
            return self._response(request, status, body)
        status, body = self._route(request)
        return self._response(request, status, body)

    def close(self):
        pass

    def _route(self, request):
        parts = urlsplit(request.url)
        path = parts.path.split(REST_BASE_PATH, 1)[1]
        query = {k: v[0] for k, v in parse_qs(parts.query).items()}
        payload = json.loads(request.body) if request.body else {}
        method = request.method

        if path == "/1/session" and method == "POST":
            username = payload.get("username")
            if username not in self.passwords or self.passwords[username] != payload.get("password"):
                return 400, {"reason": "INVALID_USER_AUTHENTICATION", "message": "Failed to authenticate"}
            self._issued += 1
            token = f"tok{self._issued}{username}"
            self.sessions[token] = username
            return 201, {"token": token, "user": {"name": username}}

        if path.startswith("/1/session/"):
            token = unquote(path[len("/1/session/"):])
            if token not in self.sessions:
                return 404, {"reason": "INVALID_SSO_TOKEN", "message": "Token does not exist"}
            if method == "DELETE":
                del self.sessions[token]
                return 204, None
            return 200, {"token": token, "user": {"name": self.sessions[token]}}

        if path == "/1/user" and method == "GET":
            user = self.users.get(query.get("username"))
            if user is None:
                return 404, {"reason": "USER_NOT_FOUND", "message": "User does not exist"}
            return 200, user

        if path == "/1/user/group/direct" and method == "GET":
            names = self.groups.get(query.get("username"))
            if names is None:
                return 404, {"reason": "USER_NOT_FOUND", "message": "User does not exist"}
            return 200, {"groups": [{"name": name} for name in names]}

        return 404, {"reason": "UNKNOWN", "message": f"No route for {method} {path}"}

    @staticmethod
    def _response(request, status, body):
        resp = requests.Response()
        resp.status_code = status
        if body is None:
            resp._content = b""
        elif isinstance(body, (bytes, str)):
            resp._content = body.encode("utf-8") if isinstance(body, str) else body
        else:
            resp._content = json.dumps(body).encode("utf-8")
            resp.headers["Content-Type"] = "application/json"
        resp.encoding = "utf-8"
        resp.url = request.url
        resp.request = request
        return resp


@pytest.fixture()
def crowd_server():
    return FakeCrowdAdapter()


@pytest.fixture()
def crowd_client(crowd_server):
    """CrowdClient whose sessions are served by ``crowd_server``."""
    client = CrowdClient(CROWD_TEST_URL, "test-app", "test-app-secret")
    client.session.mount("http://crowd.test", crowd_server)
    client.single_shot_session.mount("http://crowd.test", crowd_server)
    return client


@pytest.fixture()
def crowd_directory(crowd_client):
    return CrowdDirectory(crowd_client)
