"""Login flow, cached lookups, session resume and logout."""
import json
from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from crowd_auth import audit
from crowd_auth.core.crowd import CrowdDirectory, DirectoryUnavailableError, MalformedResponseError
from crowd_auth.core.models import Credentials, LocalPrincipal, NotFound, Rejected, RejectReason, RemoteIdentity
from crowd_auth.core.session_validator import SessionValidator
from crowd_auth.core.sync_service import IdentitySyncEngine
from crowd_auth.store import MembershipRepository


def _events():
    with audit.AUDIT_LOG_FILE.open() as f:
        return [json.loads(line) for line in f if line.strip()]


@pytest.fixture()
def alice(directory):
    directory.add_user("alice", "pw1", "K1", groups=["eng", "oncall"], display_name="Alice")
    return directory


def login(validator, username="alice", password="pw1", ip="10.0.0.5"):
    return validator.login_with_credentials(Credentials(username, password), ip)


# ─────────────────────────────────────────────────────────────────────────────
# Credential login
# ─────────────────────────────────────────────────────────────────────────────
def test_login_then_group_change_updates_membership(validator, alice, store):
    principal = login(validator)

    assert isinstance(principal, LocalPrincipal)
    assert principal.username == "alice"
    assert principal.groups == frozenset({"eng", "oncall"})
    assert principal.is_member_of("oncall")
    assert principal.token.source_ip == "10.0.0.5"

    alice.set_identity("alice", "K1", groups=["eng"], display_name="Alice")
    second = login(validator)

    assert second.user.id == principal.user.id
    assert second.groups == frozenset({"eng"})
    assert store.find_user(principal.user.id).groups == frozenset({"eng"})


@pytest.mark.parametrize("username", ["alice", "bob.smith", "Zoë", "x" * 255])
def test_principal_username_equals_submitted(validator, directory, username):
    directory.add_user(username, "secret", f"key-{len(username)}-{username[:3]}")
    principal = login(validator, username, "secret")
    assert principal.username == username


def test_login_stores_sso_token(validator, alice, store):
    principal = login(validator)
    assert store.find_user(principal.user.id).sso_token == principal.token.token


def test_login_calls_directory_in_order(validator, alice):
    login(validator)
    assert alice.calls == ["authenticate", "fetch_identity"]


@pytest.mark.parametrize("username,password", [("", "pw1"), ("alice", ""), (None, "pw1")])
def test_missing_credentials_never_reach_directory(validator, alice, username, password):
    outcome = validator.login_with_credentials(Credentials(username, password), "10.0.0.5")
    assert outcome.reason is RejectReason.MISSING_CREDENTIALS
    assert alice.calls == []


def test_invalid_source_ip_is_rejected(validator, alice):
    outcome = login(validator, ip="not-an-ip")
    assert outcome == Rejected(RejectReason.INVALID_SOURCE_IP, "Invalid source IP 'not-an-ip'")
    assert alice.calls == []


def test_wrong_password_is_bad_credentials(validator, alice, store):
    outcome = login(validator, password="wrong")
    assert outcome.reason is RejectReason.BAD_CREDENTIALS
    assert not outcome.is_transient
    assert store.find_user_by_username("alice") is None


def test_identity_missing_after_authentication(validator, alice):
    del alice.identities["alice"]
    assert login(validator).reason is RejectReason.IDENTITY_UNAVAILABLE


def test_identity_for_other_username_is_mismatch(validator, alice, store, caplog):
    alice.identities["alice"] = RemoteIdentity(key="K1", username="mallory")
    with caplog.at_level("WARNING"):
        outcome = login(validator)
    assert outcome.reason is RejectReason.IDENTITY_MISMATCH
    assert "consistency anomaly" in caplog.text
    assert store.find_user_by_username("mallory") is None


def test_directory_outage_is_distinct_from_bad_credentials(validator, alice):
    alice.failures["authenticate"] = DirectoryUnavailableError(503, "maintenance", "/1/session")
    outcome = login(validator)
    assert outcome.reason is RejectReason.DIRECTORY_UNAVAILABLE
    assert outcome.is_transient


def test_outage_during_identity_fetch(validator, alice):
    alice.failures["fetch_identity"] = DirectoryUnavailableError(0, "connection refused", "/1/user")
    assert login(validator).reason is RejectReason.DIRECTORY_UNAVAILABLE


def test_malformed_identity_is_unavailable(validator, alice):
    alice.failures["fetch_identity"] = MalformedResponseError("/1/user", "missing or empty 'key'")
    assert login(validator).reason is RejectReason.IDENTITY_UNAVAILABLE


def test_persistence_failure_aborts_whole_login(validator, alice, store, monkeypatch):
    def fail(self, user_id, target_group_ids):
        raise OperationalError("INSERT", {}, Exception("database is locked"))

    monkeypatch.setattr(MembershipRepository, "replace_memberships", fail)

    outcome = login(validator)
    assert outcome.reason is RejectReason.PERSISTENCE_FAILURE
    assert store.find_user_by_username("alice") is None
    assert store.group_names() == []


def test_failed_token_write_keeps_token_out_of_logs_and_audit(validator, alice, store, caplog):
    login(validator)
    with store.engine.begin() as conn:
        conn.exec_driver_sql(
            "CREATE TRIGGER crowd_auth_users_frozen BEFORE UPDATE ON crowd_auth_users "
            "BEGIN SELECT RAISE(ABORT, 'crowd_auth_users is frozen'); END"
        )

    with caplog.at_level("DEBUG"):
        outcome = login(validator)

    assert outcome.reason is RejectReason.PERSISTENCE_FAILURE
    assert "frozen" in outcome.detail
    token = "sso-2-alice"
    assert token in alice.sessions
    assert token not in outcome.detail
    assert token not in caplog.text
    assert token not in audit.AUDIT_LOG_FILE.read_text()


def test_cached_key_change_on_login_creates_new_row(validator, alice, store):
    first = login(validator)
    alice.set_identity("alice", "K2", groups=["eng"])
    second = login(validator)

    assert second.user.id != first.user.id
    assert store.find_user(first.user.id).username == "~K1"


def test_login_outcomes_are_audited(validator, alice):
    login(validator)
    login(validator, password="wrong")

    events = [(e["event_type"], e["success"]) for e in _events()]
    assert ("login", True) in events
    assert ("login_failed", False) in events
    assert "pw1" not in audit.AUDIT_LOG_FILE.read_text()
    total, valid = audit.verify_audit_log()
    assert total == valid


# ─────────────────────────────────────────────────────────────────────────────
# Cached lookup
# ─────────────────────────────────────────────────────────────────────────────
def test_fresh_lookup_makes_no_directory_calls(validator, alice, clock):
    principal = login(validator)
    alice.calls.clear()

    clock.advance(299)
    user = validator.lookup_by_local_id(principal.user.id)

    assert user.username == "alice"
    assert alice.calls == []


def test_stale_lookup_revalidates_with_directory(validator, alice, clock, store):
    principal = login(validator)
    alice.calls.clear()
    alice.set_identity("alice", "K1", groups=["eng"], display_name="Alice L")

    clock.advance(300)
    user = validator.lookup_by_local_id(principal.user.id)

    assert len(alice.calls) >= 1
    assert "authenticate" not in alice.calls
    assert user.groups == frozenset({"eng"})
    assert user.display_name == "Alice L"
    assert user.updated_at == clock.now
    assert user.sso_token == principal.token.token

    alice.calls.clear()
    validator.lookup_by_local_id(principal.user.id)
    assert alice.calls == []


def test_zero_refresh_interval_always_revalidates(directory, sync_engine, store, clock, alice):
    validator = SessionValidator(directory, sync_engine, store, refresh_interval=0, clock=clock)
    principal = login(validator)
    alice.calls.clear()

    validator.lookup_by_local_id(principal.user.id)
    assert alice.calls == ["fetch_identity"]


def test_lookup_unknown_id_is_none(validator, alice):
    assert validator.lookup_by_local_id(424242) is None
    assert alice.calls == []


def test_stale_lookup_returns_none_when_directory_down(validator, alice, clock):
    principal = login(validator)
    clock.advance(3600)
    alice.failures["fetch_identity"] = DirectoryUnavailableError(503, "down", "/1/user")

    assert validator.lookup_by_local_id(principal.user.id) is None


def test_stale_lookup_returns_none_when_user_removed(validator, alice, clock):
    principal = login(validator)
    clock.advance(3600)
    del alice.identities["alice"]

    assert validator.lookup_by_local_id(principal.user.id) is None


def test_stale_lookup_rejects_changed_key(validator, alice, clock, store):
    principal = login(validator)
    clock.advance(3600)
    alice.set_identity("alice", "K2", groups=["admins"])

    assert validator.lookup_by_local_id(principal.user.id) is None
    unchanged = store.find_user(principal.user.id)
    assert unchanged.crowd_key == "K1"
    assert unchanged.groups == frozenset({"eng", "oncall"})


def test_refresh_interval_accepts_timedelta(directory, sync_engine, store):
    validator = SessionValidator(directory, sync_engine, store, refresh_interval=timedelta(minutes=1))
    assert validator.refresh_interval == timedelta(seconds=60)
    assert validator.clock is sync_engine.clock


def test_negative_refresh_interval_is_refused(directory, sync_engine, store):
    with pytest.raises(ValueError):
        SessionValidator(directory, sync_engine, store, refresh_interval=-1)


# ─────────────────────────────────────────────────────────────────────────────
# SSO session resume
# ─────────────────────────────────────────────────────────────────────────────
def test_resume_session_rebinds_token_to_new_ip(validator, alice):
    principal = login(validator)
    resumed = validator.resume_session(principal.token.token, "10.0.0.9")

    assert isinstance(resumed, LocalPrincipal)
    assert resumed.user.id == principal.user.id
    assert resumed.token.source_ip == "10.0.0.9"
    assert "refresh_session" in alice.calls


def test_resume_unknown_session_is_expired(validator, alice):
    outcome = validator.resume_session("does-not-exist", "10.0.0.9")
    assert outcome.reason is RejectReason.SESSION_EXPIRED


def test_resume_without_token(validator, alice):
    assert validator.resume_session("", "10.0.0.9").reason is RejectReason.MISSING_CREDENTIALS


def test_resume_rejects_key_change_for_cached_token(validator, alice, store):
    principal = login(validator)
    alice.set_identity("alice", "K2")

    outcome = validator.resume_session(principal.token.token, "10.0.0.5")
    assert outcome.reason is RejectReason.IDENTITY_MISMATCH
    assert store.find_user(principal.user.id).crowd_key == "K1"


def test_resume_from_another_application_creates_user(validator, alice, store):
    alice.sessions["foreign-token"] = "alice"
    resumed = validator.resume_session("foreign-token", "10.0.0.5")

    assert resumed.username == "alice"
    assert store.find_user_by_sso_token("foreign-token").id == resumed.user.id


# ─────────────────────────────────────────────────────────────────────────────
# Remember-me token
# ─────────────────────────────────────────────────────────────────────────────
def test_remember_token_roundtrip(validator, alice):
    principal = login(validator)
    user_id = principal.user.id

    assert validator.retrieve_by_remember_token(user_id, "r1") is None
    validator.update_remember_token(user_id, "r1")
    assert validator.retrieve_by_remember_token(user_id, "r1").id == user_id
    assert validator.retrieve_by_remember_token(user_id, "r2") is None
    assert validator.retrieve_by_remember_token(user_id, "") is None
    assert validator.retrieve_by_remember_token(999, "r1") is None


# ─────────────────────────────────────────────────────────────────────────────
# Logout
# ─────────────────────────────────────────────────────────────────────────────
def test_logout_invalidates_session_and_clears_remember_token(validator, alice, store):
    principal = login(validator)
    validator.update_remember_token(principal.user.id, "r1")

    assert validator.logout(principal.token) is True
    assert isinstance(alice.fetch_session(principal.token.token), NotFound)
    assert store.find_user(principal.user.id).remember_token is None


def test_logout_is_best_effort_when_directory_fails(validator, alice, store):
    principal = login(validator)
    validator.update_remember_token(principal.user.id, "r1")
    alice.failures["invalidate_session"] = DirectoryUnavailableError(0, "timeout", "/1/session/x")

    assert validator.logout(principal.token.token) is False
    assert store.find_user(principal.user.id).remember_token is None
    assert _events()[-1]["event_type"] == "logout"


def test_logout_unknown_token(validator, alice):
    assert validator.logout("never-issued") is False


# ─────────────────────────────────────────────────────────────────────────────
# End to end over the REST transport
# ─────────────────────────────────────────────────────────────────────────────
def test_login_over_rest_transport(crowd_directory, crowd_server, store, clock):
    crowd_server.add_user("alice", "pw1", "K1", groups=["eng", "oncall"])
    validator = SessionValidator(crowd_directory, IdentitySyncEngine(store, clock=clock), store)

    principal = validator.login_with_credentials(Credentials("alice", "pw1"), "10.0.0.5")
    assert principal.groups == frozenset({"eng", "oncall"})

    crowd_server.groups["alice"] = ["eng"]
    second = validator.login_with_credentials(Credentials("alice", "pw1"), "10.0.0.5")
    assert second.groups == frozenset({"eng"})

    assert validator.logout(second.token) is True
    assert isinstance(crowd_directory.fetch_session(second.token.token), NotFound)


def test_rest_outage_surfaces_as_rejection(crowd_directory, crowd_server, store):
    crowd_server.queue(502, "<html>bad gateway</html>")
    validator = SessionValidator(crowd_directory, IdentitySyncEngine(store), store)

    outcome = validator.login_with_credentials(Credentials("alice", "pw1"), "10.0.0.5")
    assert isinstance(outcome, Rejected)
    assert outcome.reason is RejectReason.DIRECTORY_UNAVAILABLE
    assert "bad gateway" not in outcome.detail
    assert "bad gateway" not in audit.AUDIT_LOG_FILE.read_text()
