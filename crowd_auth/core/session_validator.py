"""Login orchestration against the directory with a local read cache.

Login flow (each arrow can short-circuit to ``Rejected(reason)``):

    Start ─> CredentialsSubmitted ─> TokenIssued ─> IdentityFetched ─> Reconciled ─> Authenticated
             (non-empty creds)       (authenticate)  (fetch_identity    (sync engine)  (LocalPrincipal)
                                                      + name cross-check)

Cached lookups by local id skip the directory entirely while the row is
younger than the refresh interval; past it, the identity is re-fetched and
re-reconciled without re-checking a password.

Directory and persistence exceptions stop here and become ``Rejected``
outcomes (or ``None`` for lookups); they never reach the host application.
"""
from __future__ import annotations
import hmac
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from crowd_auth import audit
from crowd_auth.core.crowd.directory import DirectoryClient
from crowd_auth.core.crowd.exceptions import CrowdAPIError, MalformedResponseError
from crowd_auth.core.models import (
    AuthFailure,
    Credentials,
    LocalPrincipal,
    LocalUser,
    NotFound,
    Rejected,
    RejectReason,
    SessionToken,
)
from crowd_auth.core.sync_service import IdentityMismatchError, IdentitySyncEngine, ReconciliationError
from crowd_auth.core.validators import require_credentials, validate_source_ip
from crowd_auth.store.db import describe_db_error
from crowd_auth.store.repository import IdentityStore

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_INTERVAL = 300  # seconds


def _as_utc(value: datetime) -> datetime:
    # Injected clocks may be naive; treat them as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SessionValidator:
    """Authenticates users against the directory and keeps local records current.

    Usage:
        validator = SessionValidator(directory, IdentitySyncEngine(store), store, refresh_interval=300)
        outcome = validator.login_with_credentials(Credentials("alice", "pw"), "10.0.0.5")
        if isinstance(outcome, Rejected):
            ...
    """

    def __init__(
        self,
        directory: DirectoryClient,
        sync_engine: IdentitySyncEngine,
        store: IdentityStore,
        refresh_interval: Union[int, float, timedelta] = DEFAULT_REFRESH_INTERVAL,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize the validator.

        Args:
            directory: DirectoryClient implementation (CrowdDirectory or a fake)
            sync_engine: Reconciliation engine writing to ``store``
            store: Local identity store used for cached lookups
            refresh_interval: Max age of a cached row, seconds or timedelta
            clock: Source of "now"; defaults to the sync engine's clock
        """
        if not isinstance(refresh_interval, timedelta):
            refresh_interval = timedelta(seconds=refresh_interval)
        if refresh_interval < timedelta(0):
            raise ValueError("refresh_interval must not be negative")
        self.directory = directory
        self.sync_engine = sync_engine
        self.store = store
        self.refresh_interval = refresh_interval
        self.clock = clock or sync_engine.clock

    # ─────────────────────────────────────────────────────────────────────────
    # Credential login
    # ─────────────────────────────────────────────────────────────────────────
    def login_with_credentials(self, credentials: Credentials, source_ip: str) -> Union[LocalPrincipal, Rejected]:
        """Authenticate, fetch, reconcile and return a principal.

        Args:
            credentials: Username/password submitted by the end user
            source_ip: Remote address the SSO session is bound to

        Returns:
            LocalPrincipal on success, Rejected otherwise
        """
        username = credentials.username or ""
        try:
            credentials = require_credentials(credentials.username, credentials.password)
        except ValueError as e:
            return self._reject("login_failed", username, RejectReason.MISSING_CREDENTIALS, str(e), source_ip)
        try:
            source_ip = validate_source_ip(source_ip)
        except ValueError as e:
            return self._reject("login_failed", username, RejectReason.INVALID_SOURCE_IP, str(e), source_ip)

        try:
            issued = self.directory.authenticate(credentials, source_ip)
        except (CrowdAPIError, MalformedResponseError) as e:
            return self._reject("login_failed", username, *self._classify_directory_fault(e), source_ip)
        if isinstance(issued, AuthFailure):
            return self._reject(
                "login_failed", username, RejectReason.BAD_CREDENTIALS,
                f"directory answered {issued.status_code}: {issued.reason}", source_ip,
            )

        outcome = self._revalidate(username, token=issued)
        if isinstance(outcome, Rejected):
            return self._reject("login_failed", username, outcome.reason, outcome.detail, source_ip)

        logger.info(f"Login succeeded for '{username}' from {source_ip} (id={outcome.id})")
        audit.safe_log_auth_event(
            "login", username, source_ip=source_ip,
            details={"user_id": outcome.id, "groups": sorted(outcome.groups)},
        )
        return LocalPrincipal(outcome, issued)

    # ─────────────────────────────────────────────────────────────────────────
    # SSO session resume
    # ─────────────────────────────────────────────────────────────────────────
    def resume_session(self, token: str, source_ip: str) -> Union[LocalPrincipal, Rejected]:
        """Rebuild a principal from an existing SSO token (single sign-on across apps).

        The session is looked up, re-bound to ``source_ip``, and the owning
        identity is fetched and reconciled. When a local row already carries
        this token its crowd key must match the fetched identity.

        Returns:
            LocalPrincipal on success, Rejected otherwise
        """
        if not token:
            return self._reject("session_resume_failed", "", RejectReason.MISSING_CREDENTIALS, "token is required", source_ip)
        try:
            source_ip = validate_source_ip(source_ip)
        except ValueError as e:
            return self._reject("session_resume_failed", "", RejectReason.INVALID_SOURCE_IP, str(e), source_ip)

        try:
            found = self.directory.fetch_session(token)
            if isinstance(found, NotFound):
                return self._reject("session_resume_failed", "", RejectReason.SESSION_EXPIRED, "unknown session", source_ip)
            username, _ = found
            refreshed = self.directory.refresh_session(token, source_ip)
        except (CrowdAPIError, MalformedResponseError) as e:
            return self._reject("session_resume_failed", "", *self._classify_directory_fault(e), source_ip)
        if isinstance(refreshed, NotFound):
            return self._reject("session_resume_failed", username, RejectReason.SESSION_EXPIRED, "session refresh refused", source_ip)

        try:
            cached = self.store.find_user_by_sso_token(token)
        except SQLAlchemyError as e:
            return self._reject("session_resume_failed", username, RejectReason.PERSISTENCE_FAILURE, describe_db_error(e), source_ip)

        outcome = self._revalidate(username, token=refreshed, expected_key=cached.crowd_key if cached else None)
        if isinstance(outcome, Rejected):
            return self._reject("session_resume_failed", username, outcome.reason, outcome.detail, source_ip)

        audit.safe_log_auth_event("session_resume", username, source_ip=source_ip, details={"user_id": outcome.id})
        return LocalPrincipal(outcome, refreshed)

    # ─────────────────────────────────────────────────────────────────────────
    # Cached lookups
    # ─────────────────────────────────────────────────────────────────────────
    def is_fresh(self, user: LocalUser) -> bool:
        """True while ``now - updated_at`` is below the refresh interval."""
        if user.updated_at is None:
            return False
        return _as_utc(self.clock()) - _as_utc(user.updated_at) < self.refresh_interval

    def lookup_by_local_id(self, user_id: int) -> Optional[LocalUser]:
        """Return the user for a local id, re-validating with the directory once stale.

        The cached row only tells us *which* username to re-check; no password
        is involved. Any rejection or fault returns None.
        """
        try:
            user = self.store.find_user(user_id)
        except SQLAlchemyError as e:
            logger.error(f"Local lookup for id={user_id} failed: {describe_db_error(e)}")
            return None
        if user is None:
            return None
        if self.is_fresh(user):
            return user

        logger.debug(f"Cached user id={user_id} is stale; re-validating '{user.username}'")
        outcome = self._revalidate(user.username, token=None, expected_key=user.crowd_key)
        if isinstance(outcome, Rejected):
            logger.info(f"Re-validation of id={user_id} ('{user.username}') rejected: {outcome.reason.value}")
            return None
        return outcome

    def retrieve_by_remember_token(self, user_id: int, remember_token: str) -> Optional[LocalUser]:
        """Return the user when ``remember_token`` matches the stored value."""
        if not remember_token:
            return None
        user = self.store.find_user(user_id)
        if user is None or not user.remember_token:
            return None
        if not hmac.compare_digest(user.remember_token, remember_token):
            return None
        return user

    def update_remember_token(self, user_id: int, remember_token: Optional[str]) -> Optional[LocalUser]:
        return self.store.set_remember_token(user_id, remember_token)

    # ─────────────────────────────────────────────────────────────────────────
    # Logout
    # ─────────────────────────────────────────────────────────────────────────
    def logout(self, token: Union[str, SessionToken]) -> bool:
        """Invalidate the SSO session and clear the local remember token.

        The directory result is advisory: the local side is cleared even when
        invalidation fails, so a user is never stuck half logged in.

        Returns:
            True if the directory confirmed the invalidation
        """
        value = str(token)
        try:
            invalidated = self.directory.invalidate_session(value)
        except (CrowdAPIError, MalformedResponseError) as e:
            logger.warning(f"Directory logout failed, continuing locally: {e}")
            invalidated = False

        username = ""
        try:
            user = self.store.clear_remember_token_for_sso_token(value)
            if user is not None:
                username = user.username
        except SQLAlchemyError as e:
            logger.error(f"Clearing local remember token failed: {describe_db_error(e)}")

        audit.safe_log_auth_event("logout", username, details={"directory_invalidated": invalidated})
        return invalidated

    # ─────────────────────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────────────────────
    def _revalidate(
        self,
        username: str,
        token: Optional[SessionToken],
        expected_key: Optional[str] = None,
    ) -> Union[LocalUser, Rejected]:
        """Fetch identity, cross-check the username, reconcile."""
        try:
            identity = self.directory.fetch_identity(username)
        except (CrowdAPIError, MalformedResponseError) as e:
            reason, detail = self._classify_directory_fault(e)
            return Rejected(reason, detail)
        if isinstance(identity, NotFound):
            return Rejected(RejectReason.IDENTITY_UNAVAILABLE, f"directory answered {identity.status_code}")
        if identity.username != username:
            logger.warning(
                f"Directory consistency anomaly: asked for '{username}', got identity '{identity.username}'"
            )
            return Rejected(RejectReason.IDENTITY_MISMATCH, "identity does not match authenticated username")

        try:
            return self.sync_engine.reconcile(identity, token=token, expected_key=expected_key)
        except IdentityMismatchError as e:
            return Rejected(RejectReason.IDENTITY_MISMATCH, e.detail)
        except ReconciliationError as e:
            return Rejected(RejectReason.PERSISTENCE_FAILURE, e.detail)

    @staticmethod
    def _classify_directory_fault(error: Exception) -> tuple[RejectReason, str]:
        if isinstance(error, MalformedResponseError):
            logger.error(f"Malformed directory response: {error}")
            return RejectReason.IDENTITY_UNAVAILABLE, str(error)
        logger.error(f"Directory unavailable: {error}")
        return RejectReason.DIRECTORY_UNAVAILABLE, str(error)

    @staticmethod
    def _reject(
        event: audit.EventType,
        username: str,
        reason: RejectReason,
        detail: str,
        source_ip: Optional[str],
    ) -> Rejected:
        logger.info(f"Rejected {event} for '{username}': {reason.value} ({detail})")
        audit.safe_log_auth_event(
            event, username, source_ip=source_ip,
            details={"reason": reason.value, "detail": detail}, success=False,
        )
        return Rejected(reason, detail)
