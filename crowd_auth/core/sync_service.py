"""Identity reconciliation: make local rows mirror one fetched Crowd identity.

Architecture:
    SessionValidator ──> IdentitySyncEngine.reconcile() ──> IdentityStore.transaction()
                                                              ├─ users
                                                              ├─ groups
                                                              └─ memberships

Invariants:
    - Rows are matched by ``crowd_key``, never by username alone
    - After a successful reconcile the user's memberships equal ``remote.groups`` exactly
    - ``updated_at`` is bumped on every successful reconcile, changed or not
    - Profile fields are always overwritten from the directory
    - Everything after the key check runs in one transaction; any failure rolls it back
"""
from __future__ import annotations
import logging
from datetime import datetime
from typing import Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from crowd_auth import audit
from crowd_auth.core.models import LocalUser, RemoteIdentity, SessionToken
from crowd_auth.store.db import describe_db_error
from crowd_auth.store.models import CrowdUser, utcnow
from crowd_auth.store.repository import IdentityStore, StoreTransaction

logger = logging.getLogger(__name__)

# Prefix for usernames released by a row whose directory username was reassigned
DISPLACED_USERNAME_PREFIX = "~"


class ReconciliationError(Exception):
    """Local state could not be brought in line with the directory."""

    def __init__(self, username: str, detail: str):
        self.username = username
        self.detail = detail
        super().__init__(f"Reconciliation failed for '{username}': {detail}")


class IdentityMismatchError(ReconciliationError):
    """Fetched identity is not the one the local record expects."""
    pass


class IdentitySyncEngine:
    """Upserts a RemoteIdentity and fully syncs its group memberships."""

    def __init__(self, store: IdentityStore, clock: Callable[[], datetime] = utcnow):
        """Initialize sync engine.

        Args:
            store: Local identity store
            clock: Source of "now" for updated_at (UTC-aware)
        """
        self.store = store
        self.clock = clock

    def reconcile(
        self,
        remote: RemoteIdentity,
        token: Optional[SessionToken] = None,
        expected_key: Optional[str] = None,
    ) -> LocalUser:
        """Bring the local user row and memberships in line with ``remote``.

        Args:
            remote: Identity freshly fetched from the directory
            token: Current SSO token to store on the user (kept as-is when None)
            expected_key: Crowd key the caller already holds for this user;
                a different ``remote.key`` aborts before any write

        Returns:
            Snapshot of the reconciled user

        Raises:
            IdentityMismatchError: If ``expected_key`` does not match ``remote.key``
            ReconciliationError: If any persistence step fails (nothing is committed)
        """
        if expected_key is not None and remote.key != expected_key:
            logger.warning(
                f"Directory returned key '{remote.key}' for '{remote.username}', local record holds '{expected_key}'"
            )
            raise IdentityMismatchError(remote.username, "crowd key changed for cached user")

        now = self.clock()
        try:
            with self.store.transaction() as tx:
                user = tx.users.get_by_crowd_key(remote.key)
                self._release_username(tx, remote)
                if user is None:
                    user = tx.users.add(CrowdUser(
                        crowd_key=remote.key,
                        username=remote.username,
                        email=remote.email,
                        created_at=now,
                        updated_at=now,
                    ))
                    logger.info(f"Created local user '{remote.username}' (key={remote.key}, id={user.id})")

                user.username = remote.username
                user.email = remote.email
                user.display_name = remote.display_name
                user.first_name = remote.first_name
                user.last_name = remote.last_name
                if token is not None:
                    user.sso_token = str(token)
                user.updated_at = now

                group_ids: Dict[str, int] = {
                    name: tx.groups.get_or_create(name).id for name in sorted(remote.groups)
                }
                added, removed = tx.memberships.replace_memberships(user.id, group_ids.values())
                tx.flush()
                snapshot = user.to_local_user()
        except SQLAlchemyError as e:
            detail = describe_db_error(e)
            logger.error(f"Reconciliation rolled back for '{remote.username}': {detail}")
            raise ReconciliationError(remote.username, detail) from e

        names_by_id = {group_id: name for name, group_id in group_ids.items()}
        logger.info(
            f"Reconciled '{snapshot.username}' (id={snapshot.id}): "
            f"{len(snapshot.groups)} group(s), +{len(added)}/-{len(removed)}"
        )
        audit.safe_log_auth_event(
            "sync",
            snapshot.username,
            details={
                "crowd_key": snapshot.crowd_key,
                "groups_added": sorted(names_by_id[g] for g in added),
                "groups_removed_count": len(removed),
            },
        )
        return snapshot

    def _release_username(self, tx: StoreTransaction, remote: RemoteIdentity) -> None:
        """Free ``remote.username`` if a row with a different key still holds it."""
        holder = tx.users.get_by_username(remote.username)
        if holder is None or holder.crowd_key == remote.key:
            return
        displaced = f"{DISPLACED_USERNAME_PREFIX}{holder.crowd_key}"
        logger.warning(
            f"Username '{remote.username}' moved from key '{holder.crowd_key}' to '{remote.key}'; "
            f"displacing local id={holder.id} to '{displaced}'"
        )
        holder.username = displaced
        tx.flush()
