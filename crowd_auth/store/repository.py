"""Repositories implementing the local identity store contract.

The sync engine never touches ORM relationship collections directly; group
membership is changed only through ``MembershipRepository.replace_memberships``
inside an ``IdentityStore.transaction()`` scope, which commits on success and
rolls back on any exception.
"""
from __future__ import annotations
import logging
from contextlib import contextmanager
from typing import Iterable, Iterator, List, Optional, Set, Tuple

from sqlalchemy import delete, insert, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from crowd_auth.core.models import LocalUser

from .db import Base, create_session_factory, create_store_engine
from .models import CrowdGroup, CrowdUser, membership_table, utcnow

logger = logging.getLogger(__name__)


class UserRepository:
    """Point lookups and inserts for user rows."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, user_id: int) -> Optional[CrowdUser]:
        return self.session.get(CrowdUser, user_id)

    def get_by_crowd_key(self, crowd_key: str) -> Optional[CrowdUser]:
        return self.session.scalars(select(CrowdUser).where(CrowdUser.crowd_key == crowd_key)).first()

    def get_by_username(self, username: str) -> Optional[CrowdUser]:
        return self.session.scalars(select(CrowdUser).where(CrowdUser.username == username)).first()

    def get_by_sso_token(self, token: str) -> Optional[CrowdUser]:
        return self.session.scalars(select(CrowdUser).where(CrowdUser.sso_token == token)).first()

    def ids_by_display_name(self, fragment: str) -> List[int]:
        """Ids of users whose display name contains ``fragment`` (SQL LIKE, wildcards escaped)."""
        stmt = (
            select(CrowdUser.id)
            .where(CrowdUser.display_name.contains(fragment, autoescape=True))
            .order_by(CrowdUser.id)
        )
        return list(self.session.scalars(stmt))

    def add(self, user: CrowdUser) -> CrowdUser:
        self.session.add(user)
        self.session.flush()
        return user


class GroupRepository:
    """Lazily created groups, unique by name."""

    def __init__(self, session: Session):
        self.session = session

    def get_by_name(self, name: str) -> Optional[CrowdGroup]:
        return self.session.scalars(select(CrowdGroup).where(CrowdGroup.name == name)).first()

    def get_or_create(self, name: str) -> CrowdGroup:
        group = self.get_by_name(name)
        if group is None:
            group = CrowdGroup(name=name)
            self.session.add(group)
            self.session.flush()
            logger.info(f"Created local group '{name}' (id={group.id})")
        return group

    def all_names(self) -> List[str]:
        return list(self.session.scalars(select(CrowdGroup.name).order_by(CrowdGroup.name)))


class MembershipRepository:
    """Membership edges between users and groups."""

    def __init__(self, session: Session):
        self.session = session

    def group_ids_for(self, user_id: int) -> Set[int]:
        rows = self.session.execute(
            select(membership_table.c.crowd_group_id).where(membership_table.c.crowd_user_id == user_id)
        )
        return {row[0] for row in rows}

    def replace_memberships(self, user_id: int, target_group_ids: Iterable[int]) -> Tuple[Set[int], Set[int]]:
        """Make the user's edge set exactly ``target_group_ids``.

        Must run inside a transaction; callers rely on rollback to undo a
        partially applied replacement.

        Args:
            user_id: Local user id
            target_group_ids: Complete desired set of group ids

        Returns:
            Tuple of (added group ids, removed group ids)
        """
        target = set(target_group_ids)
        current = self.group_ids_for(user_id)
        stale = current - target
        missing = target - current

        if stale:
            self.session.execute(
                delete(membership_table).where(
                    membership_table.c.crowd_user_id == user_id,
                    membership_table.c.crowd_group_id.in_(stale),
                )
            )
        if missing:
            now = utcnow()
            self.session.execute(
                insert(membership_table),
                [
                    {"crowd_user_id": user_id, "crowd_group_id": group_id, "created_at": now, "updated_at": now}
                    for group_id in sorted(missing)
                ],
            )

        user = self.session.get(CrowdUser, user_id)
        if user is not None:
            self.session.expire(user, ["groups"])
        return missing, stale


class StoreTransaction:
    """Repositories sharing one session (and therefore one transaction)."""

    def __init__(self, session: Session):
        self.session = session
        self.users = UserRepository(session)
        self.groups = GroupRepository(session)
        self.memberships = MembershipRepository(session)

    def flush(self) -> None:
        self.session.flush()


class IdentityStore:
    """Local authoritative store for users, groups and memberships.

    Usage:
        store = IdentityStore.from_url("sqlite:///.runtime/crowd_auth.db")
        store.create_schema()
        with store.transaction() as tx:
            user = tx.users.get_by_crowd_key("K1")
    """

    def __init__(self, session_factory: sessionmaker[Session], engine: Optional[Engine] = None):
        self._session_factory = session_factory
        self.engine = engine

    @classmethod
    def from_url(cls, database_url: str, echo: bool = False) -> "IdentityStore":
        engine = create_store_engine(database_url, echo=echo)
        return cls(create_session_factory(engine), engine)

    def create_schema(self) -> None:
        """Create missing tables. Migrations are the host application's concern."""
        if self.engine is None:
            raise RuntimeError("IdentityStore was built without an engine; cannot create schema")
        Base.metadata.create_all(self.engine)

    @contextmanager
    def transaction(self) -> Iterator[StoreTransaction]:
        """Yield repositories bound to one session; commit on success, roll back on error."""
        session = self._session_factory()
        try:
            yield StoreTransaction(session)
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ─────────────────────────────────────────────────────────────────────────
    # Point lookups (each in its own short transaction)
    # ─────────────────────────────────────────────────────────────────────────
    def find_user(self, user_id: int) -> Optional[LocalUser]:
        with self.transaction() as tx:
            user = tx.users.get(user_id)
            return user.to_local_user() if user else None

    def find_user_by_username(self, username: str) -> Optional[LocalUser]:
        with self.transaction() as tx:
            user = tx.users.get_by_username(username)
            return user.to_local_user() if user else None

    def find_user_by_sso_token(self, token: str) -> Optional[LocalUser]:
        with self.transaction() as tx:
            user = tx.users.get_by_sso_token(token)
            return user.to_local_user() if user else None

    def user_ids_by_display_name(self, fragment: str) -> List[int]:
        with self.transaction() as tx:
            return tx.users.ids_by_display_name(fragment)

    def set_remember_token(self, user_id: int, remember_token: Optional[str]) -> Optional[LocalUser]:
        """Store (or clear, with None) the remember-me token without touching updated_at."""
        with self.transaction() as tx:
            user = tx.users.get(user_id)
            if user is None:
                return None
            user.remember_token = remember_token
            tx.flush()
            return user.to_local_user()

    def clear_remember_token_for_sso_token(self, token: str) -> Optional[LocalUser]:
        with self.transaction() as tx:
            user = tx.users.get_by_sso_token(token)
            if user is None:
                return None
            user.remember_token = None
            tx.flush()
            return user.to_local_user()

    def group_names(self) -> List[str]:
        with self.transaction() as tx:
            return tx.groups.all_names()
