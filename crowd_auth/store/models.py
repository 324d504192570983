"""ORM models for locally persisted Crowd identities.

Tables:
    crowd_auth_users            one row per Crowd key
    crowd_auth_groups           one row per group name, created lazily
    crowd_auth_group_auth_user  membership edges, cascading on either side
"""
from __future__ import annotations
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Table
from sqlalchemy.types import TypeDecorator
from sqlalchemy.orm import Mapped, mapped_column, relationship

from crowd_auth.core.models import LocalUser

from .db import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC timestamps, also on SQLite which stores them naive."""
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


membership_table = Table(
    "crowd_auth_group_auth_user",
    Base.metadata,
    Column("crowd_group_id", Integer, ForeignKey("crowd_auth_groups.id", ondelete="CASCADE"), primary_key=True),
    Column("crowd_user_id", Integer, ForeignKey("crowd_auth_users.id", ondelete="CASCADE"), primary_key=True),
    Column("created_at", UTCDateTime(timezone=True), nullable=False, default=utcnow),
    Column("updated_at", UTCDateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow),
)


class CrowdGroup(Base):
    __tablename__ = "crowd_auth_groups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    users: Mapped[List["CrowdUser"]] = relationship(
        secondary=membership_table, back_populates="groups", passive_deletes=True
    )

    def __repr__(self) -> str:
        return f"CrowdGroup(id={self.id!r}, name={self.name!r})"


class CrowdUser(Base):
    """A Crowd identity mirrored locally.

    ``crowd_key`` is the durable foreign identity; ``id`` is local only and is
    never sent to the directory. ``sso_token`` and ``remember_token`` are
    excluded from repr.
    """
    __tablename__ = "crowd_auth_users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    crowd_key: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    username: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    email: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    display_name: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    first_name: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    last_name: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    sso_token: Mapped[Optional[str]] = mapped_column(String(255), index=True, nullable=True)
    remember_token: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(timezone=True), default=utcnow, nullable=False)

    groups: Mapped[List[CrowdGroup]] = relationship(
        secondary=membership_table, back_populates="users", passive_deletes=True
    )

    def __repr__(self) -> str:
        return f"CrowdUser(id={self.id!r}, crowd_key={self.crowd_key!r}, username={self.username!r})"

    def to_local_user(self) -> LocalUser:
        """Detach-safe snapshot of the row and its current group names."""
        return LocalUser(
            id=self.id,
            crowd_key=self.crowd_key,
            username=self.username,
            email=self.email,
            display_name=self.display_name,
            first_name=self.first_name,
            last_name=self.last_name,
            sso_token=self.sso_token,
            remember_token=self.remember_token,
            created_at=self.created_at,
            updated_at=self.updated_at,
            groups=frozenset(group.name for group in self.groups),
        )
