"""SQLAlchemy engine, declarative base and session factory for the identity store.

Invariants:
    - One engine per IdentityStore
    - Sessions never expire loaded attributes on commit (snapshots are taken after commit)
"""
from __future__ import annotations
import logging

from sqlalchemy import MetaData, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

_naming_convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    """Base class for all identity store ORM models."""
    metadata = MetaData(naming_convention=_naming_convention)


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def create_store_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine for the given URL.

    In-memory SQLite shares one connection across sessions so that every
    session sees the same database. SQLite foreign keys are switched on
    so the membership table's ON DELETE CASCADE is honoured.
    """
    if not database_url or "://" not in database_url:
        raise ValueError("Database URL is not configured or invalid.")

    # Bound parameters carry SSO and remember tokens; keep them out of error messages
    kwargs = {"echo": echo, "future": True, "hide_parameters": True}
    if _is_sqlite(database_url):
        kwargs["connect_args"] = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    else:
        kwargs["pool_pre_ping"] = True

    logger.info(f"Creating identity store engine for {database_url.split('@')[-1]}")
    engine = create_engine(database_url, **kwargs)

    if _is_sqlite(database_url):
        @event.listens_for(engine, "connect")
        def _enable_sqlite_fks(dbapi_conn, conn_record):  # type: ignore[no-redef]
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, expire_on_commit=False, autoflush=True)


def describe_db_error(error: Exception) -> str:
    """Short, parameter-free description of a database error for logs and audit."""
    orig = getattr(error, "orig", None)
    if orig is not None:
        return f"{error.__class__.__name__}: {orig}"
    return error.__class__.__name__
