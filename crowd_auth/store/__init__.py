"""Local identity store (SQLAlchemy)."""
from .db import Base, create_session_factory, create_store_engine, describe_db_error
from .models import CrowdGroup, CrowdUser, membership_table
from .repository import (
    GroupRepository,
    IdentityStore,
    MembershipRepository,
    StoreTransaction,
    UserRepository,
)

__all__ = [
    "Base",
    "create_session_factory",
    "create_store_engine",
    "describe_db_error",
    "CrowdGroup",
    "CrowdUser",
    "membership_table",
    "GroupRepository",
    "IdentityStore",
    "MembershipRepository",
    "StoreTransaction",
    "UserRepository",
]
