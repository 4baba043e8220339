"""Database package."""

from mylab.db.models import (
    AccessGrant,
    AccessMode,
    AuditEntry,
    Base,
    DownloadToken,
    GrantRole,
    ObjectType,
    Organization,
    User,
)
from mylab.db.session import DbSession, close_db, get_db_session, init_db

__all__ = [
    "DbSession",
    "get_db_session",
    "init_db",
    "close_db",
    "Base",
    "Organization",
    "User",
    "ObjectType",
    "GrantRole",
    "AccessMode",
    "AccessGrant",
    "DownloadToken",
    "AuditEntry",
]
