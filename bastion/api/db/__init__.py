"""Database module."""

from bastion.api.db.session import get_db, init_db, close_db, open_session
from bastion.api.db.models import (
    Base,
    User,
    Role,
    Permission,
    UserPermission,
    RolePermission,
    ApiKey,
    AuditLog,
    BlockedIP,
    TrustedUser,
)

__all__ = [
    "get_db",
    "init_db",
    "close_db",
    "open_session",
    "Base",
    "User",
    "Role",
    "Permission",
    "UserPermission",
    "RolePermission",
    "ApiKey",
    "AuditLog",
    "BlockedIP",
    "TrustedUser",
]
