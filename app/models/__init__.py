"""SQLAlchemy ORM models."""

from app.models.audit_log import AuditLog
from app.models.base import Base
from app.models.permission import Permission, UserPermission
from app.models.role import Role, RolePermission, UserRole
from app.models.user import User

__all__ = [
    "AuditLog",
    "Base",
    "Permission",
    "Role",
    "RolePermission",
    "User",
    "UserPermission",
    "UserRole",
]
