"""Directory store: per-aggregate repositories behind a unit of work."""

from app.repositories.audit import AuditRepository
from app.repositories.common import Page
from app.repositories.errors import (
    ConcurrencyConflictError,
    StorageError,
    TransactionStateError,
)
from app.repositories.permissions import PermissionRepository
from app.repositories.roles import RoleRepository
from app.repositories.unit_of_work import UnitOfWork
from app.repositories.users import UserRepository

__all__ = [
    "AuditRepository",
    "ConcurrencyConflictError",
    "Page",
    "PermissionRepository",
    "RoleRepository",
    "StorageError",
    "TransactionStateError",
    "UnitOfWork",
    "UserRepository",
]
