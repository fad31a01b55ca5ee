"""Permission repository: catalogue, per-role and per-user permission queries."""

import uuid
from datetime import datetime

from sqlalchemy.orm import Session

from app.models import Permission, Role, RolePermission, UserPermission, UserRole
from app.repositories.common import (
    add_entity,
    exists,
    get_by_id,
    Page,
    list_all,
    live_clause,
    paged,
    storage_operation,
    update_entity,
)


class PermissionRepository:
    """Persistence for Permission and UserPermission rows."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def get(self, permission_id: uuid.UUID) -> Permission | None:
        return get_by_id(self._session, Permission, permission_id)

    def list_all(self) -> list[Permission]:
        return list_all(self._session, Permission)

    def paged(self, page: int, page_size: int) -> Page[Permission]:
        return paged(self._session, Permission, page, page_size, Permission.code)

    def add(self, permission: Permission) -> Permission:
        return add_entity(self._session, permission)

    def update(self, permission: Permission) -> Permission:
        return update_entity(self._session, permission)

    def delete(self, permission_id: uuid.UUID) -> bool:
        """Deactivate a permission so it stops contributing to any user's set."""
        permission = self.get(permission_id)
        if permission is None:
            return False
        permission.is_active = False
        self.update(permission)
        return True

    def exists(self, permission_id: uuid.UUID) -> bool:
        return exists(self._session, Permission, permission_id)

    def by_code(self, code: str) -> Permission | None:
        with storage_operation(f"retrieving permission by code {code}"):
            return self._session.query(Permission).filter(Permission.code == code).first()

    def for_role(self, role_id: uuid.UUID) -> list[Permission]:
        """Active permissions linked to the role."""
        with storage_operation(f"retrieving permissions by role {role_id}"):
            return (
                self._session.query(Permission)
                .join(RolePermission, RolePermission.permission_id == Permission.id)
                .filter(RolePermission.role_id == role_id)
                .filter(Permission.is_active.is_(True))
                .order_by(Permission.code)
                .all()
            )

    def direct_for_user(self, user_id: uuid.UUID, now: datetime) -> list[Permission]:
        """Active permissions from the user's live direct grants (is_granted and not expired)."""
        with storage_operation(f"retrieving direct permissions for user {user_id}"):
            return (
                self._session.query(Permission)
                .join(UserPermission, UserPermission.permission_id == Permission.id)
                .filter(UserPermission.user_id == user_id)
                .filter(
                    live_clause(UserPermission.is_granted, UserPermission.expires_at, now)
                )
                .filter(Permission.is_active.is_(True))
                .order_by(Permission.code)
                .all()
            )

    def for_user(self, user_id: uuid.UUID, now: datetime) -> list[Permission]:
        """
        Role-derived plus directly granted permissions, deduplicated by permission id.

        A direct grant with is_granted=False does not remove a role-derived permission.
        """
        with storage_operation(f"retrieving permissions by user {user_id}"):
            role_derived = (
                self._session.query(Permission)
                .join(RolePermission, RolePermission.permission_id == Permission.id)
                .join(UserRole, UserRole.role_id == RolePermission.role_id)
                .join(Role, Role.id == UserRole.role_id)
                .filter(UserRole.user_id == user_id)
                .filter(live_clause(UserRole.is_active, UserRole.expires_at, now))
                .filter(Role.is_active.is_(True))
                .filter(Permission.is_active.is_(True))
                .all()
            )
        direct = self.direct_for_user(user_id, now)
        merged: dict[uuid.UUID, Permission] = {}
        for permission in [*role_derived, *direct]:
            merged.setdefault(permission.id, permission)
        return list(merged.values())

    def active_permissions(self) -> list[Permission]:
        """Active permissions ordered by module, resource, action."""
        with storage_operation("retrieving active permissions"):
            return (
                self._session.query(Permission)
                .filter(Permission.is_active.is_(True))
                .order_by(Permission.module, Permission.resource, Permission.action)
                .all()
            )

    def add_grant(self, grant: UserPermission) -> UserPermission:
        return add_entity(self._session, grant)
