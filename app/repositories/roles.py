"""Role repository: role catalogue, role-permission links and user-role grants."""

import uuid
from datetime import datetime

from sqlalchemy.orm import Session

from app.models import Role, RolePermission, UserRole
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


class RoleRepository:
    """Persistence for Role, RolePermission and UserRole rows."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def get(self, role_id: uuid.UUID) -> Role | None:
        return get_by_id(self._session, Role, role_id)

    def list_all(self) -> list[Role]:
        return list_all(self._session, Role)

    def paged(self, page: int, page_size: int) -> Page[Role]:
        return paged(self._session, Role, page, page_size, Role.name)

    def add(self, role: Role) -> Role:
        return add_entity(self._session, role)

    def update(self, role: Role) -> Role:
        return update_entity(self._session, role)

    def delete(self, role_id: uuid.UUID) -> bool:
        """Deactivate a role. System roles are immutable and are left untouched."""
        role = self.get(role_id)
        if role is None or role.is_system_role:
            return False
        role.is_active = False
        self.update(role)
        return True

    def exists(self, role_id: uuid.UUID) -> bool:
        return exists(self._session, Role, role_id)

    def by_name(self, name: str) -> Role | None:
        with storage_operation(f"retrieving role by name {name}"):
            return self._session.query(Role).filter(Role.name == name).first()

    def active_roles(self) -> list[Role]:
        """Active roles ordered by priority, then name."""
        with storage_operation("retrieving active roles"):
            return (
                self._session.query(Role)
                .filter(Role.is_active.is_(True))
                .order_by(Role.priority, Role.name)
                .all()
            )

    def live_roles_for_user(self, user_id: uuid.UUID, now: datetime) -> list[Role]:
        """Active roles reachable through the user's live grants, by priority then name."""
        with storage_operation(f"retrieving user roles for user {user_id}"):
            return (
                self._session.query(Role)
                .join(UserRole, UserRole.role_id == Role.id)
                .filter(UserRole.user_id == user_id)
                .filter(live_clause(UserRole.is_active, UserRole.expires_at, now))
                .filter(Role.is_active.is_(True))
                .order_by(Role.priority, Role.name)
                .distinct()
                .all()
            )

    def live_grants_for_user(self, user_id: uuid.UUID, now: datetime) -> list[UserRole]:
        with storage_operation(f"retrieving role grants for user {user_id}"):
            return (
                self._session.query(UserRole)
                .filter(UserRole.user_id == user_id)
                .filter(live_clause(UserRole.is_active, UserRole.expires_at, now))
                .all()
            )

    def active_grant(self, user_id: uuid.UUID, role_id: uuid.UUID) -> UserRole | None:
        """The active grant for (user, role), expired or not."""
        with storage_operation("retrieving active role grant"):
            return (
                self._session.query(UserRole)
                .filter(UserRole.user_id == user_id)
                .filter(UserRole.role_id == role_id)
                .filter(UserRole.is_active.is_(True))
                .first()
            )

    def add_grant(self, grant: UserRole) -> UserRole:
        return add_entity(self._session, grant)

    def update_grant(self, grant: UserRole) -> UserRole:
        return update_entity(self._session, grant)

    def link_permission(self, role_id: uuid.UUID, permission_id: uuid.UUID) -> RolePermission:
        """Attach a permission to a role; returns the existing link if already present."""
        with storage_operation("retrieving role permission link"):
            link = (
                self._session.query(RolePermission)
                .filter(RolePermission.role_id == role_id)
                .filter(RolePermission.permission_id == permission_id)
                .first()
            )
        if link is not None:
            return link
        return add_entity(
            self._session, RolePermission(role_id=role_id, permission_id=permission_id)
        )
