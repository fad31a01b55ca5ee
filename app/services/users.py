"""User provisioning: account creation, role grants, direct permission grants, built-in roles."""

import logging
import uuid
from datetime import datetime

from app.core.clock import Clock, SystemClock
from app.core.security import CredentialHasher, InvalidInputError
from app.models import Permission, Role, User, UserPermission, UserRole
from app.repositories.unit_of_work import UnitOfWork
from app.schemas.auth import CreateUserRequest
from app.services.permissions import PermissionResolver

logger = logging.getLogger(__name__)

# Built-in roles: (name, display name, priority). Lower priority sorts first.
SYSTEM_ROLES: list[tuple[str, str, int]] = [
    ("Admin", "Administrator", 1),
    ("Manager", "Manager", 2),
    ("TiepNhan", "Intake officer", 3),
    ("ThuLy", "Case handler", 4),
    ("LanhDao", "Approving leader", 5),
    ("TraKetQua", "Result delivery officer", 6),
    ("Viewer", "Viewer", 7),
]


class ConflictError(Exception):
    """A unique value (username, email, active role grant) is already taken."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class NotFoundError(LookupError):
    """Referenced user, role or permission does not exist."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class UserProvisioning:
    """
    Administrative writes against the directory.

    Each method runs in its own transaction on the given unit of work and commits
    before returning.
    """

    def __init__(
        self, uow: UnitOfWork, hasher: CredentialHasher, clock: Clock | None = None
    ) -> None:
        self._uow = uow
        self._hasher = hasher
        self._clock = clock or SystemClock()

    def create_user(self, request: CreateUserRequest) -> User:
        username = request.username.strip()
        email = request.email.strip()
        if not self._hasher.is_strong(request.password):
            raise InvalidInputError(
                "Password must be at least 8 characters and mix upper, lower, digit and symbol."
            )

        with self._uow.transaction():
            if self._uow.users.username_exists(username):
                raise ConflictError(f"Username '{username}' already exists")
            if self._uow.users.email_exists(email):
                raise ConflictError(f"Email '{email}' already exists")

            password_hash, salt = self._hasher.hash(request.password)
            user = User(
                username=username,
                email=email,
                full_name=request.full_name.strip(),
                phone=request.phone,
                department=request.department,
                unit=request.unit,
                position=request.position,
                password_hash=password_hash,
                salt=salt,
                is_active=True,
            )
            self._uow.users.add(user)

        logger.info("User created: %s", user.id)
        return user

    def get_user(self, user_id: uuid.UUID) -> User | None:
        with self._uow.transaction():
            return self._uow.users.get(user_id)

    def role_names(self, user_id: uuid.UUID) -> list[str]:
        """Names of the user's live roles, ordered by priority then name."""
        with self._uow.transaction():
            return PermissionResolver(self._uow, self._clock).live_role_names(user_id)

    def assign_role(
        self,
        user_id: uuid.UUID,
        role_name: str,
        expires_at: datetime | None = None,
        assigned_by: str | None = None,
        notes: str | None = None,
    ) -> UserRole:
        """Grant a role. A second active grant for the same user and role is a conflict."""
        with self._uow.transaction():
            user, role = self._require_user(user_id), self._require_role(role_name)
            if self._uow.roles.active_grant(user.id, role.id) is not None:
                raise ConflictError(f"User {user_id} already holds role '{role_name}'")
            grant = UserRole(
                user_id=user.id,
                role_id=role.id,
                assigned_at=self._clock.now(),
                expires_at=expires_at,
                assigned_by=assigned_by,
                is_active=True,
                notes=notes,
            )
            self._uow.roles.add_grant(grant)

        logger.info("Role %s assigned to user %s", role_name, user_id)
        return grant

    def revoke_role(self, user_id: uuid.UUID, role_name: str) -> bool:
        """Deactivate the active grant. Returns False if there was none."""
        with self._uow.transaction():
            role = self._require_role(role_name)
            grant = self._uow.roles.active_grant(user_id, role.id)
            if grant is None:
                return False
            grant.is_active = False
            self._uow.roles.update_grant(grant)

        logger.info("Role %s revoked from user %s", role_name, user_id)
        return True

    def grant_permission(
        self,
        user_id: uuid.UUID,
        code: str,
        is_granted: bool = True,
        expires_at: datetime | None = None,
        granted_by: str | None = None,
    ) -> UserPermission:
        with self._uow.transaction():
            user = self._require_user(user_id)
            permission = self._uow.permissions.by_code(code)
            if permission is None:
                raise NotFoundError(f"Permission '{code}' not found")
            grant = UserPermission(
                user_id=user.id,
                permission_id=permission.id,
                is_granted=is_granted,
                granted_at=self._clock.now(),
                expires_at=expires_at,
                granted_by=granted_by,
            )
            self._uow.permissions.add_grant(grant)

        logger.info("Permission %s granted to user %s", code, user_id)
        return grant

    def ensure_permission(
        self,
        code: str,
        name: str,
        module: str | None = None,
        resource: str | None = None,
        action: str | None = None,
        roles: tuple[str, ...] = (),
    ) -> Permission:
        """Create the permission if missing and link it to the named roles."""
        with self._uow.transaction():
            permission = self._uow.permissions.by_code(code)
            if permission is None:
                permission = self._uow.permissions.add(
                    Permission(
                        code=code,
                        name=name,
                        module=module,
                        resource=resource,
                        action=action,
                    )
                )
            for role_name in roles:
                self._uow.roles.link_permission(self._require_role(role_name).id, permission.id)
        return permission

    def ensure_system_roles(self) -> list[Role]:
        """Create any missing built-in role. Existing rows are left as they are."""
        created: list[Role] = []
        with self._uow.transaction():
            for name, display_name, priority in SYSTEM_ROLES:
                if self._uow.roles.by_name(name) is not None:
                    continue
                role = Role(
                    name=name,
                    display_name=display_name,
                    priority=priority,
                    is_active=True,
                    is_system_role=True,
                )
                created.append(self._uow.roles.add(role))

        if created:
            logger.info("Created system roles: %s", ", ".join(r.name for r in created))
        return created

    def _require_user(self, user_id: uuid.UUID) -> User:
        user = self._uow.users.get(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        return user

    def _require_role(self, role_name: str) -> Role:
        role = self._uow.roles.by_name(role_name)
        if role is None:
            raise NotFoundError(f"Role '{role_name}' not found")
        return role
