"""User repository: lookups, uniqueness checks and refresh-token bookkeeping."""

import uuid
from datetime import datetime

from sqlalchemy.orm import Session

from app.models import Role, User, UserRole
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


class UserRepository:
    """
    Persistence for User rows.

    Username and email comparisons are exact (case-sensitive, as stored).
    """

    def __init__(self, session: Session) -> None:
        self._session = session

    def get(self, user_id: uuid.UUID, fresh: bool = False) -> User | None:
        """Load a user by id. fresh=True re-reads the row even if it is already in the session."""
        if not fresh:
            return get_by_id(self._session, User, user_id)
        with storage_operation(f"retrieving User {user_id}"):
            return self._session.get(User, user_id, populate_existing=True)

    def list_all(self) -> list[User]:
        return list_all(self._session, User)

    def paged(self, page: int, page_size: int) -> Page[User]:
        return paged(self._session, User, page, page_size, User.username)

    def list_active(self) -> list[User]:
        with storage_operation("retrieving active users"):
            return (
                self._session.query(User)
                .filter(User.is_active.is_(True))
                .order_by(User.username)
                .all()
            )

    def list_by_role(self, role_name: str, now: datetime) -> list[User]:
        """Users holding a live grant of the named role."""
        with storage_operation(f"retrieving users by role {role_name}"):
            return (
                self._session.query(User)
                .join(UserRole, UserRole.user_id == User.id)
                .join(Role, Role.id == UserRole.role_id)
                .filter(Role.name == role_name)
                .filter(live_clause(UserRole.is_active, UserRole.expires_at, now))
                .order_by(User.username)
                .all()
            )

    def add(self, user: User) -> User:
        return add_entity(self._session, user)

    def update(self, user: User) -> User:
        return update_entity(self._session, user)

    def delete(self, user_id: uuid.UUID) -> bool:
        """Soft-delete: users are deactivated, never removed. Returns False if absent."""
        user = self.get(user_id)
        if user is None:
            return False
        user.is_active = False
        self.update(user)
        return True

    def exists(self, user_id: uuid.UUID) -> bool:
        return exists(self._session, User, user_id)

    def by_username(self, username: str) -> User | None:
        with storage_operation("retrieving user by username"):
            return self._session.query(User).filter(User.username == username).first()

    def by_email(self, email: str) -> User | None:
        with storage_operation("retrieving user by email"):
            return self._session.query(User).filter(User.email == email).first()

    def username_exists(self, username: str, excluding: uuid.UUID | None = None) -> bool:
        with storage_operation("checking username existence"):
            query = self._session.query(User.id).filter(User.username == username)
            if excluding is not None:
                query = query.filter(User.id != excluding)
            return query.first() is not None

    def email_exists(self, email: str, excluding: uuid.UUID | None = None) -> bool:
        with storage_operation("checking email existence"):
            query = self._session.query(User.id).filter(User.email == email)
            if excluding is not None:
                query = query.filter(User.id != excluding)
            return query.first() is not None

    def by_refresh_token(self, refresh_token: str) -> User | None:
        """Exact match on the stored refresh token; expiry is the caller's check."""
        with storage_operation("retrieving user by refresh token"):
            return (
                self._session.query(User)
                .filter(User.refresh_token == refresh_token)
                .populate_existing()
                .first()
            )

    def clear_expired_refresh_tokens(self, now: datetime) -> int:
        """Null out refresh tokens whose expiry has passed. Returns rows touched."""
        with storage_operation("clearing expired refresh tokens"):
            users = (
                self._session.query(User)
                .filter(User.refresh_token.is_not(None))
                .filter(User.refresh_token_expires_at <= now)
                .all()
            )
            for user in users:
                user.refresh_token = None
                user.refresh_token_expires_at = None
            self._session.flush()
            return len(users)
