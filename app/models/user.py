"""ORM model for user accounts (credentials, lockout state, refresh token)."""

import uuid

from sqlalchemy import Boolean, Column, Integer, String, Uuid

from app.models.base import Base, UTCDateTime, utcnow


class User(Base):
    """
    User account for authentication and role-based access control.

    Never hard-deleted: deactivation clears is_active. The version column backs
    optimistic concurrency so concurrent logins cannot lose failed-attempt updates.
    """

    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    username = Column(String(50), nullable=False, unique=True, index=True)
    email = Column(String(200), nullable=False, unique=True, index=True)
    full_name = Column(String(100), nullable=False, default="")
    phone = Column(String(20), nullable=True)
    department = Column(String(100), nullable=True)
    unit = Column(String(100), nullable=True)
    position = Column(String(100), nullable=True)

    password_hash = Column(String(500), nullable=False)
    salt = Column(String(500), nullable=True)

    is_active = Column(Boolean, nullable=False, default=True, index=True)
    is_locked = Column(Boolean, nullable=False, default=False)
    failed_login_attempts = Column(Integer, nullable=False, default=0)
    locked_until = Column(UTCDateTime, nullable=True)
    last_login_at = Column(UTCDateTime, nullable=True)

    mfa_enabled = Column(Boolean, nullable=False, default=False)
    mfa_secret = Column(String(500), nullable=True)

    refresh_token = Column(String(500), nullable=True, index=True)
    refresh_token_expires_at = Column(UTCDateTime, nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=True, onupdate=utcnow)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}
