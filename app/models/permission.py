"""ORM models for permissions and direct user-permission grants."""

import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Index, String, Uuid

from app.models.base import Base, UTCDateTime, utcnow


class Permission(Base):
    """
    Permission identified by a stable code (e.g. "document.receive").

    module/resource/action classify the permission for listing; authorization checks
    only ever compare codes.
    """

    __tablename__ = "permissions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    code = Column(String(100), nullable=False, unique=True, index=True)
    name = Column(String(100), nullable=False)
    description = Column(String(500), nullable=True)
    module = Column(String(50), nullable=True, index=True)
    resource = Column(String(50), nullable=True)
    action = Column(String(50), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    is_system_permission = Column(Boolean, nullable=False, default=False)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=True, onupdate=utcnow)


class UserPermission(Base):
    """Direct grant that bypasses roles. Live iff is_granted and not expired."""

    __tablename__ = "user_permissions"
    __table_args__ = (
        Index("ix_user_permissions_user_permission", "user_id", "permission_id"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    permission_id = Column(
        Uuid, ForeignKey("permissions.id", ondelete="CASCADE"), nullable=False
    )
    is_granted = Column(Boolean, nullable=False, default=True, index=True)
    granted_by = Column(String(50), nullable=True)
    granted_at = Column(UTCDateTime, nullable=False, default=utcnow)
    expires_at = Column(UTCDateTime, nullable=True, index=True)
