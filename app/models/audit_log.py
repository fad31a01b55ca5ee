"""ORM model for the append-only audit log."""

import uuid

from sqlalchemy import Boolean, Column, ForeignKey, String, Text, Uuid

from app.models.base import Base, UTCDateTime, utcnow


class AuditLog(Base):
    """One security-relevant state transition. Rows are never updated or deleted here."""

    __tablename__ = "audit_logs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(
        Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    action = Column(String(100), nullable=False, index=True)
    resource = Column(String(100), nullable=True)
    resource_id = Column(String(100), nullable=True)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(String(500), nullable=True)
    timestamp = Column(UTCDateTime, nullable=False, default=utcnow, index=True)
    is_success = Column(Boolean, nullable=False, default=True)
    error_message = Column(String(500), nullable=True)
    additional_data = Column(Text, nullable=True)
