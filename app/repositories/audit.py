"""Audit repository. Append and query only; entries are never updated or deleted."""

import uuid
from datetime import datetime

from sqlalchemy.orm import Session

from app.models import AuditLog
from app.repositories.common import add_entity, get_by_id, storage_operation

# Upper bounds on query sizes to keep audit reads cheap.
MAX_BY_ACTION = 1000
MAX_BY_DATE_RANGE = 10000


class AuditRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def add(self, entry: AuditLog) -> AuditLog:
        return add_entity(self._session, entry)

    def get(self, entry_id: uuid.UUID) -> AuditLog | None:
        return get_by_id(self._session, AuditLog, entry_id)

    def by_user(self, user_id: uuid.UUID, limit: int = 50) -> list[AuditLog]:
        with storage_operation(f"retrieving audit logs by user {user_id}"):
            return (
                self._session.query(AuditLog)
                .filter(AuditLog.user_id == user_id)
                .order_by(AuditLog.timestamp.desc())
                .limit(limit)
                .all()
            )

    def by_action(self, action: str) -> list[AuditLog]:
        with storage_operation(f"retrieving audit logs by action {action}"):
            return (
                self._session.query(AuditLog)
                .filter(AuditLog.action == action)
                .order_by(AuditLog.timestamp.desc())
                .limit(MAX_BY_ACTION)
                .all()
            )

    def by_date_range(self, start: datetime, end: datetime) -> list[AuditLog]:
        with storage_operation("retrieving audit logs by date range"):
            return (
                self._session.query(AuditLog)
                .filter(AuditLog.timestamp >= start)
                .filter(AuditLog.timestamp <= end)
                .order_by(AuditLog.timestamp.desc())
                .limit(MAX_BY_DATE_RANGE)
                .all()
            )
