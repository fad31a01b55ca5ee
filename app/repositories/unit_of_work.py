"""Transactional boundary over the per-aggregate repositories."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from types import TracebackType

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.repositories.audit import AuditRepository
from app.repositories.common import storage_operation, wrap_storage_error
from app.repositories.errors import TransactionStateError
from app.repositories.permissions import PermissionRepository
from app.repositories.roles import RoleRepository
from app.repositories.users import UserRepository

logger = logging.getLogger(__name__)


class UnitOfWork:
    """
    One request-scoped session plus the repositories that share it.

    Not thread-safe and never shared between concurrent callers: build one per request
    or per logical operation. begin() while a transaction is open and commit() with
    none open are programmer errors and raise TransactionStateError.
    """

    def __init__(self, session: Session) -> None:
        self.session = session
        self.users = UserRepository(session)
        self.roles = RoleRepository(session)
        self.permissions = PermissionRepository(session)
        self.audit_logs = AuditRepository(session)
        self._transaction_open = False

    @property
    def in_transaction(self) -> bool:
        return self._transaction_open

    def begin(self) -> None:
        if self._transaction_open:
            raise TransactionStateError("Transaction already started")
        with storage_operation("starting transaction"):
            if not self.session.in_transaction():
                self.session.begin()
        self._transaction_open = True
        logger.debug("Database transaction started")

    def save_changes(self) -> None:
        """Flush pending changes without ending the transaction."""
        with storage_operation("saving changes"):
            self.session.flush()

    def commit(self) -> None:
        """Commit the open transaction. On failure the transaction is rolled back first."""
        if not self._transaction_open:
            raise TransactionStateError("No active transaction to commit")
        try:
            self.session.commit()
        except SQLAlchemyError as e:
            logger.error("Error committing database transaction", exc_info=True)
            self.rollback()
            raise wrap_storage_error(e, "committing transaction") from e
        self._transaction_open = False
        logger.debug("Database transaction committed")

    def rollback(self) -> None:
        """Roll back the open transaction, if any. Loaded entities are expired."""
        if not self._transaction_open and not self.session.in_transaction():
            return
        self._transaction_open = False
        with storage_operation("rolling back transaction"):
            self.session.rollback()
        logger.debug("Database transaction rolled back")

    @contextmanager
    def transaction(self) -> Iterator[UnitOfWork]:
        """begin -> work -> commit; any exception (cancellation included) rolls back."""
        self.begin()
        try:
            yield self
        except BaseException:
            self.rollback()
            raise
        self.commit()

    def close(self) -> None:
        if self._transaction_open:
            logger.warning("Closing unit of work with an open transaction; rolling back")
            self.rollback()
        self.session.close()

    def __enter__(self) -> UnitOfWork:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()
