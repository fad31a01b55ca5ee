"""Helpers shared by the per-aggregate repositories."""

import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Generic, TypeVar

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.repositories.errors import ConcurrencyConflictError, StorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def wrap_storage_error(error: SQLAlchemyError, operation: str) -> StorageError:
    """Translate a SQLAlchemy error into the storage error kind callers handle."""
    if isinstance(error, StaleDataError):
        return ConcurrencyConflictError(operation, error)
    return StorageError(operation, error)


@contextmanager
def storage_operation(operation: str) -> Iterator[None]:
    """Run a block of session work, logging and wrapping any SQLAlchemy failure."""
    try:
        yield
    except SQLAlchemyError as e:
        if isinstance(e, StaleDataError):
            logger.warning("Concurrent modification while %s", operation)
        else:
            logger.error("Error %s", operation, exc_info=True)
        raise wrap_storage_error(e, operation) from e


def get_by_id(session: Session, model: type[T], entity_id: uuid.UUID) -> T | None:
    with storage_operation(f"retrieving {model.__name__} {entity_id}"):
        return session.get(model, entity_id)


def list_all(session: Session, model: type[T]) -> list[T]:
    with storage_operation(f"retrieving all {model.__name__}"):
        return session.query(model).all()


@dataclass(frozen=True)
class Page(Generic[T]):
    """One page of rows plus the total row count."""

    items: list[T]
    total_count: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        return -(-self.total_count // self.page_size)

    @property
    def has_next_page(self) -> bool:
        return self.page < self.total_pages

    @property
    def has_previous_page(self) -> bool:
        return self.page > 1


def paged(
    session: Session, model: type[T], page: int, page_size: int, order_by: Any
) -> Page[T]:
    """1-based page of `model` rows in `order_by` order. Raises ValueError on page < 1 or size < 1."""
    if page < 1 or page_size < 1:
        raise ValueError("page and page_size must be at least 1")
    with storage_operation(f"retrieving {model.__name__} page {page}"):
        total = session.query(model).count()
        items = (
            session.query(model)
            .order_by(order_by)
            .offset((page - 1) * page_size)
            .limit(page_size)
            .all()
        )
    return Page(items=items, total_count=total, page=page, page_size=page_size)


def exists(session: Session, model: Any, entity_id: uuid.UUID) -> bool:
    with storage_operation(f"checking {model.__name__} existence"):
        return session.query(model.id).filter(model.id == entity_id).first() is not None


def add_entity(session: Session, entity: T) -> T:
    """Stage a new entity and flush so generated ids and constraints are applied now."""
    with storage_operation(f"adding {type(entity).__name__}"):
        session.add(entity)
        session.flush()
    return entity


def update_entity(session: Session, entity: T) -> T:
    """Flush pending changes to an entity; stale versions raise ConcurrencyConflictError."""
    with storage_operation(f"updating {type(entity).__name__}"):
        session.add(entity)
        session.flush()
    return entity


def live_clause(active_column: Any, expires_column: Any, now: datetime) -> Any:
    """SQL condition for a live grant: flag set and no expiry or expiry in the future."""
    return (active_column.is_(True)) & or_(
        expires_column.is_(None), expires_column > now
    )
