"""Storage-layer exceptions. Repositories never leak SQLAlchemy error types to callers."""


class StorageError(Exception):
    """Raised when a persistence operation fails; carries the failed operation's description."""

    def __init__(self, operation: str, cause: Exception | None = None) -> None:
        self.operation = operation
        self.cause = cause
        self.message = f"Storage error while {operation}"
        super().__init__(self.message)


class ConcurrencyConflictError(StorageError):
    """Raised when a row changed underneath an update (optimistic version check failed)."""


class TransactionStateError(RuntimeError):
    """Programmer error in the transaction protocol (begin twice, commit with nothing open)."""
