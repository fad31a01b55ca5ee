"""Clock abstraction so lockout and expiry logic can be driven by tests."""

from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    """Source of the current time. Implementations must return aware UTC datetimes."""

    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)
