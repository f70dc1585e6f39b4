"""Injectable time source."""

from datetime import datetime, timedelta, timezone
from typing import Protocol


class Clock(Protocol):
    """Anything that can tell the current time."""

    def now(self) -> datetime:
        """Return the current time as an aware UTC datetime."""
        ...


class SystemClock:
    """Wall-clock time in UTC."""

    def now(self) -> datetime:
        """Return ``datetime.now`` in UTC."""
        return datetime.now(timezone.utc)


class FixedClock:
    """Clock frozen at a given instant until moved explicitly."""

    def __init__(self, current: datetime):
        """Initialize the clock at *current*."""
        self.current = current

    def now(self) -> datetime:
        """Return the frozen instant."""
        return self.current

    def advance(self, **kwargs: float) -> datetime:
        """Move the clock forward by ``timedelta(**kwargs)``."""
        self.current = self.current + timedelta(**kwargs)
        return self.current
