"""Injectable time source."""

from abc import ABC, abstractmethod
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class Clock(ABC):
    """Source of the current time for the engine."""

    @abstractmethod
    def now(self) -> datetime:
        """Return the current time (aware, UTC)."""


class SystemClock(Clock):
    """Wall clock."""

    def now(self) -> datetime:
        return utcnow()
