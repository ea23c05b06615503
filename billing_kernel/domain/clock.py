"""
Clock -- Injectable time source.

Responsibility:
    Services and the rule engine never call ``datetime.now()`` directly.
    Time-of-day and day-of-week rule conditions are evaluated against a
    ``now`` supplied by the caller, which obtains it from a Clock.

Architecture position:
    Kernel > Domain -- pure core, zero I/O except SystemClock.

Audit relevance:
    Audit event timestamps, rule creation stamps and allocation stamps are
    all taken from an injected Clock, so tests can assert exact values.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo


class Clock(ABC):
    """
    Abstract clock interface.

    Guarantees:
        - ``now_utc()`` returns a timezone-aware UTC ``datetime``.
        - ``now_local(tz)`` returns the same instant in the merchant's zone.
    """

    @abstractmethod
    def now_utc(self) -> datetime:
        """Get the current UTC time."""
        ...

    def now_local(self, tz_name: str) -> datetime:
        """Current time converted to an IANA timezone (e.g. ``America/New_York``)."""
        return self.now_utc().astimezone(ZoneInfo(tz_name))


class SystemClock(Clock):
    """Production clock backed by the system time."""

    def now_utc(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Test clock with controlled time.

    Guarantees:
        - ``now_utc()`` returns the same value on repeated calls until
          ``advance()`` or ``set_time()`` is called.
    """

    def __init__(self, fixed_time: datetime | None = None):
        self._fixed_time = fixed_time or datetime(
            2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc
        )
        self._offset = timedelta()

    def now_utc(self) -> datetime:
        return (self._fixed_time + self._offset).astimezone(timezone.utc)

    def set_time(self, time: datetime) -> None:
        """Set the clock to a specific (timezone-aware) time."""
        if time.tzinfo is None:
            raise ValueError("DeterministicClock requires a timezone-aware datetime")
        self._fixed_time = time
        self._offset = timedelta()

    def advance(self, seconds: int = 1) -> None:
        self._offset += timedelta(seconds=seconds)
