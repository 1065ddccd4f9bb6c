"""
Clock abstraction used by every computation in the monitor.

The warehouse macros this engine replaces read current_timestamp implicitly.
Here the current time is always injected, so a pass over the same events with
the same clock produces the same output.

Timestamps are naive UTC datetimes, matching DuckDB TIMESTAMP columns.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol, Tuple


class Clock(Protocol):
    """Anything with a now() returning a naive UTC datetime."""

    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall-clock time in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)


class FixedClock:
    """
    Settable clock for tests and replays.

    Args:
        current: Initial time (naive UTC). Defaults to 2024-01-15 12:00:00.
    """

    def __init__(self, current: Optional[datetime] = None):
        self.current = current or datetime(2024, 1, 15, 12, 0, 0)

    def now(self) -> datetime:
        return self.current

    def set(self, current: datetime) -> None:
        self.current = current

    def advance(self, **kwargs) -> datetime:
        """Move the clock forward by timedelta(**kwargs) and return the new time."""
        self.current = self.current + timedelta(**kwargs)
        return self.current


def trailing_window(now: datetime, length: timedelta) -> Tuple[datetime, datetime]:
    """
    Half-open [start, end) range covering now - length through now inclusive.

    Event reads are half-open; the end is nudged past now so events stamped
    exactly at now are included.
    """
    return now - length, now + timedelta(microseconds=1)
