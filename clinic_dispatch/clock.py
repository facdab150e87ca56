"""Clock abstraction and slot-time arithmetic.

All "what day is it" decisions go through a Clock so tests can pin today
deterministically. Time-of-day values are plain ``datetime.time`` objects;
the helpers below are the only place that parses or formats them.
"""
from datetime import date, datetime, time, timedelta
from typing import Iterator, Optional
from zoneinfo import ZoneInfo

from clinic_dispatch.errors import ValidationError

WEEKDAY_NAMES = (
    "monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"
)


class Clock:
    """Source of the current time."""

    def now(self) -> datetime:
        raise NotImplementedError

    def today(self) -> date:
        return self.now().date()


class SystemClock(Clock):
    """Wall-clock time in the clinic's timezone."""

    def __init__(self, timezone_name: str = "UTC"):
        self.zone = ZoneInfo(timezone_name)

    def now(self) -> datetime:
        return datetime.now(self.zone)


class FixedClock(Clock):
    """Clock pinned to a given instant (tests, replays)."""

    def __init__(self, instant: datetime):
        self.instant = instant

    def now(self) -> datetime:
        return self.instant

    def advance(self, **delta) -> None:
        """Move the pinned instant forward, e.g. ``advance(minutes=30)``."""
        self.instant = self.instant + timedelta(**delta)


def parse_date(value) -> date:
    """Parse ``YYYY-MM-DD`` (or pass a date through)."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value), "%Y-%m-%d").date()
    except ValueError:
        raise ValidationError(f"Invalid date '{value}', expected YYYY-MM-DD")


def parse_time(value) -> time:
    """Parse 24h ``HH:MM`` (or pass a time through)."""
    if isinstance(value, time):
        return value.replace(second=0, microsecond=0)
    try:
        return datetime.strptime(str(value), "%H:%M").time()
    except ValueError:
        raise ValidationError(f"Invalid time '{value}', expected HH:MM (24h)")


def format_time(value: Optional[time]) -> Optional[str]:
    if value is None:
        return None
    return value.strftime("%H:%M")


def add_minutes(start: time, minutes: int) -> time:
    """Slot end for a slot starting at ``start``. Wraps past midnight."""
    anchor = datetime.combine(date(2000, 1, 1), start)
    return (anchor + timedelta(minutes=minutes)).time()


def iter_slot_times(start: time, end: time, duration_minutes: int) -> Iterator[time]:
    """
    Enumerate slot starts ``start, start+d, start+2d, ...``.

    A slot is yielded only if it also ends at or before ``end``.

    Raises:
        ValidationError: If duration is not positive
    """
    if duration_minutes <= 0:
        raise ValidationError(
            f"Slot duration must be positive, got {duration_minutes}"
        )

    anchor = date(2000, 1, 1)
    current = datetime.combine(anchor, start)
    limit = datetime.combine(anchor, end)
    step = timedelta(minutes=duration_minutes)

    while current + step <= limit:
        yield current.time()
        current += step


def weekday_name(value: date) -> str:
    return WEEKDAY_NAMES[value.weekday()]
