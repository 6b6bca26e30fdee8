"""Instant helpers.

Every instant handled by the core is a timezone-aware UTC ``datetime``. Calendar
values entered by people (a requested date, a time of day, duty hours) are expressed
in ``settings.local_timezone`` and converted here at the boundary.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timezone

from booking_core.settings import settings


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def as_utc(dt: datetime) -> datetime:
    # SQLite hands back naive values; they were written as UTC.
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def combine_local(target_date: date, time_of_day: time) -> datetime:
    local = datetime.combine(target_date, time_of_day.replace(tzinfo=None), tzinfo=settings.tz)
    return local.astimezone(timezone.utc)


def local_today(now: datetime | None = None) -> date:
    return as_utc(now or utcnow()).astimezone(settings.tz).date()


def to_local(dt: datetime) -> datetime:
    return as_utc(dt).astimezone(settings.tz)


def format_local_time(dt: datetime) -> str:
    return to_local(dt).strftime("%I:%M %p").lstrip("0")


@dataclass(frozen=True)
class TimeWindow:
    """Half-open instant interval ``[start, end)``."""

    start: datetime
    end: datetime

    def normalized(self) -> "TimeWindow":
        return TimeWindow(as_utc(self.start), as_utc(self.end))

    @property
    def is_valid(self) -> bool:
        return as_utc(self.end) > as_utc(self.start)

    def overlaps(self, other: "TimeWindow") -> bool:
        return as_utc(self.start) < as_utc(other.end) and as_utc(self.end) > as_utc(other.start)
