import logging
import re
from dataclasses import dataclass
from datetime import datetime, time

logger = logging.getLogger(__name__)

_TIME_FORMATS = ("%H:%M", "%H:%M:%S", "%I:%M %p", "%I:%M%p", "%I %p", "%I%p")
_RANGE_SEPARATOR = re.compile(r"\s*[-–—]\s*|\s+to\s+", re.IGNORECASE)


@dataclass(frozen=True)
class DutyHours:
    """A provider's daily availability window.

    ``start``/``end`` are ``None`` when the source string is absent or could not be
    parsed; such providers are treated as always available. ``raw`` keeps the original
    text for diagnostics.
    """

    start: time | None
    end: time | None
    raw: str | None = None

    @property
    def is_bounded(self) -> bool:
        return self.start is not None and self.end is not None

    def describe(self) -> str:
        if not self.is_bounded:
            return "any time"
        return f"{_format_time(self.start)} to {_format_time(self.end)}"


ALWAYS_AVAILABLE = DutyHours(start=None, end=None, raw=None)


def _format_time(value: time) -> str:
    return value.strftime("%I:%M %p").lstrip("0")


def parse_time_of_day(value: str) -> time | None:
    candidate = " ".join(value.strip().upper().split())
    for fmt in _TIME_FORMATS:
        try:
            return datetime.strptime(candidate, fmt).time()
        except ValueError:
            continue
    return None


def parse_duty_hours(raw: str | None) -> DutyHours:
    """Parse ``"08:00-17:00"`` or ``"8:00 AM - 5:00 PM"`` style strings."""
    if raw is None or not raw.strip():
        return ALWAYS_AVAILABLE
    parts = _RANGE_SEPARATOR.split(raw.strip(), maxsplit=1)
    if len(parts) != 2:
        logger.warning("duty_hours_unparseable", extra={"extra": {"raw": raw, "reason": "no_range"}})
        return DutyHours(start=None, end=None, raw=raw)
    start = parse_time_of_day(parts[0])
    end = parse_time_of_day(parts[1])
    if start is None or end is None:
        logger.warning("duty_hours_unparseable", extra={"extra": {"raw": raw, "reason": "bad_time"}})
        return DutyHours(start=None, end=None, raw=raw)
    if end <= start:
        logger.warning("duty_hours_unparseable", extra={"extra": {"raw": raw, "reason": "empty_range"}})
        return DutyHours(start=None, end=None, raw=raw)
    return DutyHours(start=start, end=end, raw=raw)
