"""Booking time validation.

Rules are evaluated in a fixed order and the first failing rule supplies the reason:
end after start, not a past date, minimum lead time, provider duty hours, provider
availability. All flags on :class:`SchedulingCheck` are filled in regardless so callers
can show the full picture.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from booking_core.domain.results import OperationResult
from booking_core.domain.scheduling.duty_hours import ALWAYS_AVAILABLE, DutyHours, parse_duty_hours
from booking_core.domain.time_slots import ledger
from booking_core.infra.providers import ProviderDirectory
from booking_core.settings import settings
from booking_core.shared.clock import as_utc, combine_local, format_local_time, local_today, to_local, utcnow

logger = logging.getLogger(__name__)

END_BEFORE_START_REASON = "End time must be after start time."
PAST_DATE_REASON = "Cannot book for past dates."


@dataclass
class SchedulingCheck:
    ok: bool = True
    reason: str | None = None
    is_within_duty_hours: bool = True
    has_minimum_lead_time: bool = True
    is_provider_available: bool = True
    duty_hours: DutyHours = ALWAYS_AVAILABLE

    def fail(self, reason: str) -> None:
        if self.ok:
            self.ok = False
            self.reason = reason

    def as_result(self) -> OperationResult["SchedulingCheck"]:
        if self.ok:
            return OperationResult.success(self)
        return OperationResult.invalid(self.reason or "Requested time is not available.")


def _describe_lead_time(lead: timedelta) -> str:
    minutes = int(lead.total_seconds() // 60)
    if minutes % 60 == 0:
        hours = minutes // 60
        return f"{hours} hour" if hours == 1 else f"{hours} hours"
    return f"{minutes} minutes"


def lead_time_reason() -> str:
    return f"Bookings must be made at least {_describe_lead_time(settings.min_lead_time)} in advance."


def validate_minimum_lead_time(start_at: datetime, now: datetime | None = None) -> bool:
    current = as_utc(now or utcnow())
    return as_utc(start_at) >= current + settings.min_lead_time


def check_duty_hours(duty: DutyHours, start_time: time, end_time: time | None = None) -> bool:
    """Containment test on local times of day; unbounded duty hours always pass."""
    if not duty.is_bounded:
        return True
    if end_time is not None:
        return start_time >= duty.start and end_time <= duty.end
    return duty.start <= start_time < duty.end


async def resolve_duty_hours(directory: ProviderDirectory | None, provider_id: str) -> DutyHours:
    if directory is None:
        return ALWAYS_AVAILABLE
    raw = await directory.get_working_hours(provider_id)
    return parse_duty_hours(raw)


async def _evaluate(
    session: AsyncSession,
    provider_id: str,
    *,
    requested_date: date,
    start_time: time,
    end_time: time | None,
    start_at: datetime,
    end_at: datetime | None,
    directory: ProviderDirectory | None,
    now: datetime | None,
    exclude_booking_id: str | None,
) -> SchedulingCheck:
    check = SchedulingCheck()
    current = as_utc(now or utcnow())

    if end_at is not None and as_utc(end_at) <= as_utc(start_at):
        check.fail(END_BEFORE_START_REASON)
        return check

    if requested_date < local_today(current):
        check.has_minimum_lead_time = False
        check.fail(PAST_DATE_REASON)

    if not validate_minimum_lead_time(start_at, current):
        check.has_minimum_lead_time = False
        check.fail(lead_time_reason())

    check.duty_hours = await resolve_duty_hours(directory, provider_id)
    same_day = end_at is None or to_local(end_at).date() == requested_date
    within = same_day and check_duty_hours(check.duty_hours, start_time, end_time)
    if not within:
        check.is_within_duty_hours = False
        check.fail(f"Provider is only available from {check.duty_hours.describe()}.")

    if end_at is not None:
        busy = await ledger.has_overlap(
            session, provider_id, start_at, end_at, exclude_booking_id=exclude_booking_id
        )
    else:
        busy = await ledger.starts_inside_slot(session, provider_id, start_at)
    if busy:
        check.is_provider_available = False
        span = format_local_time(start_at)
        if end_at is not None:
            span = f"{span} to {format_local_time(end_at)}"
        check.fail(f"Provider is not available at {span}. Please select a different time.")

    if not check.ok:
        logger.info(
            "booking_time_rejected",
            extra={"extra": {"provider_id": provider_id, "reason": check.reason}},
        )
    return check


async def validate_booking_time(
    session: AsyncSession,
    provider_id: str,
    requested_date: date,
    start_time: time,
    end_time: time | None = None,
    *,
    directory: ProviderDirectory | None = None,
    now: datetime | None = None,
    exclude_booking_id: str | None = None,
) -> SchedulingCheck:
    """Validate a requested local date and time of day for ``provider_id``."""
    start_at = combine_local(requested_date, start_time)
    end_at = combine_local(requested_date, end_time) if end_time is not None else None
    return await _evaluate(
        session,
        provider_id,
        requested_date=requested_date,
        start_time=start_time,
        end_time=end_time,
        start_at=start_at,
        end_at=end_at,
        directory=directory,
        now=now,
        exclude_booking_id=exclude_booking_id,
    )


async def validate_window(
    session: AsyncSession,
    provider_id: str,
    start_at: datetime,
    end_at: datetime,
    *,
    directory: ProviderDirectory | None = None,
    now: datetime | None = None,
    exclude_booking_id: str | None = None,
) -> SchedulingCheck:
    """Same rules as :func:`validate_booking_time` for a window given as instants."""
    local_start = to_local(start_at)
    local_end = to_local(end_at)
    return await _evaluate(
        session,
        provider_id,
        requested_date=local_start.date(),
        start_time=local_start.time().replace(tzinfo=None),
        end_time=local_end.time().replace(tzinfo=None),
        start_at=as_utc(start_at),
        end_at=as_utc(end_at),
        directory=directory,
        now=now,
        exclude_booking_id=exclude_booking_id,
    )
