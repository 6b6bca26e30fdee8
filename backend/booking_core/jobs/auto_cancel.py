import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from booking_core.domain.bookings import queries as booking_queries
from booking_core.domain.bookings import state_machine
from booking_core.domain.bookings.db_models import Booking
from booking_core.domain.bookings.statuses import Actor, BookingStatus
from booking_core.domain.service_blocks import ledger as block_ledger
from booking_core.infra.logging import update_log_context
from booking_core.infra.metrics import metrics
from booking_core.infra.notifications import NotificationBatch, NotificationSink
from booking_core.settings import settings
from booking_core.shared.clock import as_utc, utcnow

logger = logging.getLogger(__name__)

JOB_NAME = "auto-cancel"
AUTO_CANCEL_REASON = "Provider did not respond in time."


def block_reason(threshold: int) -> str:
    return (
        f"Auto-blocked: {threshold} consecutive bookings auto-cancelled due to provider non-response."
    )


def _timeout_hours() -> str:
    hours = settings.auto_cancel_timeout.total_seconds() / 3600
    return f"{hours:g}"


@dataclass
class _ItemOutcome:
    cancelled: bool = False
    blocked: bool = False
    strikes: int = 0
    notices: NotificationBatch = field(default_factory=NotificationBatch)


async def _auto_cancel_one(session: AsyncSession, booking_id: str, now: datetime) -> _ItemOutcome:
    outcome = _ItemOutcome()
    result = await session.execute(
        select(Booking)
        .where(Booking.booking_id == booking_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    booking = result.scalar_one_or_none()
    cutoff = now - settings.auto_cancel_timeout
    if (
        booking is None
        or booking.status != BookingStatus.PENDING_PROVIDER_REVIEW.value
        or as_utc(booking.review_requested_at) >= cutoff
    ):
        # Answered or resubmitted since the scan.
        await session.rollback()
        return outcome

    cancelled = await state_machine.force_status(
        session,
        booking_id,
        BookingStatus.AUTO_CANCELLED,
        actor=Actor.SYSTEM,
        reason=AUTO_CANCEL_REASON,
        now=now,
        commit=False,
    )
    if not cancelled.ok:
        await session.rollback()
        return outcome
    outcome.cancelled = True

    service_id = booking.service_id
    threshold = settings.strike_threshold
    outcome.strikes = await booking_queries.count_auto_cancellations(session, service_id, now=now)

    outcome.notices.add(
        booking.user_id,
        "Booking Auto-Cancelled",
        f"Your booking request was cancelled automatically because the provider did not respond "
        f"within {_timeout_hours()} hours. Please try booking another provider.",
    )
    outcome.notices.add(
        booking.provider_id,
        "Booking Auto-Cancelled - Action Required",
        f"A booking request was cancelled because you did not respond within {_timeout_hours()} hours. "
        f"Warning {outcome.strikes}/{threshold}: your service will be blocked temporarily "
        f"after {threshold} auto-cancellations within {settings.strike_window_days} days.",
    )

    if outcome.strikes >= threshold and not await block_ledger.is_blocked(session, service_id, now):
        block = await block_ledger.block_service(
            session,
            service_id,
            block_reason(threshold),
            settings.service_block_duration,
            now=now,
            commit=False,
        )
        outcome.blocked = True
        outcome.notices.add(
            booking.provider_id,
            "Service Temporarily Blocked",
            f"Your service has been blocked until {as_utc(block.unblock_at):%Y-%m-%d %H:%M} UTC "
            "because of repeated auto-cancellations.",
        )

    await session.commit()
    return outcome


async def run_auto_cancel(
    session: AsyncSession,
    notifier: NotificationSink | None,
    *,
    now: datetime | None = None,
    batch_size: int | None = None,
    stop_event: asyncio.Event | None = None,
) -> dict[str, int]:
    """Auto-cancel requests left unanswered past the timeout and escalate repeat offenders.

    Each booking is handled in its own transaction; a failure is logged and the
    remaining bookings are still processed.
    """
    current = as_utc(now or utcnow())
    limit = batch_size if batch_size is not None else settings.auto_cancel_batch_size
    booking_ids = await booking_queries.expired_pending_bookings(session, now=current, limit=limit)
    await session.rollback()

    auto_cancelled = 0
    blocked = 0
    failed = 0
    for booking_id in booking_ids:
        if stop_event is not None and stop_event.is_set():
            break
        update_log_context(booking_id=booking_id)
        try:
            outcome = await _auto_cancel_one(session, booking_id, current)
        except Exception as exc:  # noqa: BLE001
            await session.rollback()
            failed += 1
            metrics.record_job_error(JOB_NAME, type(exc).__name__)
            logger.warning(
                "auto_cancel_failed",
                extra={"extra": {"booking_id": booking_id, "reason": type(exc).__name__}},
            )
            continue
        if outcome.cancelled:
            auto_cancelled += 1
            metrics.record_auto_cancel()
            logger.info(
                "booking_auto_cancelled",
                extra={"extra": {"booking_id": booking_id, "strikes": outcome.strikes}},
            )
        if outcome.blocked:
            blocked += 1
        await outcome.notices.flush(notifier)

    return {
        "scanned": len(booking_ids),
        "auto_cancelled": auto_cancelled,
        "blocked": blocked,
        "failed": failed,
    }
