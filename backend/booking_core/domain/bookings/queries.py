from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from booking_core.domain.bookings.db_models import Booking
from booking_core.domain.bookings.statuses import BookingStatus
from booking_core.settings import settings
from booking_core.shared.clock import as_utc, utcnow


async def get_booking(session: AsyncSession, booking_id: str) -> Booking | None:
    return await session.get(Booking, booking_id)


async def count_auto_cancellations(
    session: AsyncSession,
    service_id: str,
    within: timedelta | None = None,
    now: datetime | None = None,
) -> int:
    """Strikes for ``service_id``: auto-cancellations inside the trailing window.

    Computed from history on every call; there is no stored counter.
    """
    window = within if within is not None else settings.strike_window
    since = as_utc(now or utcnow()) - window
    stmt = select(func.count()).select_from(Booking).where(
        Booking.service_id == service_id,
        Booking.status == BookingStatus.AUTO_CANCELLED.value,
        Booking.cancelled_at >= since,
    )
    result = await session.execute(stmt)
    return int(result.scalar_one())


async def expired_pending_bookings(
    session: AsyncSession,
    older_than: timedelta | None = None,
    now: datetime | None = None,
    limit: int | None = None,
) -> list[str]:
    """Ids of bookings still awaiting provider review past the response timeout."""
    timeout = older_than if older_than is not None else settings.auto_cancel_timeout
    cutoff = as_utc(now or utcnow()) - timeout
    stmt = (
        select(Booking.booking_id)
        .where(
            Booking.status == BookingStatus.PENDING_PROVIDER_REVIEW.value,
            Booking.review_requested_at < cutoff,
        )
        .order_by(Booking.review_requested_at)
    )
    if limit:
        stmt = stmt.limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def pending_for_provider(
    session: AsyncSession, provider_id: str, exclude_booking_id: str | None = None
) -> list[Booking]:
    stmt = select(Booking).where(
        Booking.provider_id == provider_id,
        Booking.status == BookingStatus.PENDING_PROVIDER_REVIEW.value,
    )
    if exclude_booking_id is not None:
        stmt = stmt.where(Booking.booking_id != exclude_booking_id)
    result = await session.execute(stmt.order_by(Booking.created_at))
    return list(result.scalars().all())
