import logging
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from booking_core.domain.bookings.db_models import Booking
from booking_core.domain.bookings.schemas import BookingRequest
from booking_core.domain.bookings.statuses import INITIAL_STATUS
from booking_core.domain.results import OperationResult
from booking_core.domain.scheduling.validator import validate_booking_time
from booking_core.domain.service_blocks import ledger as block_ledger
from booking_core.infra.metrics import metrics
from booking_core.infra.notifications import NotificationBatch, NotificationSink
from booking_core.infra.providers import ProviderDirectory
from booking_core.shared.clock import as_utc, format_local_time, to_local, utcnow

logger = logging.getLogger(__name__)


async def create_booking_request(
    session: AsyncSession,
    request: BookingRequest,
    *,
    directory: ProviderDirectory,
    notifier: NotificationSink | None = None,
    now: datetime | None = None,
) -> OperationResult[Booking]:
    current = as_utc(now or utcnow())

    if not await directory.is_active(request.provider_id):
        metrics.record_transition("create", "validation")
        return OperationResult.invalid("Provider is not accepting bookings.")

    block = await block_ledger.get_active_block(session, request.service_id, current)
    if block is not None:
        metrics.record_transition("create", "validation")
        until = to_local(block.unblock_at)
        return OperationResult.invalid(
            f"This service is temporarily unavailable until {until:%d %b %Y} {format_local_time(block.unblock_at)}."
        )

    check = await validate_booking_time(
        session,
        request.provider_id,
        request.requested_date,
        request.start_time,
        request.end_time,
        directory=directory,
        now=current,
    )
    if not check.ok:
        metrics.record_transition("create", "validation")
        return OperationResult.invalid(check.reason)

    booking = Booking(
        service_id=request.service_id,
        user_id=request.user_id,
        provider_id=request.provider_id,
        description=request.description,
        address_area=request.address_area,
        status=INITIAL_STATUS.value,
        requested_date=request.requested_date,
        requested_start_time=request.start_time,
        requested_end_time=request.end_time,
        created_at=current,
        updated_at=current,
        review_requested_at=current,
    )
    session.add(booking)
    await session.commit()

    metrics.record_transition("create", "ok")
    logger.info(
        "booking_created",
        extra={
            "extra": {
                "booking_id": booking.booking_id,
                "service_id": booking.service_id,
                "provider_id": booking.provider_id,
            }
        },
    )
    notices = NotificationBatch()
    notices.add(booking.provider_id, "New Booking Request", "You have a new booking request to review.")
    await notices.flush(notifier)
    return OperationResult.success(booking)
