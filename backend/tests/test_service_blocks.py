from datetime import timedelta

import pytest

from booking_core.domain.bookings import intake, queries
from booking_core.domain.bookings.schemas import BookingRequest
from booking_core.domain.bookings.statuses import BookingStatus
from booking_core.domain.results import FailureKind
from booking_core.domain.service_blocks import ledger as block_ledger
from booking_core.domain.service_blocks.db_models import ServiceBlock
from booking_core.jobs.service_unblock import run_service_unblock
from tests.conftest import NOW, PROVIDER_ID, REQUEST_DATE, SERVICE_ID, USER_ID


async def _block(async_session_maker, service_id=SERVICE_ID, *, hours=48, now=NOW) -> ServiceBlock:
    async with async_session_maker() as session:
        return await block_ledger.block_service(session, service_id, "Too many misses", timedelta(hours=hours), now=now)


@pytest.mark.anyio
async def test_block_is_in_force_until_unblock_time(async_session_maker):
    block = await _block(async_session_maker)

    async with async_session_maker() as session:
        assert await block_ledger.is_blocked(session, SERVICE_ID, NOW) is True
        assert await block_ledger.is_blocked(session, SERVICE_ID, NOW + timedelta(hours=47, minutes=59)) is True
        assert await block_ledger.is_blocked(session, SERVICE_ID, NOW + timedelta(hours=48)) is False
        assert await block_ledger.is_blocked(session, "service-2", NOW) is False
        active = await block_ledger.get_active_block(session, SERVICE_ID, NOW)

    assert active.block_id == block.block_id
    assert block.is_in_force(NOW) is True
    assert block.is_in_force(NOW + timedelta(hours=48)) is False


@pytest.mark.anyio
async def test_unblock_service_deactivates_every_block(async_session_maker):
    await _block(async_session_maker)
    await _block(async_session_maker, hours=72)

    async with async_session_maker() as session:
        assert await block_ledger.unblock_service(session, SERVICE_ID) == 2
        assert await block_ledger.unblock_service(session, SERVICE_ID) == 0
        assert await block_ledger.is_blocked(session, SERVICE_ID, NOW) is False


@pytest.mark.anyio
async def test_deactivate_block_is_idempotent(async_session_maker):
    block = await _block(async_session_maker)

    async with async_session_maker() as session:
        assert await block_ledger.deactivate_block(session, block.block_id) is True
        assert await block_ledger.deactivate_block(session, block.block_id) is False
        assert await block_ledger.deactivate_block(session, "missing") is False


@pytest.mark.anyio
async def test_unblock_sweeper_expires_only_elapsed_blocks(async_session_maker):
    elapsed = await _block(async_session_maker, hours=1)
    running = await _block(async_session_maker, "service-2", hours=48)

    async with async_session_maker() as session:
        summary = await run_service_unblock(session, now=NOW + timedelta(hours=2))
    async with async_session_maker() as session:
        again = await run_service_unblock(session, now=NOW + timedelta(hours=2))
        stored_elapsed = await session.get(ServiceBlock, elapsed.block_id)
        stored_running = await session.get(ServiceBlock, running.block_id)

    assert summary == {"scanned": 1, "unblocked": 1, "failed": 0}
    assert again == {"scanned": 0, "unblocked": 0, "failed": 0}
    assert stored_elapsed.is_active is False
    assert stored_running.is_active is True


@pytest.mark.anyio
async def test_intake_refuses_blocked_service(async_session_maker, directory, notifier):
    await _block(async_session_maker)
    request = BookingRequest(
        service_id=SERVICE_ID,
        user_id=USER_ID,
        provider_id=PROVIDER_ID,
        requested_date=REQUEST_DATE,
        start_time="14:00",
        end_time="16:00",
    )

    async with async_session_maker() as session:
        blocked = await intake.create_booking_request(
            session, request, directory=directory, notifier=notifier, now=NOW
        )
    async with async_session_maker() as session:
        await block_ledger.unblock_service(session, SERVICE_ID)
        created = await intake.create_booking_request(
            session, request, directory=directory, notifier=notifier, now=NOW
        )

    assert blocked.ok is False
    assert blocked.kind == FailureKind.VALIDATION
    assert blocked.reason.startswith("This service is temporarily unavailable until 11 Jan 2025")
    assert created.ok is True
    assert created.value.status == BookingStatus.PENDING_PROVIDER_REVIEW.value
    assert notifier.titles() == ["New Booking Request"]


@pytest.mark.anyio
async def test_intake_refuses_inactive_provider(async_session_maker, directory):
    request = BookingRequest(
        service_id=SERVICE_ID,
        user_id=USER_ID,
        provider_id="provider-unknown",
        requested_date=REQUEST_DATE,
        start_time="14:00",
    )

    async with async_session_maker() as session:
        result = await intake.create_booking_request(session, request, directory=directory, now=NOW)

    assert result.ok is False
    assert result.reason == "Provider is not accepting bookings."


@pytest.mark.anyio
async def test_count_auto_cancellations_uses_trailing_window(async_session_maker, booking_factory):
    for days_ago in (0, 3, 6, 8):
        await booking_factory(
            status=BookingStatus.AUTO_CANCELLED.value,
            cancelled_at=NOW - timedelta(days=days_ago),
        )
    await booking_factory(status=BookingStatus.CANCELLED.value, cancelled_at=NOW)
    await booking_factory(service_id="service-2", status=BookingStatus.AUTO_CANCELLED.value, cancelled_at=NOW)

    async with async_session_maker() as session:
        default_window = await queries.count_auto_cancellations(session, SERVICE_ID, now=NOW)
        narrow = await queries.count_auto_cancellations(session, SERVICE_ID, within=timedelta(days=1), now=NOW)

    assert default_window == 3
    assert narrow == 1
