import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from booking_core.domain.bookings import state_machine
from booking_core.domain.bookings.db_models import Booking
from booking_core.domain.bookings.statuses import BookingStatus
from booking_core.domain.service_blocks import ledger as block_ledger
from booking_core.domain.service_blocks.db_models import ServiceBlock
from booking_core.jobs import auto_cancel
from booking_core.settings import settings
from tests.conftest import NOW, PROVIDER_ID, SERVICE_ID, USER_ID

LATER = NOW + timedelta(hours=12, minutes=1)


async def _booking(async_session_maker, booking_id: str) -> Booking:
    async with async_session_maker() as session:
        return await session.get(Booking, booking_id)


async def _run(async_session_maker, notifier, *, now=LATER, **kwargs):
    async with async_session_maker() as session:
        return await auto_cancel.run_auto_cancel(session, notifier, now=now, **kwargs)


async def _block_count(async_session_maker) -> int:
    async with async_session_maker() as session:
        return await session.scalar(select(func.count()).select_from(ServiceBlock))


@pytest.mark.anyio
async def test_unanswered_request_is_auto_cancelled_with_warning(async_session_maker, booking_factory, notifier):
    booking = await booking_factory()

    summary = await _run(async_session_maker, notifier)

    assert summary == {"scanned": 1, "auto_cancelled": 1, "blocked": 0, "failed": 0}
    stored = await _booking(async_session_maker, booking.booking_id)
    assert stored.status == BookingStatus.AUTO_CANCELLED.value
    assert stored.cancelled_by == "System"
    assert stored.cancellation_reason == auto_cancel.AUTO_CANCEL_REASON
    assert [item.title for item in notifier.for_user(USER_ID)] == ["Booking Auto-Cancelled"]
    provider_notices = notifier.for_user(PROVIDER_ID)
    assert [item.title for item in provider_notices] == ["Booking Auto-Cancelled - Action Required"]
    assert "Warning 1/3" in provider_notices[0].message
    assert "within 12 hours" in provider_notices[0].message


@pytest.mark.anyio
async def test_request_inside_timeout_is_left_alone(async_session_maker, booking_factory, notifier):
    booking = await booking_factory()

    summary = await _run(async_session_maker, notifier, now=NOW + timedelta(hours=11, minutes=59))

    assert summary["scanned"] == 0
    assert (await _booking(async_session_maker, booking.booking_id)).status == BookingStatus.PENDING_PROVIDER_REVIEW.value
    assert notifier.sent == []


@pytest.mark.anyio
async def test_second_run_is_idempotent(async_session_maker, booking_factory, notifier):
    await booking_factory()

    first = await _run(async_session_maker, notifier)
    second = await _run(async_session_maker, notifier)

    assert first["auto_cancelled"] == 1
    assert second == {"scanned": 0, "auto_cancelled": 0, "blocked": 0, "failed": 0}
    assert len(notifier.sent) == 2


@pytest.mark.anyio
async def test_only_pending_review_bookings_are_swept(async_session_maker, booking_factory, notifier):
    for status in (
        BookingStatus.NEED_RESCHEDULING,
        BookingStatus.PENDING_USER_APPROVAL,
        BookingStatus.ACCEPTED_BY_PROVIDER,
    ):
        await booking_factory(status=status.value)

    summary = await _run(async_session_maker, notifier)

    assert summary["scanned"] == 0


@pytest.mark.anyio
async def test_third_strike_blocks_service_once(async_session_maker, booking_factory, notifier):
    for index in range(4):
        await booking_factory(user_id=f"user-{index}", review_requested_at=NOW + timedelta(minutes=index))

    summary = await _run(async_session_maker, notifier, now=LATER + timedelta(minutes=5))

    assert summary == {"scanned": 4, "auto_cancelled": 4, "blocked": 1, "failed": 0}
    assert await _block_count(async_session_maker) == 1
    warnings = [item.message for item in notifier.for_user(PROVIDER_ID) if "Warning" in item.message]
    assert len(warnings) == 4
    assert "Warning 1/3" in warnings[0]
    assert "Warning 3/3" in warnings[2]
    assert notifier.titles().count("Service Temporarily Blocked") == 1

    async with async_session_maker() as session:
        block = await block_ledger.get_active_block(session, SERVICE_ID, LATER + timedelta(minutes=5))
    assert block is not None
    assert block.reason == auto_cancel.block_reason(3)
    assert block.unblock_at - block.blocked_at == timedelta(hours=48)


@pytest.mark.anyio
async def test_strikes_outside_window_are_not_counted(async_session_maker, booking_factory, notifier):
    old = NOW - timedelta(days=8)
    for index in range(2):
        await booking_factory(
            user_id=f"old-{index}",
            status=BookingStatus.AUTO_CANCELLED.value,
            cancelled_at=old,
            cancelled_by="System",
        )
    await booking_factory()

    summary = await _run(async_session_maker, notifier)

    assert summary["blocked"] == 0
    assert "Warning 1/3" in notifier.for_user(PROVIDER_ID)[0].message


@pytest.mark.anyio
async def test_threshold_follows_settings(async_session_maker, booking_factory, notifier):
    settings.strike_threshold = 1
    await booking_factory()

    summary = await _run(async_session_maker, notifier)

    assert summary["blocked"] == 1


@pytest.mark.anyio
async def test_failure_is_isolated_per_booking(async_session_maker, booking_factory, notifier, monkeypatch):
    broken = await booking_factory(review_requested_at=NOW)
    healthy = await booking_factory(user_id="user-2", review_requested_at=NOW - timedelta(minutes=1))
    original = state_machine.force_status

    async def flaky_force_status(session, booking_id, *args, **kwargs):
        if booking_id == broken.booking_id:
            raise RuntimeError("database went away")
        return await original(session, booking_id, *args, **kwargs)

    monkeypatch.setattr(state_machine, "force_status", flaky_force_status)

    summary = await _run(async_session_maker, notifier)

    assert summary == {"scanned": 2, "auto_cancelled": 1, "blocked": 0, "failed": 1}
    assert (await _booking(async_session_maker, broken.booking_id)).status == BookingStatus.PENDING_PROVIDER_REVIEW.value
    assert (await _booking(async_session_maker, healthy.booking_id)).status == BookingStatus.AUTO_CANCELLED.value
    assert [item.user_id for item in notifier.sent if item.title == "Booking Auto-Cancelled"] == ["user-2"]


@pytest.mark.anyio
async def test_resubmitted_booking_restarts_timeout(async_session_maker, booking_factory, notifier):
    booking = await booking_factory(review_requested_at=NOW + timedelta(hours=6), created_at=NOW - timedelta(days=1))

    summary = await _run(async_session_maker, notifier)

    assert summary["scanned"] == 0
    assert (await _booking(async_session_maker, booking.booking_id)).status == BookingStatus.PENDING_PROVIDER_REVIEW.value


@pytest.mark.anyio
async def test_accepted_between_scan_and_cancel_is_skipped(
    async_session_maker, booking_factory, notifier, directory, monkeypatch
):
    booking = await booking_factory()
    original = auto_cancel._auto_cancel_one

    async def accept_first(session, booking_id, now):
        async with async_session_maker() as other:
            await state_machine.accept_booking(other, booking_id, price_cents=5000, directory=directory, now=now)
        return await original(session, booking_id, now)

    monkeypatch.setattr(auto_cancel, "_auto_cancel_one", accept_first)

    summary = await _run(async_session_maker, notifier)

    assert summary["scanned"] == 1
    assert summary["auto_cancelled"] == 0
    assert (await _booking(async_session_maker, booking.booking_id)).status == BookingStatus.ACCEPTED_BY_PROVIDER.value


@pytest.mark.anyio
async def test_stop_event_halts_processing(async_session_maker, booking_factory, notifier):
    await booking_factory()
    stop_event = asyncio.Event()
    stop_event.set()

    summary = await _run(async_session_maker, notifier, stop_event=stop_event)

    assert summary["scanned"] == 1
    assert summary["auto_cancelled"] == 0


@pytest.mark.anyio
async def test_batch_size_limits_scan(async_session_maker, booking_factory, notifier):
    for index in range(3):
        await booking_factory(user_id=f"user-{index}")

    summary = await _run(async_session_maker, notifier, batch_size=2)

    assert summary["scanned"] == 2
