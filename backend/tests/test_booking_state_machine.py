from datetime import date, datetime, time, timedelta, timezone

import pytest
from sqlalchemy import select

from booking_core.domain.bookings import state_machine
from booking_core.domain.bookings.db_models import Booking
from booking_core.domain.bookings.statuses import Actor, BookingStatus
from booking_core.domain.results import FailureKind
from booking_core.domain.time_slots import ledger
from booking_core.domain.time_slots.db_models import TimeSlot
from booking_core.shared.clock import TimeWindow
from tests.conftest import NOW, PROVIDER_ID, USER_ID


def _at(hour: int, minute: int = 0) -> datetime:
    # Local hour on 2025-01-10 in Asia/Dhaka, as UTC.
    return datetime(2025, 1, 10, hour - 6, minute, tzinfo=timezone.utc)


async def _reload(async_session_maker, booking_id: str) -> Booking:
    async with async_session_maker() as session:
        return await session.get(Booking, booking_id)


async def _slots(async_session_maker, booking_id: str) -> list[TimeSlot]:
    async with async_session_maker() as session:
        result = await session.execute(select(TimeSlot).where(TimeSlot.booking_id == booking_id))
        return list(result.scalars().all())


async def _accepted(async_session_maker, booking_factory, directory, **overrides) -> Booking:
    booking = await booking_factory(**overrides)
    async with async_session_maker() as session:
        result = await state_machine.accept_booking(
            session, booking.booking_id, price_cents=5000, directory=directory, now=NOW
        )
    assert result.ok, result.reason
    return result.value.booking


@pytest.mark.anyio
async def test_accept_confirms_window_and_reserves_one_slot(
    async_session_maker, booking_factory, directory, notifier
):
    booking = await booking_factory(
        proposed_by=Actor.USER.value,
        proposed_start_at=_at(10),
        proposed_end_at=_at(11),
        proposed_price_cents=4000,
    )

    async with async_session_maker() as session:
        result = await state_machine.accept_booking(
            session,
            booking.booking_id,
            price_cents=5000,
            notes="Bring a ladder",
            directory=directory,
            notifier=notifier,
            now=NOW,
        )

    assert result.ok is True
    assert result.value.slot.window == TimeWindow(_at(14), _at(16))
    stored = await _reload(async_session_maker, booking.booking_id)
    assert stored.status == BookingStatus.ACCEPTED_BY_PROVIDER.value
    assert stored.negotiated_price_cents == 5000
    assert stored.provider_notes == "Bring a ladder"
    assert stored.confirmed_window == TimeWindow(_at(14), _at(16))
    assert stored.accepted_at.replace(tzinfo=timezone.utc) == NOW
    assert stored.proposed_by is None
    assert stored.proposed_start_at is None
    assert stored.proposed_price_cents is None

    slots = await _slots(async_session_maker, booking.booking_id)
    assert len(slots) == 1
    assert slots[0].is_active is True
    assert notifier.titles() == ["Booking Accepted"]
    assert notifier.sent[0].user_id == USER_ID


@pytest.mark.anyio
async def test_accept_with_explicit_window(async_session_maker, booking_factory, directory):
    booking = await booking_factory()

    async with async_session_maker() as session:
        result = await state_machine.accept_booking(
            session,
            booking.booking_id,
            price_cents=5000,
            window=TimeWindow(_at(10), _at(12)),
            directory=directory,
            now=NOW,
        )

    assert result.ok is True
    stored = await _reload(async_session_maker, booking.booking_id)
    assert stored.confirmed_window == TimeWindow(_at(10), _at(12))


@pytest.mark.anyio
async def test_open_ended_request_gets_assumed_duration(async_session_maker, booking_factory, directory):
    booking = await booking_factory(requested_end_time=None)

    async with async_session_maker() as session:
        result = await state_machine.accept_booking(
            session, booking.booking_id, price_cents=5000, directory=directory, now=NOW
        )

    assert result.ok is True
    assert result.value.slot.window == TimeWindow(_at(14), _at(15))


@pytest.mark.anyio
@pytest.mark.parametrize("price", [None, 0, -100])
async def test_accept_requires_positive_price(async_session_maker, booking_factory, price):
    booking = await booking_factory()

    async with async_session_maker() as session:
        result = await state_machine.accept_booking(session, booking.booking_id, price_cents=price, now=NOW)

    assert result.ok is False
    assert result.kind == FailureKind.VALIDATION
    assert result.reason == state_machine.PRICE_REQUIRED_REASON
    assert (await _reload(async_session_maker, booking.booking_id)).status == BookingStatus.PENDING_PROVIDER_REVIEW.value


@pytest.mark.anyio
async def test_accept_outside_duty_hours_is_rejected(async_session_maker, booking_factory, directory):
    booking = await booking_factory(requested_start_time=time(17, 0), requested_end_time=time(19, 0))

    async with async_session_maker() as session:
        result = await state_machine.accept_booking(
            session, booking.booking_id, price_cents=5000, directory=directory, now=NOW
        )

    assert result.ok is False
    assert result.kind == FailureKind.VALIDATION
    assert result.reason == "Provider is only available from 9:00 AM to 6:00 PM."
    assert await _slots(async_session_maker, booking.booking_id) == []


@pytest.mark.anyio
async def test_accept_missing_booking(async_session_maker):
    async with async_session_maker() as session:
        result = await state_machine.accept_booking(session, "missing", price_cents=5000, now=NOW)

    assert result.ok is False
    assert result.kind == FailureKind.NOT_FOUND
    assert result.reason == "Booking not found."


@pytest.mark.anyio
async def test_accept_from_illegal_status_mutates_nothing(async_session_maker, booking_factory, directory):
    booking = await booking_factory(status=BookingStatus.AWAITING_PAYMENT.value, negotiated_price_cents=1000)

    async with async_session_maker() as session:
        result = await state_machine.accept_booking(
            session, booking.booking_id, price_cents=5000, directory=directory, now=NOW
        )

    assert result.ok is False
    assert result.kind == FailureKind.ILLEGAL_TRANSITION
    assert result.reason == "Cannot accept a booking in status AWAITING_PAYMENT"
    stored = await _reload(async_session_maker, booking.booking_id)
    assert stored.status == BookingStatus.AWAITING_PAYMENT.value
    assert stored.negotiated_price_cents == 1000
    assert stored.accepted_at is None
    assert await _slots(async_session_maker, booking.booking_id) == []


@pytest.mark.anyio
async def test_accept_conflicting_window_is_rejected(async_session_maker, booking_factory, directory):
    await _accepted(async_session_maker, booking_factory, directory)
    contender = await booking_factory(user_id="user-2")

    async with async_session_maker() as session:
        result = await state_machine.accept_booking(
            session,
            contender.booking_id,
            price_cents=5000,
            window=TimeWindow(_at(15), _at(17)),
            directory=directory,
            now=NOW,
        )

    assert result.ok is False
    assert result.kind == FailureKind.CONFLICT
    assert result.reason == ledger.SLOT_CONFLICT_REASON
    stored = await _reload(async_session_maker, contender.booking_id)
    assert stored.status == BookingStatus.PENDING_PROVIDER_REVIEW.value
    assert stored.confirmed_start_at is None
    assert await _slots(async_session_maker, contender.booking_id) == []


@pytest.mark.anyio
async def test_cancel_releases_slot_and_notifies_other_party(
    async_session_maker, booking_factory, directory, notifier
):
    booking = await _accepted(async_session_maker, booking_factory, directory)

    async with async_session_maker() as session:
        result = await state_machine.cancel_booking(
            session, booking.booking_id, actor=Actor.USER, reason="Plans changed", notifier=notifier, now=NOW
        )

    assert result.ok is True
    stored = await _reload(async_session_maker, booking.booking_id)
    assert stored.status == BookingStatus.CANCELLED.value
    assert stored.cancelled_by == "User"
    assert stored.cancellation_reason == "Plans changed"
    assert stored.cancelled_at is not None
    assert [slot.is_active for slot in await _slots(async_session_maker, booking.booking_id)] == [False]
    assert [item.user_id for item in notifier.sent] == [PROVIDER_ID]
    assert "Plans changed" in notifier.sent[0].message


@pytest.mark.anyio
async def test_cancel_from_illegal_status_is_a_noop(async_session_maker, booking_factory):
    booking = await booking_factory(status=BookingStatus.PAYMENT_RECEIVED.value)

    async with async_session_maker() as session:
        result = await state_machine.cancel_booking(session, booking.booking_id, actor=Actor.PROVIDER, now=NOW)

    assert result.ok is False
    assert result.kind == FailureKind.ILLEGAL_TRANSITION
    stored = await _reload(async_session_maker, booking.booking_id)
    assert stored.status == BookingStatus.PAYMENT_RECEIVED.value
    assert stored.cancelled_at is None
    assert stored.cancelled_by is None


@pytest.mark.anyio
async def test_terminal_booking_rejects_every_operation(async_session_maker, booking_factory):
    booking = await booking_factory(status=BookingStatus.COMPLETED.value)

    async with async_session_maker() as session:
        cancel = await state_machine.cancel_booking(session, booking.booking_id, actor=Actor.USER, now=NOW)
        done = await state_machine.mark_job_done(session, booking.booking_id, now=NOW)

    for result in (cancel, done):
        assert result.ok is False
        assert result.reason == "Booking is already in terminal status: COMPLETED"


@pytest.mark.anyio
async def test_full_lifecycle_releases_slot_on_completion(
    async_session_maker, booking_factory, directory, notifier
):
    booking = await _accepted(async_session_maker, booking_factory, directory)
    booking_id = booking.booking_id
    later = NOW + timedelta(days=1)

    async with async_session_maker() as session:
        awaiting = await state_machine.mark_awaiting_payment(session, booking_id, transaction_id="txn-1", now=later)
        paid = await state_machine.mark_payment_received(
            session,
            booking_id,
            state_machine.PaymentDetails(
                validation_id="val-1", payment_method="card", bank_transaction_id="bank-9"
            ),
            notifier=notifier,
            now=later,
        )
        started = await state_machine.start_job(session, booking_id, notifier=notifier, now=later)
        assert [slot.is_active for slot in await _slots(async_session_maker, booking_id)] == [True]
        done = await state_machine.mark_job_done(session, booking_id, notifier=notifier, now=later)
        completed = await state_machine.mark_completed(session, booking_id, notifier=notifier, now=later)

    for result in (awaiting, paid, started, done, completed):
        assert result.ok is True, result.reason
    stored = await _reload(async_session_maker, booking_id)
    assert stored.status == BookingStatus.COMPLETED.value
    assert stored.transaction_id == "txn-1"
    assert stored.validation_id == "val-1"
    assert stored.payment_method == "card"
    assert stored.bank_transaction_id == "bank-9"
    assert stored.payment_status == "VALID"
    assert stored.payment_received_at is not None
    assert stored.job_done_at is not None
    assert stored.completed_at is not None
    assert [slot.is_active for slot in await _slots(async_session_maker, booking_id)] == [False]
    assert notifier.titles() == [
        "Payment Received",
        "Payment Successful",
        "Job Started",
        "Job Done",
        "Booking Completed",
    ]


@pytest.mark.anyio
async def test_mark_completed_requires_job_done(async_session_maker, booking_factory):
    booking = await booking_factory(status=BookingStatus.PAYMENT_RECEIVED.value)

    async with async_session_maker() as session:
        result = await state_machine.mark_completed(session, booking.booking_id, now=NOW)

    assert result.ok is False
    assert result.kind == FailureKind.ILLEGAL_TRANSITION
    assert (await _reload(async_session_maker, booking.booking_id)).completed_at is None


@pytest.mark.anyio
async def test_dispute_keeps_slot(async_session_maker, booking_factory, directory, notifier):
    booking = await _accepted(async_session_maker, booking_factory, directory)

    async with async_session_maker() as session:
        await state_machine.mark_payment_received(session, booking.booking_id, state_machine.PaymentDetails(), now=NOW)
        await state_machine.mark_job_done(session, booking.booking_id, now=NOW)
        result = await state_machine.mark_disputed(
            session, booking.booking_id, actor=Actor.USER, reason="Unfinished", notifier=notifier, now=NOW
        )

    assert result.ok is True
    assert (await _reload(async_session_maker, booking.booking_id)).status == BookingStatus.DISPUTED.value
    assert [slot.is_active for slot in await _slots(async_session_maker, booking.booking_id)] == [True]
    assert {item.user_id for item in notifier.sent} == {USER_ID, PROVIDER_ID}


@pytest.mark.anyio
async def test_force_status_is_unconditional_and_releases_on_terminal(
    async_session_maker, booking_factory, directory
):
    booking = await _accepted(async_session_maker, booking_factory, directory)

    async with async_session_maker() as session:
        flagged = await state_machine.force_status(
            session, booking.booking_id, BookingStatus.DISPUTED, actor=Actor.ADMIN, now=NOW
        )
    assert flagged.ok is True
    assert [slot.is_active for slot in await _slots(async_session_maker, booking.booking_id)] == [True]

    async with async_session_maker() as session:
        cancelled = await state_machine.force_status(
            session, booking.booking_id, "AUTO_CANCELLED", reason="Escalated", now=NOW
        )

    assert cancelled.ok is True
    stored = await _reload(async_session_maker, booking.booking_id)
    assert stored.status == BookingStatus.AUTO_CANCELLED.value
    assert stored.cancelled_by == "System"
    assert stored.cancellation_reason == "Escalated"
    assert [slot.is_active for slot in await _slots(async_session_maker, booking.booking_id)] == [False]


@pytest.mark.anyio
async def test_force_status_missing_booking(async_session_maker):
    async with async_session_maker() as session:
        result = await state_machine.force_status(session, "missing", BookingStatus.CANCELLED, now=NOW)

    assert result.ok is False
    assert result.kind == FailureKind.NOT_FOUND


@pytest.mark.anyio
async def test_slot_is_released_exactly_once(async_session_maker, booking_factory, directory):
    booking = await _accepted(async_session_maker, booking_factory, directory)

    async with async_session_maker() as session:
        first = await state_machine.cancel_booking(session, booking.booking_id, actor=Actor.PROVIDER, now=NOW)
        second = await state_machine.cancel_booking(session, booking.booking_id, actor=Actor.PROVIDER, now=NOW)

    assert first.ok is True
    assert second.ok is False
    assert [slot.is_active for slot in await _slots(async_session_maker, booking.booking_id)] == [False]


@pytest.mark.anyio
async def test_record_proposal_then_confirm(async_session_maker, booking_factory, directory, notifier):
    booking = await booking_factory()
    window = TimeWindow(_at(10), _at(12))

    async with async_session_maker() as session:
        proposed = await state_machine.record_proposal(
            session,
            booking.booking_id,
            proposed_by=Actor.PROVIDER,
            window=window,
            price_cents=7000,
            notes="Morning works better",
            notifier=notifier,
            now=NOW,
        )
    assert proposed.ok is True
    stored = await _reload(async_session_maker, booking.booking_id)
    assert stored.status == BookingStatus.PENDING_USER_APPROVAL.value
    assert stored.proposed_by == "Provider"
    assert stored.proposed_price_cents == 7000
    assert notifier.sent[-1].user_id == USER_ID

    async with async_session_maker() as session:
        confirmed = await state_machine.confirm_proposal(
            session, booking.booking_id, directory=directory, notifier=notifier, now=NOW
        )

    assert confirmed.ok is True
    stored = await _reload(async_session_maker, booking.booking_id)
    assert stored.status == BookingStatus.ACCEPTED_BY_PROVIDER.value
    assert stored.confirmed_window == window
    assert stored.negotiated_price_cents == 7000
    assert stored.provider_notes == "Morning works better"
    assert stored.proposed_by is None


@pytest.mark.anyio
async def test_user_proposal_moves_to_pending_provider_approval(async_session_maker, booking_factory):
    booking = await booking_factory()

    async with async_session_maker() as session:
        result = await state_machine.record_proposal(
            session, booking.booking_id, proposed_by=Actor.USER, window=TimeWindow(_at(10), _at(11)), now=NOW
        )
        rejected = await state_machine.record_proposal(
            session, booking.booking_id, proposed_by=Actor.SYSTEM, window=TimeWindow(_at(10), _at(11)), now=NOW
        )

    assert result.ok is True
    assert result.value.status == BookingStatus.PENDING_PROVIDER_APPROVAL.value
    assert rejected.ok is False
    assert rejected.kind == FailureKind.VALIDATION


@pytest.mark.anyio
async def test_confirm_proposal_without_proposal_fails(async_session_maker, booking_factory):
    booking = await booking_factory(status=BookingStatus.PENDING_USER_APPROVAL.value)

    async with async_session_maker() as session:
        result = await state_machine.confirm_proposal(session, booking.booking_id, now=NOW)

    assert result.ok is False
    assert result.kind == FailureKind.VALIDATION


@pytest.mark.anyio
async def test_resubmit_returns_to_review_with_new_time(async_session_maker, booking_factory, directory, notifier):
    booking = await booking_factory(status=BookingStatus.NEED_RESCHEDULING.value)
    later = NOW + timedelta(hours=5)

    async with async_session_maker() as session:
        result = await state_machine.resubmit_request(
            session,
            booking.booking_id,
            requested_date=date(2025, 1, 11),
            start_time=time(10, 0),
            end_time=time(11, 0),
            directory=directory,
            notifier=notifier,
            now=later,
        )

    assert result.ok is True
    stored = await _reload(async_session_maker, booking.booking_id)
    assert stored.status == BookingStatus.PENDING_PROVIDER_REVIEW.value
    assert stored.requested_date == date(2025, 1, 11)
    assert stored.review_requested_at.replace(tzinfo=timezone.utc) == later
    assert notifier.titles() == ["Booking Rescheduled"]


@pytest.mark.anyio
async def test_resubmit_is_validated(async_session_maker, booking_factory, directory):
    booking = await booking_factory(status=BookingStatus.NEED_RESCHEDULING.value)

    async with async_session_maker() as session:
        too_soon = await state_machine.resubmit_request(
            session,
            booking.booking_id,
            requested_date=date(2025, 1, 9),
            start_time=time(13, 0),
            end_time=time(14, 0),
            directory=directory,
            now=NOW,
        )

    assert too_soon.ok is False
    assert too_soon.kind == FailureKind.VALIDATION
    assert (await _reload(async_session_maker, booking.booking_id)).status == BookingStatus.NEED_RESCHEDULING.value


@pytest.mark.anyio
async def test_adjust_time_moves_slot(async_session_maker, booking_factory, directory, notifier):
    booking = await _accepted(async_session_maker, booking_factory, directory)

    async with async_session_maker() as session:
        result = await state_machine.adjust_booking_time(
            session,
            booking.booking_id,
            window=TimeWindow(_at(15), _at(17)),
            reason="Traffic",
            directory=directory,
            notifier=notifier,
            now=NOW,
        )

    assert result.ok is True
    stored = await _reload(async_session_maker, booking.booking_id)
    assert stored.confirmed_window == TimeWindow(_at(15), _at(17))
    slots = await _slots(async_session_maker, booking.booking_id)
    assert len(slots) == 1
    assert slots[0].window == TimeWindow(_at(15), _at(17))
    assert notifier.titles() == ["Booking Time Adjusted"]


@pytest.mark.anyio
async def test_adjust_time_rejects_collision_with_other_booking(async_session_maker, booking_factory, directory):
    booking = await _accepted(async_session_maker, booking_factory, directory)
    other = await _accepted(
        async_session_maker,
        booking_factory,
        directory,
        user_id="user-2",
        requested_start_time=time(10, 0),
        requested_end_time=time(12, 0),
    )

    async with async_session_maker() as session:
        result = await state_machine.adjust_booking_time(
            session, booking.booking_id, window=TimeWindow(_at(11), _at(13)), directory=directory, now=NOW
        )

    assert result.ok is False
    assert result.kind == FailureKind.CONFLICT
    stored = await _reload(async_session_maker, booking.booking_id)
    assert stored.confirmed_window == TimeWindow(_at(14), _at(16))
    assert other.booking_id != booking.booking_id


@pytest.mark.anyio
async def test_adjust_time_requires_accepted_booking(async_session_maker, booking_factory, directory):
    booking = await booking_factory()

    async with async_session_maker() as session:
        result = await state_machine.adjust_booking_time(
            session, booking.booking_id, window=TimeWindow(_at(10), _at(11)), directory=directory, now=NOW
        )

    assert result.ok is False
    assert result.kind == FailureKind.ILLEGAL_TRANSITION
