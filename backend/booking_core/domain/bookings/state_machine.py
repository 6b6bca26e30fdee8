"""Booking lifecycle operations.

Every operation resolves its target status through ``BOOKING_TRANSITIONS``; a booking
that is not in a legal source status yields a failed :class:`OperationResult` and is
left untouched. With ``commit=True`` an operation owns its transaction: it commits on
success, rolls back on failure and delivers notifications after the commit.

Slot side effects: acceptance reserves exactly one slot under the provider guard and
every transition into a terminal status releases the booking's slot.
"""

import logging
from collections.abc import Callable
from contextlib import nullcontext
from dataclasses import dataclass
from datetime import date, datetime, time

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from booking_core.domain.bookings.db_models import Booking
from booking_core.domain.bookings.statuses import (
    TERMINAL_STATUSES,
    Actor,
    BookingAction,
    BookingStatus,
    coerce_status,
    describe_rejection,
    next_status,
)
from booking_core.domain.rescheduling import coordinator
from booking_core.domain.results import OperationResult
from booking_core.domain.scheduling.validator import (
    END_BEFORE_START_REASON,
    check_duty_hours,
    resolve_duty_hours,
    validate_booking_time,
)
from booking_core.domain.time_slots import ledger
from booking_core.domain.time_slots.db_models import TimeSlot
from booking_core.infra.metrics import metrics
from booking_core.infra.notifications import NotificationBatch, NotificationSink
from booking_core.infra.providers import ProviderDirectory
from booking_core.shared.clock import TimeWindow, as_utc, to_local, utcnow

logger = logging.getLogger(__name__)

PRICE_REQUIRED_REASON = "Price must be greater than zero."


@dataclass
class AcceptOutcome:
    booking: Booking
    slot: TimeSlot
    conflicts_resolved: int = 0


@dataclass
class PaymentDetails:
    transaction_id: str | None = None
    validation_id: str | None = None
    payment_method: str | None = None
    bank_transaction_id: str | None = None
    payment_status: str = "VALID"


async def _load(session: AsyncSession, booking_id: str, *, lock: bool = False) -> Booking | None:
    stmt = select(Booking).where(Booking.booking_id == booking_id)
    if lock:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def _fail(
    session: AsyncSession,
    action: BookingAction | str,
    booking_id: str,
    result: OperationResult,
    *,
    commit: bool,
) -> OperationResult:
    if commit:
        await session.rollback()
    action_name = action.value if isinstance(action, BookingAction) else action
    kind = result.kind.value if result.kind else "unknown"
    metrics.record_transition(action_name, kind)
    logger.info(
        "booking_transition_rejected",
        extra={
            "extra": {
                "booking_id": booking_id,
                "action": action_name,
                "kind": kind,
                "reason": result.reason,
            }
        },
    )
    return result


def _record_success(action: BookingAction | str, booking: Booking, **fields) -> None:
    action_name = action.value if isinstance(action, BookingAction) else action
    metrics.record_transition(action_name, "ok")
    logger.info(
        "booking_transitioned",
        extra={
            "extra": {
                "booking_id": booking.booking_id,
                "action": action_name,
                "status": booking.status,
                **fields,
            }
        },
    )


async def _release(session: AsyncSession, booking: Booking, now: datetime) -> None:
    await ledger.deactivate_by_booking(session, booking.booking_id)
    await coordinator.expire_pending(session, booking.booking_id, now=now, commit=False)


async def _finish(
    session: AsyncSession,
    *,
    commit: bool,
    batch: NotificationBatch | None,
    notifier: NotificationSink | None,
) -> None:
    if commit:
        await session.commit()
        if batch is not None:
            await batch.flush(notifier)
    else:
        await session.flush()


async def _transition(
    session: AsyncSession,
    booking_id: str,
    action: BookingAction,
    *,
    mutate: Callable[[Booking, datetime], None] | None = None,
    notices: Callable[[Booking, NotificationBatch], None] | None = None,
    notifier: NotificationSink | None = None,
    batch: NotificationBatch | None = None,
    now: datetime | None = None,
    commit: bool = True,
) -> OperationResult[Booking]:
    current = as_utc(now or utcnow())
    booking = await _load(session, booking_id, lock=True)
    if booking is None:
        return await _fail(session, action, booking_id, OperationResult.not_found("Booking"), commit=commit)
    target = next_status(booking.status, action)
    if target is None:
        reason = describe_rejection(booking.status, action)
        return await _fail(session, action, booking_id, OperationResult.illegal(reason), commit=commit)

    if mutate is not None:
        mutate(booking, current)
    booking.status = target.value
    booking.updated_at = current
    if target in TERMINAL_STATUSES:
        await _release(session, booking, current)

    collected = batch if batch is not None else NotificationBatch()
    if notices is not None:
        notices(booking, collected)
    await _finish(session, commit=commit, batch=None if batch is not None else collected, notifier=notifier)
    _record_success(action, booking)
    return OperationResult.success(booking)


def _requested_window(booking: Booking) -> TimeWindow:
    return coordinator.requested_window(booking)


async def _check_duty_window(
    directory: ProviderDirectory | None, provider_id: str, window: TimeWindow
) -> str | None:
    if directory is None:
        return None
    duty = await resolve_duty_hours(directory, provider_id)
    local_start = to_local(window.start)
    local_end = to_local(window.end)
    same_day = local_start.date() == local_end.date()
    if same_day and check_duty_hours(
        duty, local_start.time().replace(tzinfo=None), local_end.time().replace(tzinfo=None)
    ):
        return None
    return f"Provider is only available from {duty.describe()}."


async def _accept(
    session: AsyncSession,
    booking_id: str,
    action: BookingAction,
    *,
    price_cents: int | None,
    notes: str | None,
    window: TimeWindow | None,
    directory: ProviderDirectory | None,
    notifier: NotificationSink | None,
    batch: NotificationBatch | None,
    now: datetime | None,
    commit: bool,
    provider_held: bool = False,
) -> OperationResult[AcceptOutcome]:
    current = as_utc(now or utcnow())
    if price_cents is None or price_cents <= 0:
        return await _fail(session, action, booking_id, OperationResult.invalid(PRICE_REQUIRED_REASON), commit=commit)

    booking = await _load(session, booking_id)
    if booking is None:
        return await _fail(session, action, booking_id, OperationResult.not_found("Booking"), commit=commit)
    if next_status(booking.status, action) is None:
        reason = describe_rejection(booking.status, action)
        return await _fail(session, action, booking_id, OperationResult.illegal(reason), commit=commit)

    confirmed = (window or _requested_window(booking)).normalized()
    if not confirmed.is_valid:
        return await _fail(session, action, booking_id, OperationResult.invalid(END_BEFORE_START_REASON), commit=commit)
    duty_reason = await _check_duty_window(directory, booking.provider_id, confirmed)
    if duty_reason is not None:
        return await _fail(session, action, booking_id, OperationResult.invalid(duty_reason), commit=commit)

    provider_id = booking.provider_id
    notices = batch if batch is not None else NotificationBatch()
    guard = nullcontext() if provider_held else ledger.provider_guard(session, provider_id)
    async with guard:
        # Re-read under the lock; a competing request may have moved the booking on.
        booking = await _load(session, booking_id, lock=True)
        if booking is None:
            return await _fail(session, action, booking_id, OperationResult.not_found("Booking"), commit=commit)
        target = next_status(booking.status, action)
        if target is None:
            reason = describe_rejection(booking.status, action)
            return await _fail(session, action, booking_id, OperationResult.illegal(reason), commit=commit)

        reservation = await ledger.reserve_slot(session, provider_id, booking_id, confirmed.start, confirmed.end)
        if not reservation.ok:
            return await _fail(session, action, booking_id, reservation.cast(), commit=commit)

        booking.status = target.value
        booking.negotiated_price_cents = price_cents
        booking.provider_notes = notes if notes is not None else booking.provider_notes
        booking.confirmed_start_at = confirmed.start
        booking.confirmed_end_at = confirmed.end
        booking.accepted_at = current
        booking.updated_at = current
        booking.clear_proposal()

        resolved = await coordinator.resolve_conflicts(
            session,
            provider_id,
            confirmed.start,
            confirmed.end,
            booking_id,
            batch=notices,
            now=current,
            commit=False,
        )
        await coordinator.expire_pending(session, booking_id, now=current, commit=False)
        notices.add(
            booking.user_id,
            "Booking Accepted",
            f"Your booking has been accepted for {coordinator.describe_window(confirmed)}.",
        )
        if commit:
            await session.commit()
        else:
            await session.flush()

    if commit and batch is None:
        await notices.flush(notifier)
    _record_success(action, booking, provider_id=provider_id, conflicts_resolved=resolved)
    return OperationResult.success(
        AcceptOutcome(booking=booking, slot=reservation.value, conflicts_resolved=resolved)
    )


async def accept_booking(
    session: AsyncSession,
    booking_id: str,
    *,
    price_cents: int | None,
    notes: str | None = None,
    window: TimeWindow | None = None,
    directory: ProviderDirectory | None = None,
    notifier: NotificationSink | None = None,
    batch: NotificationBatch | None = None,
    now: datetime | None = None,
    commit: bool = True,
    provider_held: bool = False,
) -> OperationResult[AcceptOutcome]:
    """Provider accepts a booking, reserving its slot and displacing colliding requests.

    ``window`` defaults to the requested window. When ``commit`` is false the caller
    commits; pass ``batch`` to collect the notifications in that case. Set
    ``provider_held`` when the caller already holds :func:`ledger.provider_guard` for
    the booking's provider.
    """
    return await _accept(
        session,
        booking_id,
        BookingAction.ACCEPT,
        price_cents=price_cents,
        notes=notes,
        window=window,
        directory=directory,
        notifier=notifier,
        batch=batch,
        now=now,
        commit=commit,
        provider_held=provider_held,
    )


async def confirm_proposal(
    session: AsyncSession,
    booking_id: str,
    *,
    window: TimeWindow | None = None,
    price_cents: int | None = None,
    notes: str | None = None,
    directory: ProviderDirectory | None = None,
    notifier: NotificationSink | None = None,
    batch: NotificationBatch | None = None,
    now: datetime | None = None,
    commit: bool = True,
    provider_held: bool = False,
) -> OperationResult[AcceptOutcome]:
    """User confirms the provider's counter-offer; defaults come from the in-flight proposal."""
    if window is None or price_cents is None:
        booking = await _load(session, booking_id)
        if booking is None:
            return await _fail(
                session, BookingAction.CONFIRM_PROPOSAL, booking_id, OperationResult.not_found("Booking"), commit=commit
            )
        if window is None:
            if booking.proposed_start_at is None or booking.proposed_end_at is None:
                return await _fail(
                    session,
                    BookingAction.CONFIRM_PROPOSAL,
                    booking_id,
                    OperationResult.invalid("Booking has no proposed time to confirm."),
                    commit=commit,
                )
            window = TimeWindow(as_utc(booking.proposed_start_at), as_utc(booking.proposed_end_at))
        if price_cents is None:
            price_cents = booking.proposed_price_cents or booking.negotiated_price_cents
        if notes is None:
            notes = booking.proposed_notes
    return await _accept(
        session,
        booking_id,
        BookingAction.CONFIRM_PROPOSAL,
        price_cents=price_cents,
        notes=notes,
        window=window,
        directory=directory,
        notifier=notifier,
        batch=batch,
        now=now,
        commit=commit,
        provider_held=provider_held,
    )


async def cancel_booking(
    session: AsyncSession,
    booking_id: str,
    *,
    actor: Actor,
    reason: str | None = None,
    notifier: NotificationSink | None = None,
    now: datetime | None = None,
    commit: bool = True,
) -> OperationResult[Booking]:
    def mutate(booking: Booking, current: datetime) -> None:
        booking.cancelled_by = actor.value
        booking.cancellation_reason = reason
        booking.cancelled_at = current
        booking.clear_proposal()

    def notices(booking: Booking, batch: NotificationBatch) -> None:
        message = f"Booking was cancelled by the {actor.value.lower()}."
        if reason:
            message = f"{message} Reason: {reason}"
        if actor != Actor.USER:
            batch.add(booking.user_id, "Booking Cancelled", message)
        if actor != Actor.PROVIDER:
            batch.add(booking.provider_id, "Booking Cancelled", message)

    return await _transition(
        session,
        booking_id,
        BookingAction.CANCEL,
        mutate=mutate,
        notices=notices,
        notifier=notifier,
        now=now,
        commit=commit,
    )


async def mark_awaiting_payment(
    session: AsyncSession,
    booking_id: str,
    *,
    transaction_id: str | None = None,
    now: datetime | None = None,
    commit: bool = True,
) -> OperationResult[Booking]:
    def mutate(booking: Booking, current: datetime) -> None:
        if transaction_id:
            booking.transaction_id = transaction_id
        booking.payment_status = "PENDING"

    return await _transition(
        session, booking_id, BookingAction.MARK_AWAITING_PAYMENT, mutate=mutate, now=now, commit=commit
    )


async def mark_payment_received(
    session: AsyncSession,
    booking_id: str,
    payment: PaymentDetails,
    *,
    notifier: NotificationSink | None = None,
    now: datetime | None = None,
    commit: bool = True,
) -> OperationResult[Booking]:
    def mutate(booking: Booking, current: datetime) -> None:
        booking.transaction_id = payment.transaction_id or booking.transaction_id
        booking.validation_id = payment.validation_id
        booking.payment_method = payment.payment_method
        booking.bank_transaction_id = payment.bank_transaction_id
        booking.payment_status = payment.payment_status
        booking.payment_received_at = current

    def notices(booking: Booking, batch: NotificationBatch) -> None:
        batch.add(booking.provider_id, "Payment Received", "Payment for the booking has been received.")
        batch.add(booking.user_id, "Payment Successful", "Your payment has been confirmed.")

    return await _transition(
        session,
        booking_id,
        BookingAction.MARK_PAYMENT_RECEIVED,
        mutate=mutate,
        notices=notices,
        notifier=notifier,
        now=now,
        commit=commit,
    )


async def start_job(
    session: AsyncSession,
    booking_id: str,
    *,
    notifier: NotificationSink | None = None,
    now: datetime | None = None,
    commit: bool = True,
) -> OperationResult[Booking]:
    def notices(booking: Booking, batch: NotificationBatch) -> None:
        batch.add(booking.user_id, "Job Started", "The provider has started working on your booking.")

    return await _transition(
        session, booking_id, BookingAction.START_JOB, notices=notices, notifier=notifier, now=now, commit=commit
    )


async def mark_job_done(
    session: AsyncSession,
    booking_id: str,
    *,
    notifier: NotificationSink | None = None,
    now: datetime | None = None,
    commit: bool = True,
) -> OperationResult[Booking]:
    def mutate(booking: Booking, current: datetime) -> None:
        booking.job_done_at = current

    def notices(booking: Booking, batch: NotificationBatch) -> None:
        batch.add(booking.user_id, "Job Done", "The provider marked the job as done. Please confirm completion.")

    return await _transition(
        session,
        booking_id,
        BookingAction.MARK_JOB_DONE,
        mutate=mutate,
        notices=notices,
        notifier=notifier,
        now=now,
        commit=commit,
    )


async def mark_completed(
    session: AsyncSession,
    booking_id: str,
    *,
    notifier: NotificationSink | None = None,
    now: datetime | None = None,
    commit: bool = True,
) -> OperationResult[Booking]:
    def mutate(booking: Booking, current: datetime) -> None:
        booking.completed_at = current

    def notices(booking: Booking, batch: NotificationBatch) -> None:
        batch.add(booking.provider_id, "Booking Completed", "The user confirmed the job is complete.")

    return await _transition(
        session,
        booking_id,
        BookingAction.MARK_COMPLETED,
        mutate=mutate,
        notices=notices,
        notifier=notifier,
        now=now,
        commit=commit,
    )


async def mark_disputed(
    session: AsyncSession,
    booking_id: str,
    *,
    actor: Actor,
    reason: str | None = None,
    notifier: NotificationSink | None = None,
    now: datetime | None = None,
    commit: bool = True,
) -> OperationResult[Booking]:
    def notices(booking: Booking, batch: NotificationBatch) -> None:
        message = f"A dispute was opened by the {actor.value.lower()}."
        if reason:
            message = f"{message} Reason: {reason}"
        batch.add(booking.user_id, "Booking Disputed", message)
        batch.add(booking.provider_id, "Booking Disputed", message)

    return await _transition(
        session, booking_id, BookingAction.DISPUTE, notices=notices, notifier=notifier, now=now, commit=commit
    )


async def force_status(
    session: AsyncSession,
    booking_id: str,
    new_status: BookingStatus | str,
    *,
    actor: Actor = Actor.SYSTEM,
    reason: str | None = None,
    now: datetime | None = None,
    commit: bool = True,
) -> OperationResult[Booking]:
    """Set a status without consulting the transition table (system escalations).

    Moving into a terminal status still releases the booking's slot.
    """
    current = as_utc(now or utcnow())
    target = coerce_status(new_status)
    booking = await _load(session, booking_id, lock=True)
    if booking is None:
        return await _fail(session, "force_status", booking_id, OperationResult.not_found("Booking"), commit=commit)

    previous = booking.status
    booking.status = target.value
    booking.updated_at = current
    if target in (BookingStatus.CANCELLED, BookingStatus.AUTO_CANCELLED):
        booking.cancelled_by = actor.value
        booking.cancellation_reason = reason
        booking.cancelled_at = current
        booking.clear_proposal()
    elif target == BookingStatus.COMPLETED:
        booking.completed_at = current
    if target in TERMINAL_STATUSES:
        await _release(session, booking, current)

    await _finish(session, commit=commit, batch=None, notifier=None)
    _record_success("force_status", booking, previous_status=previous)
    return OperationResult.success(booking)


async def record_proposal(
    session: AsyncSession,
    booking_id: str,
    *,
    proposed_by: Actor,
    window: TimeWindow,
    price_cents: int | None = None,
    notes: str | None = None,
    notifier: NotificationSink | None = None,
    batch: NotificationBatch | None = None,
    now: datetime | None = None,
    commit: bool = True,
) -> OperationResult[Booking]:
    """Put a counter-offer in flight and wait for the other party.

    A provider proposal moves the booking to PendingUserApproval; a user proposal moves
    it to PendingProviderApproval. Notices go to ``batch`` when one is passed.
    """
    if proposed_by == Actor.PROVIDER:
        action = BookingAction.REQUEST_USER_APPROVAL
    elif proposed_by == Actor.USER:
        action = BookingAction.REQUEST_PROVIDER_APPROVAL
    else:
        return await _fail(
            session,
            "record_proposal",
            booking_id,
            OperationResult.invalid("Only the user or the provider can propose a new time."),
            commit=commit,
        )
    if not window.is_valid:
        return await _fail(session, action, booking_id, OperationResult.invalid(END_BEFORE_START_REASON), commit=commit)
    if price_cents is not None and price_cents <= 0:
        return await _fail(session, action, booking_id, OperationResult.invalid(PRICE_REQUIRED_REASON), commit=commit)

    def mutate(booking: Booking, current: datetime) -> None:
        booking.proposed_by = proposed_by.value
        booking.proposed_start_at = as_utc(window.start)
        booking.proposed_end_at = as_utc(window.end)
        booking.proposed_price_cents = price_cents
        booking.proposed_notes = notes

    def notices(booking: Booking, outgoing: NotificationBatch) -> None:
        recipient = booking.user_id if proposed_by == Actor.PROVIDER else booking.provider_id
        outgoing.add(
            recipient,
            "Approval Needed",
            f"A new time was proposed: {coordinator.describe_window(window)}.",
        )

    return await _transition(
        session,
        booking_id,
        action,
        mutate=mutate,
        notices=notices,
        notifier=notifier,
        batch=batch,
        now=now,
        commit=commit,
    )


async def resubmit_request(
    session: AsyncSession,
    booking_id: str,
    *,
    requested_date: date,
    start_time: time,
    end_time: time | None = None,
    directory: ProviderDirectory | None = None,
    notifier: NotificationSink | None = None,
    now: datetime | None = None,
    commit: bool = True,
) -> OperationResult[Booking]:
    """User picks a new time for a request that was displaced (NeedRescheduling)."""
    action = BookingAction.RESUBMIT
    booking = await _load(session, booking_id)
    if booking is None:
        return await _fail(session, action, booking_id, OperationResult.not_found("Booking"), commit=commit)
    if next_status(booking.status, action) is None:
        reason = describe_rejection(booking.status, action)
        return await _fail(session, action, booking_id, OperationResult.illegal(reason), commit=commit)

    check = await validate_booking_time(
        session,
        booking.provider_id,
        requested_date,
        start_time,
        end_time,
        directory=directory,
        now=now,
        exclude_booking_id=booking_id,
    )
    if not check.ok:
        return await _fail(session, action, booking_id, OperationResult.invalid(check.reason), commit=commit)

    def mutate(target: Booking, current: datetime) -> None:
        target.requested_date = requested_date
        target.requested_start_time = start_time
        target.requested_end_time = end_time
        target.review_requested_at = current
        target.clear_proposal()

    def notices(target: Booking, batch: NotificationBatch) -> None:
        batch.add(
            target.provider_id,
            "Booking Rescheduled",
            f"The user picked a new time: {coordinator.describe_window(_requested_window(target))}.",
        )

    return await _transition(
        session,
        booking_id,
        action,
        mutate=mutate,
        notices=notices,
        notifier=notifier,
        now=now,
        commit=commit,
    )


async def adjust_booking_time(
    session: AsyncSession,
    booking_id: str,
    *,
    window: TimeWindow,
    reason: str | None = None,
    directory: ProviderDirectory | None = None,
    notifier: NotificationSink | None = None,
    now: datetime | None = None,
    commit: bool = True,
) -> OperationResult[Booking]:
    """Provider moves the confirmed window of an accepted booking, slot included."""
    action = BookingAction.ADJUST_TIME
    current = as_utc(now or utcnow())
    target_window = window.normalized()
    if not target_window.is_valid:
        return await _fail(session, action, booking_id, OperationResult.invalid(END_BEFORE_START_REASON), commit=commit)

    booking = await _load(session, booking_id)
    if booking is None:
        return await _fail(session, action, booking_id, OperationResult.not_found("Booking"), commit=commit)
    duty_reason = await _check_duty_window(directory, booking.provider_id, target_window)
    if duty_reason is not None:
        return await _fail(session, action, booking_id, OperationResult.invalid(duty_reason), commit=commit)

    provider_id = booking.provider_id
    async with ledger.provider_guard(session, provider_id):
        booking = await _load(session, booking_id, lock=True)
        if booking is None:
            return await _fail(session, action, booking_id, OperationResult.not_found("Booking"), commit=commit)
        if next_status(booking.status, action) is None:
            reason_text = describe_rejection(booking.status, action)
            return await _fail(session, action, booking_id, OperationResult.illegal(reason_text), commit=commit)

        slot = await ledger.active_slot_for_booking(session, booking_id)
        if slot is None:
            reservation = await ledger.reserve_slot(
                session, provider_id, booking_id, target_window.start, target_window.end
            )
            if not reservation.ok:
                return await _fail(session, action, booking_id, reservation.cast(), commit=commit)
        else:
            if await ledger.has_overlap(
                session, provider_id, target_window.start, target_window.end, exclude_booking_id=booking_id
            ):
                metrics.record_slot_conflict()
                return await _fail(
                    session, action, booking_id, OperationResult.conflict(ledger.SLOT_CONFLICT_REASON), commit=commit
                )
            await ledger.move_slot(session, slot, target_window.start, target_window.end)

        booking.confirmed_start_at = target_window.start
        booking.confirmed_end_at = target_window.end
        booking.updated_at = current
        batch = NotificationBatch()
        message = f"Your booking time was changed to {coordinator.describe_window(target_window)}."
        if reason:
            message = f"{message} Reason: {reason}"
        batch.add(booking.user_id, "Booking Time Adjusted", message)
        if commit:
            await session.commit()
        else:
            await session.flush()

    if commit:
        await batch.flush(notifier)
    _record_success(action, booking, provider_id=provider_id)
    return OperationResult.success(booking)
