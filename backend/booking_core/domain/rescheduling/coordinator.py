"""Renegotiation of booking times.

Two concerns live here: pushing competing pending requests out of a slot that was
just claimed, and the proposal/response exchange between user and provider. Booking
status changes caused by an accepted proposal go through the state machine.
"""

import logging
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from booking_core.domain.bookings import queries as booking_queries
from booking_core.domain.bookings.db_models import Booking
from booking_core.domain.bookings.statuses import (
    Actor,
    BookingAction,
    BookingStatus,
    is_terminal,
    next_status,
)
from booking_core.domain.rescheduling.db_models import ProposalStatus, RescheduleProposal
from booking_core.domain.results import OperationResult
from booking_core.domain.scheduling.validator import END_BEFORE_START_REASON, validate_window
from booking_core.domain.time_slots import ledger
from booking_core.infra.locks import booking_locks
from booking_core.infra.metrics import metrics
from booking_core.infra.notifications import NotificationBatch, NotificationSink
from booking_core.infra.providers import ProviderDirectory
from booking_core.settings import settings
from booking_core.shared.clock import TimeWindow, as_utc, format_local_time, to_local, utcnow

logger = logging.getLogger(__name__)

NEEDS_RESCHEDULING_TITLE = "Booking Needs Rescheduling"
NEW_PROPOSAL_TITLE = "New Time Proposed"
PROPOSAL_DECLINED_TITLE = "Proposed Time Declined"


def describe_window(window: TimeWindow) -> str:
    start = to_local(window.start)
    return f"{start:%d %b %Y} {format_local_time(window.start)} to {format_local_time(window.end)}"


def requested_window(booking: Booking) -> TimeWindow:
    start = booking.requested_start_at
    end = booking.requested_end_at or start + settings.assumed_request_duration
    return TimeWindow(start, end)


async def resolve_conflicts(
    session: AsyncSession,
    provider_id: str,
    accepted_start: datetime,
    accepted_end: datetime,
    accepted_booking_id: str,
    *,
    batch: NotificationBatch | None = None,
    notifier: NotificationSink | None = None,
    now: datetime | None = None,
    commit: bool = True,
) -> int:
    """Move pending requests that collide with an accepted window to NeedRescheduling.

    Requests without an end time are assumed to last
    ``settings.assumed_request_duration``. Returns the number of bookings moved.
    """
    accepted = TimeWindow(as_utc(accepted_start), as_utc(accepted_end))
    current = as_utc(now or utcnow())
    notices = batch if batch is not None else NotificationBatch()
    moved = 0
    for candidate in await booking_queries.pending_for_provider(
        session, provider_id, exclude_booking_id=accepted_booking_id
    ):
        window = requested_window(candidate)
        if not window.overlaps(accepted):
            continue
        target = next_status(candidate.status, BookingAction.FLAG_RESCHEDULING)
        if target is None:
            continue
        candidate.status = target.value
        candidate.updated_at = current
        moved += 1
        metrics.record_transition(BookingAction.FLAG_RESCHEDULING.value, "ok")
        notices.add(
            candidate.user_id,
            NEEDS_RESCHEDULING_TITLE,
            f"The provider is no longer available for {describe_window(window)}. "
            "Please choose a different time for your booking.",
        )
    if moved:
        logger.info(
            "pending_requests_rescheduled",
            extra={
                "extra": {
                    "provider_id": provider_id,
                    "accepted_booking_id": accepted_booking_id,
                    "count": moved,
                }
            },
        )
    if commit:
        await session.commit()
        if batch is None:
            await notices.flush(notifier)
    else:
        await session.flush()
    return moved


async def expire_pending(
    session: AsyncSession,
    booking_id: str,
    except_proposal_id: str | None = None,
    *,
    now: datetime | None = None,
    commit: bool = True,
) -> int:
    stmt = (
        update(RescheduleProposal)
        .where(
            RescheduleProposal.booking_id == booking_id,
            RescheduleProposal.status == ProposalStatus.PENDING.value,
        )
        .values(status=ProposalStatus.EXPIRED.value, responded_at=as_utc(now or utcnow()))
        .execution_options(synchronize_session="fetch")
    )
    if except_proposal_id is not None:
        stmt = stmt.where(RescheduleProposal.proposal_id != except_proposal_id)
    result = await session.execute(stmt)
    expired = result.rowcount or 0
    if commit:
        await session.commit()
    if expired:
        logger.info("proposals_expired", extra={"extra": {"booking_id": booking_id, "count": expired}})
    return expired


async def list_proposals(session: AsyncSession, booking_id: str) -> list[RescheduleProposal]:
    stmt = (
        select(RescheduleProposal)
        .where(RescheduleProposal.booking_id == booking_id)
        .order_by(RescheduleProposal.created_at.desc())
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def pending_proposals(session: AsyncSession, booking_id: str) -> list[RescheduleProposal]:
    return [proposal for proposal in await list_proposals(session, booking_id) if proposal.is_pending]


async def latest_proposal(session: AsyncSession, booking_id: str) -> RescheduleProposal | None:
    proposals = await list_proposals(session, booking_id)
    return proposals[0] if proposals else None


def _counterpart(booking: Booking, actor: str) -> str:
    return booking.user_id if actor == Actor.PROVIDER.value else booking.provider_id


async def propose(
    session: AsyncSession,
    booking_id: str,
    *,
    proposed_by: Actor,
    window: TimeWindow,
    message: str | None = None,
    price_cents: int | None = None,
    proposed_by_user_id: str | None = None,
    proposed_by_name: str | None = None,
    directory: ProviderDirectory | None = None,
    notifier: NotificationSink | None = None,
    batch: NotificationBatch | None = None,
    now: datetime | None = None,
    commit: bool = True,
) -> OperationResult[RescheduleProposal]:
    """Record a Pending proposal. The booking's status is left to the caller.

    With ``commit=False`` pass ``batch``; the caller flushes it after committing.
    """
    booking = await session.get(Booking, booking_id)
    if booking is None:
        return OperationResult.not_found("Booking")
    if is_terminal(booking.status):
        return OperationResult.illegal(f"Booking is already in terminal status: {booking.status}")
    if proposed_by not in (Actor.USER, Actor.PROVIDER):
        return OperationResult.invalid("Only the user or the provider can propose a new time.")
    if not window.is_valid:
        return OperationResult.invalid(END_BEFORE_START_REASON)
    if price_cents is not None and price_cents <= 0:
        return OperationResult.invalid("Price must be greater than zero.")

    check = await validate_window(
        session,
        booking.provider_id,
        window.start,
        window.end,
        directory=directory,
        now=now,
        exclude_booking_id=booking_id,
    )
    if not check.ok:
        return OperationResult.invalid(check.reason)

    proposal = RescheduleProposal(
        booking_id=booking_id,
        proposed_by=proposed_by.value,
        proposed_by_user_id=proposed_by_user_id,
        proposed_by_name=proposed_by_name,
        proposed_start_at=as_utc(window.start),
        proposed_end_at=as_utc(window.end),
        proposed_price_cents=price_cents,
        message=message,
        status=ProposalStatus.PENDING.value,
        created_at=as_utc(now or utcnow()),
    )
    session.add(proposal)
    notices = batch if batch is not None else NotificationBatch()
    notices.add(
        _counterpart(booking, proposed_by.value),
        NEW_PROPOSAL_TITLE,
        f"{proposed_by_name or proposed_by.value} proposed {describe_window(window)}.",
    )
    if commit:
        await session.commit()
    else:
        await session.flush()
    logger.info(
        "proposal_created",
        extra={
            "extra": {
                "booking_id": booking_id,
                "proposal_id": proposal.proposal_id,
                "proposed_by": proposed_by.value,
            }
        },
    )
    if commit and batch is None:
        await notices.flush(notifier)
    return OperationResult.success(proposal)


async def _lock_proposal(session: AsyncSession, proposal_id: str) -> RescheduleProposal | None:
    result = await session.execute(
        select(RescheduleProposal)
        .where(RescheduleProposal.proposal_id == proposal_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _lock_booking(session: AsyncSession, booking_id: str) -> Booking | None:
    result = await session.execute(
        select(Booking)
        .where(Booking.booking_id == booking_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def respond(
    session: AsyncSession,
    proposal_id: str,
    *,
    accept: bool,
    response_message: str | None = None,
    price_cents: int | None = None,
    notes: str | None = None,
    directory: ProviderDirectory | None = None,
    notifier: NotificationSink | None = None,
    now: datetime | None = None,
) -> OperationResult[RescheduleProposal]:
    """Accept or reject a Pending proposal.

    Acceptance expires every sibling proposal and applies the proposed window and price
    to the booking in one transaction. A response to a proposal that is no longer
    Pending is rejected.

    Locks are taken provider first, then booking, matching direct acceptance.
    """
    from booking_core.domain.bookings import state_machine

    found = await session.get(RescheduleProposal, proposal_id)
    if found is None:
        return OperationResult.not_found("Proposal")
    booking_id = found.booking_id
    owner = await session.get(Booking, booking_id)
    if owner is None:
        return OperationResult.not_found("Booking")
    provider_id = owner.provider_id
    current = as_utc(now or utcnow())

    async with ledger.provider_guard(session, provider_id), booking_locks.hold(booking_id):
        booking = await _lock_booking(session, booking_id)
        proposal = await _lock_proposal(session, proposal_id)
        if booking is None or proposal is None:
            await session.rollback()
            return OperationResult.not_found("Booking" if booking is None else "Proposal")
        if not proposal.is_pending:
            status = proposal.status
            await session.rollback()
            metrics.record_transition("respond_proposal", "illegal_transition")
            return OperationResult.illegal(f"Proposal is no longer pending (status {status}).")

        proposal.responded_at = current
        proposal.response_message = response_message

        if not accept:
            proposal.status = ProposalStatus.REJECTED.value
            recipient = booking.provider_id if proposal.proposed_by == Actor.PROVIDER.value else booking.user_id
            await session.commit()
            logger.info(
                "proposal_rejected",
                extra={"extra": {"booking_id": booking_id, "proposal_id": proposal_id}},
            )
            notices = NotificationBatch()
            notices.add(
                recipient,
                PROPOSAL_DECLINED_TITLE,
                response_message or f"Your proposed time {describe_window(proposal.window)} was declined.",
            )
            await notices.flush(notifier)
            return OperationResult.success(proposal)

        proposal.status = ProposalStatus.ACCEPTED.value
        await expire_pending(session, booking_id, except_proposal_id=proposal_id, now=current, commit=False)

        resolved_price = next(
            (
                value
                for value in (
                    price_cents,
                    proposal.proposed_price_cents,
                    booking.negotiated_price_cents,
                    booking.proposed_price_cents,
                )
                if value is not None
            ),
            None,
        )
        window = proposal.window
        if booking.status == BookingStatus.PENDING_USER_APPROVAL.value:
            outcome = await state_machine.confirm_proposal(
                session,
                booking_id,
                window=window,
                price_cents=resolved_price,
                notes=notes,
                directory=directory,
                notifier=notifier,
                now=current,
                provider_held=True,
            )
        else:
            outcome = await state_machine.accept_booking(
                session,
                booking_id,
                price_cents=resolved_price,
                notes=notes,
                window=window,
                directory=directory,
                notifier=notifier,
                now=current,
                provider_held=True,
            )
        if not outcome.ok:
            return outcome.cast()

    logger.info(
        "proposal_accepted",
        extra={"extra": {"booking_id": booking_id, "proposal_id": proposal_id}},
    )
    return OperationResult.success(proposal)
