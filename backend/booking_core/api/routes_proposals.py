from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from booking_core.api.problem_details import problem_from_result
from booking_core.dependencies import get_notifier, get_provider_directory
from booking_core.domain.bookings import queries as booking_queries, state_machine
from booking_core.domain.bookings import schemas as booking_schemas
from booking_core.domain.bookings.statuses import Actor, BookingAction, next_status
from booking_core.domain.rescheduling import coordinator
from booking_core.domain.results import OperationResult
from booking_core.infra.db import get_db_session
from booking_core.infra.notifications import NotificationBatch, NotificationSink
from booking_core.infra.providers import ProviderDirectory

router = APIRouter()


def _approval_action(actor: Actor) -> BookingAction:
    if actor == Actor.PROVIDER:
        return BookingAction.REQUEST_USER_APPROVAL
    return BookingAction.REQUEST_PROVIDER_APPROVAL


@router.post(
    "/v1/bookings/{booking_id}/proposals",
    response_model=booking_schemas.ProposalResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_proposal(
    booking_id: str,
    payload: booking_schemas.ProposalCreateRequest,
    request: Request,
    session: AsyncSession = Depends(get_db_session),
    directory: ProviderDirectory = Depends(get_provider_directory),
    notifier: NotificationSink = Depends(get_notifier),
):
    notices = NotificationBatch()
    result = await coordinator.propose(
        session,
        booking_id,
        proposed_by=payload.proposed_by,
        window=payload.window(),
        message=payload.message,
        price_cents=payload.price_cents,
        proposed_by_user_id=payload.proposed_by_user_id,
        proposed_by_name=payload.proposed_by_name,
        directory=directory,
        batch=notices,
        commit=False,
    )
    if not result.ok:
        await session.rollback()
        return problem_from_result(request, result)

    # Put the counter-offer in flight when the booking can still wait for approval.
    booking = await booking_queries.get_booking(session, booking_id)
    if booking is not None and next_status(booking.status, _approval_action(payload.proposed_by)) is not None:
        recorded = await state_machine.record_proposal(
            session,
            booking_id,
            proposed_by=payload.proposed_by,
            window=payload.window(),
            price_cents=payload.price_cents,
            notes=payload.message,
            batch=notices,
            commit=False,
        )
        if not recorded.ok:
            await session.rollback()
            return problem_from_result(request, recorded)
    await session.commit()
    await notices.flush(notifier)
    return booking_schemas.ProposalResponse.model_validate(result.value)


@router.get(
    "/v1/bookings/{booking_id}/proposals",
    response_model=list[booking_schemas.ProposalResponse],
)
async def list_proposals(booking_id: str, request: Request, session: AsyncSession = Depends(get_db_session)):
    if await booking_queries.get_booking(session, booking_id) is None:
        return problem_from_result(request, OperationResult.not_found("Booking"))
    proposals = await coordinator.list_proposals(session, booking_id)
    return [booking_schemas.ProposalResponse.model_validate(proposal) for proposal in proposals]


@router.post("/v1/proposals/{proposal_id}/respond", response_model=booking_schemas.ProposalResponse)
async def respond_to_proposal(
    proposal_id: str,
    payload: booking_schemas.ProposalRespondRequest,
    request: Request,
    session: AsyncSession = Depends(get_db_session),
    directory: ProviderDirectory = Depends(get_provider_directory),
    notifier: NotificationSink = Depends(get_notifier),
):
    result = await coordinator.respond(
        session,
        proposal_id,
        accept=payload.accept,
        response_message=payload.response_message,
        price_cents=payload.price_cents,
        notes=payload.notes,
        directory=directory,
        notifier=notifier,
    )
    if not result.ok:
        return problem_from_result(request, result)
    return booking_schemas.ProposalResponse.model_validate(result.value)
