from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from booking_core.api.problem_details import problem_from_result
from booking_core.dependencies import get_notifier, get_provider_directory
from booking_core.domain.bookings import intake, queries as booking_queries, state_machine
from booking_core.domain.bookings import schemas as booking_schemas
from booking_core.domain.results import OperationResult
from booking_core.domain.scheduling.validator import validate_booking_time
from booking_core.domain.service_blocks import ledger as block_ledger
from booking_core.domain.time_slots import ledger as slot_ledger
from booking_core.infra.db import get_db_session
from booking_core.infra.notifications import NotificationSink
from booking_core.infra.providers import ProviderDirectory

router = APIRouter()


def _booking_response(request: Request, result: OperationResult):
    if not result.ok:
        return problem_from_result(request, result)
    return booking_schemas.BookingResponse.model_validate(result.value)


@router.post(
    "/v1/bookings",
    response_model=booking_schemas.BookingResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_booking(
    payload: booking_schemas.BookingRequest,
    request: Request,
    session: AsyncSession = Depends(get_db_session),
    directory: ProviderDirectory = Depends(get_provider_directory),
    notifier: NotificationSink = Depends(get_notifier),
):
    result = await intake.create_booking_request(session, payload, directory=directory, notifier=notifier)
    return _booking_response(request, result)


@router.get("/v1/bookings/{booking_id}", response_model=booking_schemas.BookingResponse)
async def get_booking(booking_id: str, request: Request, session: AsyncSession = Depends(get_db_session)):
    booking = await booking_queries.get_booking(session, booking_id)
    if booking is None:
        return problem_from_result(request, OperationResult.not_found("Booking"))
    return booking_schemas.BookingResponse.model_validate(booking)


@router.post("/v1/bookings/{booking_id}/accept", response_model=booking_schemas.BookingResponse)
async def accept_booking(
    booking_id: str,
    payload: booking_schemas.AcceptRequest,
    request: Request,
    session: AsyncSession = Depends(get_db_session),
    directory: ProviderDirectory = Depends(get_provider_directory),
    notifier: NotificationSink = Depends(get_notifier),
):
    result = await state_machine.accept_booking(
        session,
        booking_id,
        price_cents=payload.price_cents,
        notes=payload.notes,
        window=payload.window(),
        directory=directory,
        notifier=notifier,
    )
    if not result.ok:
        return problem_from_result(request, result)
    return booking_schemas.BookingResponse.model_validate(result.value.booking)


@router.post("/v1/bookings/{booking_id}/cancel", response_model=booking_schemas.BookingResponse)
async def cancel_booking(
    booking_id: str,
    payload: booking_schemas.CancelRequest,
    request: Request,
    session: AsyncSession = Depends(get_db_session),
    notifier: NotificationSink = Depends(get_notifier),
):
    result = await state_machine.cancel_booking(
        session, booking_id, actor=payload.actor, reason=payload.reason, notifier=notifier
    )
    return _booking_response(request, result)


@router.post("/v1/bookings/{booking_id}/awaiting-payment", response_model=booking_schemas.BookingResponse)
async def mark_awaiting_payment(
    booking_id: str,
    payload: booking_schemas.AwaitingPaymentRequest,
    request: Request,
    session: AsyncSession = Depends(get_db_session),
):
    result = await state_machine.mark_awaiting_payment(session, booking_id, transaction_id=payload.transaction_id)
    return _booking_response(request, result)


@router.post("/v1/bookings/{booking_id}/payment", response_model=booking_schemas.BookingResponse)
async def mark_payment_received(
    booking_id: str,
    payload: booking_schemas.PaymentReceivedRequest,
    request: Request,
    session: AsyncSession = Depends(get_db_session),
    notifier: NotificationSink = Depends(get_notifier),
):
    payment = state_machine.PaymentDetails(**payload.model_dump())
    result = await state_machine.mark_payment_received(session, booking_id, payment, notifier=notifier)
    return _booking_response(request, result)


@router.post("/v1/bookings/{booking_id}/start", response_model=booking_schemas.BookingResponse)
async def start_job(
    booking_id: str,
    request: Request,
    session: AsyncSession = Depends(get_db_session),
    notifier: NotificationSink = Depends(get_notifier),
):
    result = await state_machine.start_job(session, booking_id, notifier=notifier)
    return _booking_response(request, result)


@router.post("/v1/bookings/{booking_id}/job-done", response_model=booking_schemas.BookingResponse)
async def mark_job_done(
    booking_id: str,
    request: Request,
    session: AsyncSession = Depends(get_db_session),
    notifier: NotificationSink = Depends(get_notifier),
):
    result = await state_machine.mark_job_done(session, booking_id, notifier=notifier)
    return _booking_response(request, result)


@router.post("/v1/bookings/{booking_id}/complete", response_model=booking_schemas.BookingResponse)
async def mark_completed(
    booking_id: str,
    request: Request,
    session: AsyncSession = Depends(get_db_session),
    notifier: NotificationSink = Depends(get_notifier),
):
    result = await state_machine.mark_completed(session, booking_id, notifier=notifier)
    return _booking_response(request, result)


@router.post("/v1/bookings/{booking_id}/dispute", response_model=booking_schemas.BookingResponse)
async def mark_disputed(
    booking_id: str,
    payload: booking_schemas.DisputeRequest,
    request: Request,
    session: AsyncSession = Depends(get_db_session),
    notifier: NotificationSink = Depends(get_notifier),
):
    result = await state_machine.mark_disputed(
        session, booking_id, actor=payload.actor, reason=payload.reason, notifier=notifier
    )
    return _booking_response(request, result)


@router.post("/v1/bookings/{booking_id}/resubmit", response_model=booking_schemas.BookingResponse)
async def resubmit_booking(
    booking_id: str,
    payload: booking_schemas.ResubmitRequest,
    request: Request,
    session: AsyncSession = Depends(get_db_session),
    directory: ProviderDirectory = Depends(get_provider_directory),
    notifier: NotificationSink = Depends(get_notifier),
):
    result = await state_machine.resubmit_request(
        session,
        booking_id,
        requested_date=payload.requested_date,
        start_time=payload.start_time,
        end_time=payload.end_time,
        directory=directory,
        notifier=notifier,
    )
    return _booking_response(request, result)


@router.post("/v1/bookings/{booking_id}/adjust-time", response_model=booking_schemas.BookingResponse)
async def adjust_booking_time(
    booking_id: str,
    payload: booking_schemas.AdjustTimeRequest,
    request: Request,
    session: AsyncSession = Depends(get_db_session),
    directory: ProviderDirectory = Depends(get_provider_directory),
    notifier: NotificationSink = Depends(get_notifier),
):
    result = await state_machine.adjust_booking_time(
        session,
        booking_id,
        window=payload.window(),
        reason=payload.reason,
        directory=directory,
        notifier=notifier,
    )
    return _booking_response(request, result)


@router.post("/v1/scheduling/validate", response_model=booking_schemas.ValidateTimeResponse)
async def validate_time(
    payload: booking_schemas.ValidateTimeRequest,
    session: AsyncSession = Depends(get_db_session),
    directory: ProviderDirectory = Depends(get_provider_directory),
):
    check = await validate_booking_time(
        session,
        payload.provider_id,
        payload.requested_date,
        payload.start_time,
        payload.end_time,
        directory=directory,
    )
    return booking_schemas.ValidateTimeResponse(
        ok=check.ok,
        reason=check.reason,
        is_within_duty_hours=check.is_within_duty_hours,
        has_minimum_lead_time=check.has_minimum_lead_time,
        is_provider_available=check.is_provider_available,
        duty_hours=check.duty_hours.describe(),
    )


@router.get("/v1/providers/{provider_id}/slots", response_model=list[booking_schemas.SlotResponse])
async def list_provider_slots(
    provider_id: str,
    from_: datetime | None = Query(None, alias="from"),
    session: AsyncSession = Depends(get_db_session),
):
    slots = await slot_ledger.slots_for_provider(session, provider_id, from_)
    return [booking_schemas.SlotResponse.model_validate(slot) for slot in slots]


@router.get("/v1/services/{service_id}/block", response_model=booking_schemas.ServiceBlockResponse)
async def get_service_block(service_id: str, session: AsyncSession = Depends(get_db_session)):
    block = await block_ledger.get_active_block(session, service_id)
    strikes = await booking_queries.count_auto_cancellations(session, service_id)
    return booking_schemas.ServiceBlockResponse(
        service_id=service_id,
        blocked=block is not None,
        reason=block.reason if block else None,
        unblock_at=block.unblock_at if block else None,
        strikes=strikes,
    )
