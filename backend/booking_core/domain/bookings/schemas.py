from datetime import date, datetime, time

from pydantic import BaseModel, ConfigDict, Field, model_validator

from booking_core.domain.bookings.statuses import Actor
from booking_core.shared.clock import TimeWindow, as_utc


class BookingRequest(BaseModel):
    service_id: str = Field(min_length=1, max_length=64)
    user_id: str = Field(min_length=1, max_length=64)
    provider_id: str = Field(min_length=1, max_length=64)
    requested_date: date
    start_time: time
    end_time: time | None = None
    description: str | None = Field(None, max_length=2000)
    address_area: str | None = Field(None, max_length=255)


class WindowPayload(BaseModel):
    start_at: datetime
    end_at: datetime

    @model_validator(mode="after")
    def validate_order(self) -> "WindowPayload":
        if as_utc(self.end_at) <= as_utc(self.start_at):
            raise ValueError("end_at must be after start_at")
        return self

    def window(self) -> TimeWindow:
        return TimeWindow(as_utc(self.start_at), as_utc(self.end_at))


class AcceptRequest(BaseModel):
    price_cents: int = Field(gt=0)
    notes: str | None = Field(None, max_length=2000)
    start_at: datetime | None = None
    end_at: datetime | None = None

    @model_validator(mode="after")
    def validate_window(self) -> "AcceptRequest":
        if (self.start_at is None) ^ (self.end_at is None):
            raise ValueError("start_at and end_at must both be provided")
        return self

    def window(self) -> TimeWindow | None:
        if self.start_at is None or self.end_at is None:
            return None
        return TimeWindow(as_utc(self.start_at), as_utc(self.end_at))


class CancelRequest(BaseModel):
    actor: Actor
    reason: str | None = Field(None, max_length=1000)


class AwaitingPaymentRequest(BaseModel):
    transaction_id: str | None = Field(None, max_length=128)


class PaymentReceivedRequest(BaseModel):
    transaction_id: str | None = Field(None, max_length=128)
    validation_id: str | None = Field(None, max_length=128)
    payment_method: str | None = Field(None, max_length=64)
    bank_transaction_id: str | None = Field(None, max_length=128)
    payment_status: str = Field("VALID", max_length=32)


class DisputeRequest(BaseModel):
    actor: Actor
    reason: str | None = Field(None, max_length=1000)


class ResubmitRequest(BaseModel):
    requested_date: date
    start_time: time
    end_time: time | None = None


class AdjustTimeRequest(WindowPayload):
    reason: str | None = Field(None, max_length=1000)


class ValidateTimeRequest(BaseModel):
    provider_id: str
    requested_date: date
    start_time: time
    end_time: time | None = None


class ValidateTimeResponse(BaseModel):
    ok: bool
    reason: str | None = None
    is_within_duty_hours: bool
    has_minimum_lead_time: bool
    is_provider_available: bool
    duty_hours: str


class ProposalCreateRequest(WindowPayload):
    proposed_by: Actor
    proposed_by_user_id: str | None = None
    proposed_by_name: str | None = Field(None, max_length=255)
    message: str | None = Field(None, max_length=1000)
    price_cents: int | None = Field(None, gt=0)


class ProposalRespondRequest(BaseModel):
    accept: bool
    response_message: str | None = Field(None, max_length=1000)
    price_cents: int | None = Field(None, gt=0)
    notes: str | None = Field(None, max_length=2000)


class BookingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    booking_id: str
    service_id: str
    user_id: str
    provider_id: str
    status: str
    requested_date: date
    requested_start_time: time
    requested_end_time: time | None = None
    confirmed_start_at: datetime | None = None
    confirmed_end_at: datetime | None = None
    proposed_by: str | None = None
    proposed_start_at: datetime | None = None
    proposed_end_at: datetime | None = None
    proposed_price_cents: int | None = None
    negotiated_price_cents: int | None = None
    cancelled_by: str | None = None
    cancellation_reason: str | None = None
    payment_status: str | None = None
    created_at: datetime
    accepted_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None


class SlotResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    slot_id: str
    provider_id: str
    booking_id: str
    start_at: datetime
    end_at: datetime
    is_active: bool


class ProposalResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    proposal_id: str
    booking_id: str
    proposed_by: str
    proposed_by_name: str | None = None
    proposed_start_at: datetime
    proposed_end_at: datetime
    proposed_price_cents: int | None = None
    message: str | None = None
    response_message: str | None = None
    status: str
    created_at: datetime
    responded_at: datetime | None = None


class ServiceBlockResponse(BaseModel):
    service_id: str
    blocked: bool
    reason: str | None = None
    unblock_at: datetime | None = None
    strikes: int
