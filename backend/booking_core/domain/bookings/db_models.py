from __future__ import annotations

import uuid
from datetime import date, datetime, time

from sqlalchemy import Date, DateTime, Index, Integer, String, Text, Time, func
from sqlalchemy.orm import Mapped, mapped_column

from booking_core.domain.bookings.statuses import INITIAL_STATUS
from booking_core.infra.db import Base
from booking_core.shared.clock import TimeWindow, as_utc, combine_local, utcnow


class Booking(Base):
    __tablename__ = "bookings"

    booking_id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    service_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    provider_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text)
    address_area: Mapped[str | None] = mapped_column(String(255))
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=INITIAL_STATUS.value)

    requested_date: Mapped[date] = mapped_column(Date, nullable=False)
    requested_start_time: Mapped[time] = mapped_column(Time, nullable=False)
    requested_end_time: Mapped[time | None] = mapped_column(Time)

    confirmed_start_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    confirmed_end_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    proposed_by: Mapped[str | None] = mapped_column(String(16))
    proposed_start_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    proposed_end_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    proposed_price_cents: Mapped[int | None] = mapped_column(Integer)
    proposed_notes: Mapped[str | None] = mapped_column(Text)

    negotiated_price_cents: Mapped[int | None] = mapped_column(Integer)
    provider_notes: Mapped[str | None] = mapped_column(Text)

    cancelled_by: Mapped[str | None] = mapped_column(String(16))
    cancellation_reason: Mapped[str | None] = mapped_column(Text)

    transaction_id: Mapped[str | None] = mapped_column(String(128), index=True)
    validation_id: Mapped[str | None] = mapped_column(String(128))
    payment_method: Mapped[str | None] = mapped_column(String(64))
    bank_transaction_id: Mapped[str | None] = mapped_column(String(128))
    payment_status: Mapped[str | None] = mapped_column(String(32))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )
    # Start of the current provider-review period; the auto-cancel timeout runs from here.
    review_requested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    payment_received_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    job_done_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("ix_bookings_provider_status", "provider_id", "status"),
        Index("ix_bookings_service_status_cancelled", "service_id", "status", "cancelled_at"),
        Index("ix_bookings_status_review_requested", "status", "review_requested_at"),
    )

    @property
    def requested_start_at(self) -> datetime:
        return combine_local(self.requested_date, self.requested_start_time)

    @property
    def requested_end_at(self) -> datetime | None:
        if self.requested_end_time is None:
            return None
        return combine_local(self.requested_date, self.requested_end_time)

    @property
    def confirmed_window(self) -> TimeWindow | None:
        if self.confirmed_start_at is None or self.confirmed_end_at is None:
            return None
        return TimeWindow(as_utc(self.confirmed_start_at), as_utc(self.confirmed_end_at))

    def clear_proposal(self) -> None:
        self.proposed_by = None
        self.proposed_start_at = None
        self.proposed_end_at = None
        self.proposed_price_cents = None
        self.proposed_notes = None
