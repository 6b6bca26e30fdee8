import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from booking_core.infra.db import Base
from booking_core.shared.clock import TimeWindow, as_utc, utcnow


class ProposalStatus(str, Enum):
    PENDING = "Pending"
    ACCEPTED = "Accepted"
    REJECTED = "Rejected"
    EXPIRED = "Expired"


class RescheduleProposal(Base):
    __tablename__ = "reschedule_proposals"

    proposal_id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    booking_id: Mapped[str] = mapped_column(
        ForeignKey("bookings.booking_id", ondelete="CASCADE"),
        nullable=False,
    )
    proposed_by: Mapped[str] = mapped_column(String(16), nullable=False)
    proposed_by_user_id: Mapped[str | None] = mapped_column(String(64))
    proposed_by_name: Mapped[str | None] = mapped_column(String(255))
    proposed_start_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    proposed_end_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    proposed_price_cents: Mapped[int | None] = mapped_column(Integer)
    message: Mapped[str | None] = mapped_column(Text)
    response_message: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=ProposalStatus.PENDING.value)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )
    responded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("ix_reschedule_proposals_booking_status", "booking_id", "status"),
        Index("ix_reschedule_proposals_booking_created", "booking_id", "created_at"),
    )

    @property
    def window(self) -> TimeWindow:
        return TimeWindow(as_utc(self.proposed_start_at), as_utc(self.proposed_end_at))

    @property
    def is_pending(self) -> bool:
        return self.status == ProposalStatus.PENDING.value
