import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from booking_core.infra.db import Base
from booking_core.shared.clock import as_utc, utcnow


class ServiceBlock(Base):
    __tablename__ = "service_blocks"

    block_id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    service_id: Mapped[str] = mapped_column(String(64), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    blocked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )
    unblock_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        Index("ix_service_blocks_service_active", "service_id", "is_active"),
        Index("ix_service_blocks_active_unblock", "is_active", "unblock_at"),
    )

    def is_in_force(self, now: datetime) -> bool:
        return bool(self.is_active) and as_utc(self.unblock_at) > as_utc(now)
