"""Provider time-slot ledger.

Slots are the locked intervals on a provider's calendar. Overlap is half-open:
``[a_start, a_end)`` and ``[b_start, b_end)`` collide iff ``a_start < b_end`` and
``a_end > b_start``. Every query joins the owning booking and ignores slots whose
booking is already terminal, so a slot that missed its release never blocks a provider.

Mutations must run inside :func:`provider_guard`; :func:`reserve_slot` is the only
supported way to create a slot for a booking.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime

from sqlalchemy import and_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from booking_core.domain.bookings.db_models import Booking
from booking_core.domain.bookings.statuses import TERMINAL_STATUS_VALUES
from booking_core.domain.results import OperationResult
from booking_core.domain.time_slots.db_models import ProviderCalendar, TimeSlot
from booking_core.infra.db import dialect_name
from booking_core.infra.locks import provider_locks
from booking_core.infra.metrics import metrics
from booking_core.shared.clock import as_utc, utcnow

logger = logging.getLogger(__name__)

SLOT_OVERLAP_CONSTRAINT = "time_slots_provider_no_overlap"
_EXCLUSION_VIOLATION = "23P01"

SLOT_CONFLICT_REASON = "Provider already has a booking during this time. Please select a different time."


def _live_slots(provider_id: str, exclude_booking_id: str | None = None):
    stmt = (
        select(TimeSlot)
        .join(Booking, Booking.booking_id == TimeSlot.booking_id)
        .where(
            TimeSlot.provider_id == provider_id,
            TimeSlot.is_active.is_(True),
            Booking.status.not_in(TERMINAL_STATUS_VALUES),
        )
    )
    if exclude_booking_id is not None:
        stmt = stmt.where(TimeSlot.booking_id != exclude_booking_id)
    return stmt


def _overlap_clause(start: datetime, end: datetime):
    return and_(TimeSlot.start_at < as_utc(end), TimeSlot.end_at > as_utc(start))


async def has_overlap(
    session: AsyncSession,
    provider_id: str,
    start: datetime,
    end: datetime,
    exclude_booking_id: str | None = None,
) -> bool:
    stmt = _live_slots(provider_id, exclude_booking_id).where(_overlap_clause(start, end)).limit(1)
    result = await session.execute(stmt)
    return result.scalar_one_or_none() is not None


async def overlapping(
    session: AsyncSession,
    provider_id: str,
    start: datetime,
    end: datetime,
    exclude_booking_id: str | None = None,
) -> list[TimeSlot]:
    stmt = (
        _live_slots(provider_id, exclude_booking_id)
        .where(_overlap_clause(start, end))
        .order_by(TimeSlot.start_at)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def starts_inside_slot(session: AsyncSession, provider_id: str, instant: datetime) -> bool:
    """True when ``instant`` lies in ``[slot.start, slot.end)`` of a live slot."""
    point = as_utc(instant)
    stmt = (
        _live_slots(provider_id)
        .where(TimeSlot.start_at <= point, TimeSlot.end_at > point)
        .limit(1)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none() is not None


async def slots_for_provider(
    session: AsyncSession, provider_id: str, from_: datetime | None = None
) -> list[TimeSlot]:
    stmt = _live_slots(provider_id)
    if from_ is not None:
        stmt = stmt.where(TimeSlot.end_at > as_utc(from_))
    result = await session.execute(stmt.order_by(TimeSlot.start_at))
    return list(result.scalars().all())


async def active_slot_for_booking(session: AsyncSession, booking_id: str) -> TimeSlot | None:
    stmt = (
        select(TimeSlot)
        .where(TimeSlot.booking_id == booking_id, TimeSlot.is_active.is_(True))
        .order_by(TimeSlot.created_at.desc())
        .limit(1)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def create_slot(
    session: AsyncSession,
    provider_id: str,
    booking_id: str,
    start: datetime,
    end: datetime,
) -> TimeSlot:
    """Unconditional insert. Callers go through :func:`reserve_slot` instead."""
    slot = TimeSlot(
        provider_id=provider_id,
        booking_id=booking_id,
        start_at=as_utc(start),
        end_at=as_utc(end),
        is_active=True,
    )
    session.add(slot)
    await session.flush()
    return slot


async def deactivate(session: AsyncSession, slot_id: str) -> int:
    result = await session.execute(
        update(TimeSlot)
        .where(TimeSlot.slot_id == slot_id, TimeSlot.is_active.is_(True))
        .values(is_active=False, updated_at=utcnow())
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount or 0


async def release_stale_overlaps(session: AsyncSession, provider_id: str, start: datetime, end: datetime) -> int:
    """Deactivate active slots in ``[start, end)`` whose booking already ended.

    Such slots are invisible to the overlap queries but still count for the Postgres
    exclusion constraint.
    """
    stale = await session.execute(
        select(TimeSlot.slot_id)
        .join(Booking, Booking.booking_id == TimeSlot.booking_id)
        .where(
            TimeSlot.provider_id == provider_id,
            TimeSlot.is_active.is_(True),
            Booking.status.in_(TERMINAL_STATUS_VALUES),
            _overlap_clause(start, end),
        )
    )
    slot_ids = list(stale.scalars().all())
    if not slot_ids:
        return 0
    await session.execute(
        update(TimeSlot)
        .where(TimeSlot.slot_id.in_(slot_ids))
        .values(is_active=False, updated_at=utcnow())
        .execution_options(synchronize_session="fetch")
    )
    logger.warning(
        "stale_slot_released",
        extra={"extra": {"provider_id": provider_id, "slot_ids": slot_ids}},
    )
    return len(slot_ids)


async def deactivate_by_booking(session: AsyncSession, booking_id: str) -> int:
    result = await session.execute(
        update(TimeSlot)
        .where(TimeSlot.booking_id == booking_id, TimeSlot.is_active.is_(True))
        .values(is_active=False, updated_at=utcnow())
        .execution_options(synchronize_session="fetch")
    )
    released = result.rowcount or 0
    if released:
        logger.info("slot_released", extra={"extra": {"booking_id": booking_id, "slots": released}})
    return released


async def _ensure_calendar_row(session: AsyncSession, provider_id: str) -> None:
    dialect = dialect_name(session)
    if dialect == "postgresql":
        stmt = pg_insert(ProviderCalendar).values(provider_id=provider_id, created_at=utcnow())
        await session.execute(stmt.on_conflict_do_nothing(index_elements=["provider_id"]))
        return
    if dialect == "sqlite":
        stmt = sqlite_insert(ProviderCalendar).values(provider_id=provider_id, created_at=utcnow())
        await session.execute(stmt.on_conflict_do_nothing(index_elements=["provider_id"]))
        return
    if await session.get(ProviderCalendar, provider_id) is None:
        session.add(ProviderCalendar(provider_id=provider_id))
        await session.flush()


@asynccontextmanager
async def provider_guard(session: AsyncSession, provider_id: str) -> AsyncIterator[ProviderCalendar]:
    """Serialize slot mutations for one provider.

    Holds the in-process lock for ``provider_id`` and, inside the session's
    transaction, a row lock on the provider's calendar row. Commit inside the block
    so the next holder sees the result.
    """
    async with provider_locks.hold(provider_id):
        await _ensure_calendar_row(session, provider_id)
        result = await session.execute(
            select(ProviderCalendar)
            .where(ProviderCalendar.provider_id == provider_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        yield result.scalar_one()


def is_slot_conflict_error(exc: IntegrityError) -> bool:
    orig = getattr(exc, "orig", None)
    diag = getattr(orig, "diag", None)
    constraint = getattr(diag, "constraint_name", None)
    if constraint == SLOT_OVERLAP_CONSTRAINT:
        return True
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate == _EXCLUSION_VIOLATION:
        return True
    return SLOT_OVERLAP_CONSTRAINT in str(orig or exc)


async def reserve_slot(
    session: AsyncSession,
    provider_id: str,
    booking_id: str,
    start: datetime,
    end: datetime,
) -> OperationResult[TimeSlot]:
    """Reserve ``[start, end)`` for ``booking_id`` or reject it.

    Must be called inside :func:`provider_guard` for ``provider_id``. Slots already
    owned by ``booking_id`` do not count as conflicts.
    """
    if await has_overlap(session, provider_id, start, end, exclude_booking_id=booking_id):
        metrics.record_slot_conflict()
        logger.info(
            "slot_conflict",
            extra={"extra": {"provider_id": provider_id, "booking_id": booking_id, "source": "overlap_check"}},
        )
        return OperationResult.conflict(SLOT_CONFLICT_REASON)
    await release_stale_overlaps(session, provider_id, start, end)

    # The exclusion constraint only exists on Postgres; isolate the insert there so a
    # violation leaves the outer transaction usable.
    savepoint = await session.begin_nested() if dialect_name(session) == "postgresql" else None
    try:
        slot = await create_slot(session, provider_id, booking_id, start, end)
    except IntegrityError as exc:
        if savepoint is None or not is_slot_conflict_error(exc):
            raise
        await savepoint.rollback()
        metrics.record_slot_conflict()
        logger.warning(
            "slot_conflict",
            extra={"extra": {"provider_id": provider_id, "booking_id": booking_id, "source": "constraint"}},
        )
        return OperationResult.conflict(SLOT_CONFLICT_REASON)
    if savepoint is not None:
        await savepoint.commit()
    return OperationResult.success(slot)


async def move_slot(session: AsyncSession, slot: TimeSlot, start: datetime, end: datetime) -> TimeSlot:
    """Move an existing slot in place. Callers hold the provider guard and have checked overlap."""
    await release_stale_overlaps(session, slot.provider_id, start, end)
    slot.start_at = as_utc(start)
    slot.end_at = as_utc(end)
    slot.updated_at = utcnow()
    await session.flush()
    return slot
