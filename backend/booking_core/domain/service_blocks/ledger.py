import logging
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from booking_core.domain.service_blocks.db_models import ServiceBlock
from booking_core.infra.metrics import metrics
from booking_core.settings import settings
from booking_core.shared.clock import as_utc, utcnow

logger = logging.getLogger(__name__)


def _in_force(service_id: str, now: datetime):
    return select(ServiceBlock).where(
        ServiceBlock.service_id == service_id,
        ServiceBlock.is_active.is_(True),
        ServiceBlock.unblock_at > as_utc(now),
    )


async def get_active_block(
    session: AsyncSession, service_id: str, now: datetime | None = None
) -> ServiceBlock | None:
    stmt = _in_force(service_id, now or utcnow()).order_by(ServiceBlock.unblock_at.desc()).limit(1)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def is_blocked(session: AsyncSession, service_id: str, now: datetime | None = None) -> bool:
    return await get_active_block(session, service_id, now) is not None


async def block_service(
    session: AsyncSession,
    service_id: str,
    reason: str,
    duration: timedelta | None = None,
    *,
    now: datetime | None = None,
    commit: bool = True,
) -> ServiceBlock:
    blocked_at = as_utc(now or utcnow())
    block = ServiceBlock(
        service_id=service_id,
        reason=reason,
        blocked_at=blocked_at,
        unblock_at=blocked_at + (duration if duration is not None else settings.service_block_duration),
        is_active=True,
    )
    session.add(block)
    if commit:
        await session.commit()
    else:
        await session.flush()
    metrics.record_service_block("blocked")
    logger.warning(
        "service_blocked",
        extra={
            "extra": {
                "service_id": service_id,
                "block_id": block.block_id,
                "unblock_at": block.unblock_at.isoformat(),
            }
        },
    )
    return block


async def unblock_service(session: AsyncSession, service_id: str, *, commit: bool = True) -> int:
    """Deactivate every active block for ``service_id``; returns how many changed."""
    result = await session.execute(
        update(ServiceBlock)
        .where(ServiceBlock.service_id == service_id, ServiceBlock.is_active.is_(True))
        .values(is_active=False)
        .execution_options(synchronize_session="fetch")
    )
    count = result.rowcount or 0
    if commit:
        await session.commit()
    if count:
        metrics.record_service_block("unblocked")
        logger.info("service_unblocked", extra={"extra": {"service_id": service_id, "blocks": count}})
    return count


async def deactivate_block(session: AsyncSession, block_id: str, *, commit: bool = True) -> bool:
    result = await session.execute(
        update(ServiceBlock)
        .where(ServiceBlock.block_id == block_id, ServiceBlock.is_active.is_(True))
        .values(is_active=False)
        .execution_options(synchronize_session="fetch")
    )
    changed = bool(result.rowcount)
    if commit:
        await session.commit()
    if changed:
        metrics.record_service_block("expired")
    return changed


async def expired_blocks(
    session: AsyncSession, now: datetime | None = None, limit: int | None = None
) -> list[ServiceBlock]:
    stmt = (
        select(ServiceBlock)
        .where(ServiceBlock.is_active.is_(True), ServiceBlock.unblock_at <= as_utc(now or utcnow()))
        .order_by(ServiceBlock.unblock_at)
    )
    if limit:
        stmt = stmt.limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())
