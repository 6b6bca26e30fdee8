import asyncio
import logging
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from booking_core.domain.service_blocks import ledger as block_ledger
from booking_core.infra.logging import update_log_context
from booking_core.infra.metrics import metrics
from booking_core.shared.clock import as_utc, utcnow

logger = logging.getLogger(__name__)

JOB_NAME = "service-unblock"


async def run_service_unblock(
    session: AsyncSession,
    *,
    now: datetime | None = None,
    stop_event: asyncio.Event | None = None,
) -> dict[str, int]:
    """Deactivate blocks whose unblock time has passed, one transaction per block."""
    current = as_utc(now or utcnow())
    expired = [
        (block.block_id, block.service_id) for block in await block_ledger.expired_blocks(session, current)
    ]
    await session.rollback()

    unblocked = 0
    failed = 0
    for block_id, service_id in expired:
        if stop_event is not None and stop_event.is_set():
            break
        update_log_context(block_id=block_id, service_id=service_id)
        try:
            changed = await block_ledger.deactivate_block(session, block_id, commit=True)
        except Exception as exc:  # noqa: BLE001
            await session.rollback()
            failed += 1
            metrics.record_job_error(JOB_NAME, type(exc).__name__)
            logger.warning(
                "service_unblock_failed",
                extra={"extra": {"block_id": block_id, "reason": type(exc).__name__}},
            )
            continue
        if changed:
            unblocked += 1
            logger.info("service_block_expired", extra={"extra": {"block_id": block_id, "service_id": service_id}})

    return {"scanned": len(expired), "unblocked": unblocked, "failed": failed}
