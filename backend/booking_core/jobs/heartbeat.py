import socket

from sqlalchemy.ext.asyncio import async_sessionmaker

from booking_core.domain.ops.db_models import JobHeartbeat
from booking_core.infra.metrics import metrics
from booking_core.shared.clock import utcnow


def _resolve_runner_id(runner_id: str | None = None) -> str:
    if runner_id and runner_id.strip():
        return runner_id.strip()
    return socket.gethostname()


async def record_heartbeat(
    session_factory: async_sessionmaker, name: str = "jobs-runner", *, runner_id: str | None = None
) -> None:
    now = utcnow()
    resolved_runner_id = _resolve_runner_id(runner_id)
    async with session_factory() as session:
        heartbeat = await session.get(JobHeartbeat, name)
        if heartbeat is None:
            heartbeat = JobHeartbeat(
                name=name,
                runner_id=resolved_runner_id,
                last_heartbeat=now,
                consecutive_failures=0,
                updated_at=now,
            )
            session.add(heartbeat)
        else:
            heartbeat.last_heartbeat = now
            heartbeat.runner_id = resolved_runner_id
        await session.commit()
    metrics.record_job_heartbeat(name, now.timestamp())


async def record_job_result(
    session_factory: async_sessionmaker,
    job: str,
    *,
    success: bool,
    error_reason: str | None = None,
    runner_id: str | None = None,
) -> None:
    now = utcnow()
    async with session_factory() as session:
        record = await session.get(JobHeartbeat, job)
        if record is None:
            record = JobHeartbeat(
                name=job,
                runner_id=_resolve_runner_id(runner_id),
                last_heartbeat=now,
                last_success_at=now if success else None,
                consecutive_failures=0 if success else 1,
                last_error=None if success else error_reason,
                last_error_at=None if success else now,
                updated_at=now,
            )
            session.add(record)
        else:
            record.last_heartbeat = now
            if success:
                record.last_success_at = now
                record.consecutive_failures = 0
                record.last_error = None
                record.last_error_at = None
            else:
                record.consecutive_failures = (record.consecutive_failures or 0) + 1
                record.last_error = error_reason or record.last_error
                record.last_error_at = now
        await session.commit()
    metrics.record_job_heartbeat(job, now.timestamp())
    if success:
        metrics.record_job_success(job, now.timestamp())
    else:
        metrics.record_job_error(job, error_reason or "unknown")
