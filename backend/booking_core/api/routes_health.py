import asyncio
import logging
from typing import Any

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy import select, text

from booking_core.domain.ops.db_models import JobHeartbeat

router = APIRouter()
logger = logging.getLogger(__name__)

_DB_CHECK_TIMEOUT_SECONDS = 2.0


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.head("/healthz")
async def healthz_head() -> Response:
    return Response(status_code=200)


async def _db_check(request: Request) -> tuple[bool, dict[str, Any]]:
    session_factory = getattr(request.app.state, "db_session_factory", None)
    if session_factory is None:
        return False, {"message": "database session factory unavailable"}

    async def _ping_db():
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))

    try:
        await asyncio.wait_for(_ping_db(), timeout=_DB_CHECK_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        return False, {"message": "database check timed out", "timeout_seconds": _DB_CHECK_TIMEOUT_SECONDS}
    except Exception as exc:  # noqa: BLE001
        logger.debug("database_check_failed", exc_info=exc)
        return False, {"message": "database check failed", "error": exc.__class__.__name__}
    return True, {"message": "database reachable"}


async def _jobs_status(request: Request) -> list[dict[str, Any]]:
    session_factory = getattr(request.app.state, "db_session_factory", None)
    if session_factory is None:
        return []
    async with session_factory() as session:
        result = await session.execute(select(JobHeartbeat).order_by(JobHeartbeat.name))
        records = result.scalars().all()
    return [
        {
            "name": record.name,
            "last_heartbeat": record.last_heartbeat.isoformat() if record.last_heartbeat else None,
            "last_success_at": record.last_success_at.isoformat() if record.last_success_at else None,
            "consecutive_failures": record.consecutive_failures,
            "last_error": record.last_error,
        }
        for record in records
    ]


@router.get("/readyz")
async def readyz(request: Request) -> JSONResponse:
    db_ok, db_detail = await _db_check(request)
    jobs: list[dict[str, Any]] = []
    if db_ok:
        jobs = await _jobs_status(request)
    payload = {"ok": db_ok, "checks": {"db": {"ok": db_ok, **db_detail}}, "jobs": jobs}
    return JSONResponse(status_code=200 if db_ok else 503, content=payload)
