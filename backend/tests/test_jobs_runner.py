import asyncio

import pytest
from sqlalchemy import select

from booking_core.domain.ops.db_models import JobHeartbeat
from booking_core.infra.logging import LOG_CONTEXT, clear_log_context, update_log_context
from booking_core.infra.notifications import InMemoryNotificationSink
from booking_core.jobs import auto_cancel, run, service_unblock
from booking_core.jobs.heartbeat import record_heartbeat, record_job_result
from booking_core.settings import settings


class _DummySession:
    def __init__(self):
        self.added = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False

    async def get(self, model, key):
        return None

    def add(self, value):
        self.added.append(value)

    async def commit(self):
        return None


def _session_factory():
    return _DummySession()


async def _heartbeat(async_session_maker, name: str) -> JobHeartbeat | None:
    async with async_session_maker() as session:
        return await session.get(JobHeartbeat, name)


@pytest.mark.anyio
async def test_run_job_clears_log_context():
    clear_log_context()

    async def _runner(session):
        update_log_context(job="dummy", value="one")
        return {"scanned": 1}

    result = await run._run_job("dummy", _session_factory, _runner)

    assert result == {"scanned": 1}
    assert LOG_CONTEXT.get({}) == {}


@pytest.mark.anyio
async def test_run_cycle_records_failure_without_raising(async_session_maker):
    async def _runner(session):
        raise RuntimeError("boom")

    assert await run.run_cycle("auto-cancel", async_session_maker, _runner) is False
    assert LOG_CONTEXT.get({}) == {}

    record = await _heartbeat(async_session_maker, "auto-cancel")
    assert record.consecutive_failures == 1
    assert record.last_error == "RuntimeError"

    async def _ok(session):
        return {"scanned": 0}

    assert await run.run_cycle("auto-cancel", async_session_maker, _ok) is True
    record = await _heartbeat(async_session_maker, "auto-cancel")
    assert record.consecutive_failures == 0
    assert record.last_error is None
    assert record.last_success_at is not None


@pytest.mark.anyio
async def test_record_job_result_accumulates_failures(async_session_maker):
    for _ in range(3):
        await record_job_result(async_session_maker, "service-unblock", success=False, error_reason="Timeout")

    record = await _heartbeat(async_session_maker, "service-unblock")
    assert record.consecutive_failures == 3
    assert record.last_error == "Timeout"


@pytest.mark.anyio
async def test_record_heartbeat_upserts(async_session_maker):
    await record_heartbeat(async_session_maker, runner_id="runner-1")
    await record_heartbeat(async_session_maker, runner_id="  runner-2 ")

    async with async_session_maker() as session:
        records = (await session.execute(select(JobHeartbeat))).scalars().all()
    assert [(record.name, record.runner_id) for record in records] == [("jobs-runner", "runner-2")]


@pytest.mark.anyio
async def test_run_periodic_stops_when_event_is_set():
    stop_event = asyncio.Event()
    calls = []

    async def _runner(session):
        calls.append(1)
        stop_event.set()
        return {}

    await asyncio.wait_for(run.run_periodic("dummy", 60, _session_factory, _runner, stop_event), timeout=5)

    assert calls == [1]


@pytest.mark.anyio
async def test_start_and_stop_sweepers_write_heartbeats(async_session_maker):
    stop_event = asyncio.Event()
    tasks = run.start_sweepers(async_session_maker, InMemoryNotificationSink(), stop_event)

    for _ in range(100):
        async with async_session_maker() as session:
            names = (await session.execute(select(JobHeartbeat.name))).scalars().all()
        if set(names) == set(run.JOB_NAMES):
            break
        await asyncio.sleep(0.05)

    await run.stop_sweepers(tasks, stop_event)

    assert set(names) == {auto_cancel.JOB_NAME, service_unblock.JOB_NAME}
    assert all(task.done() for task in tasks)


def test_job_interval_follows_settings():
    settings.auto_cancel_interval_seconds = 42
    assert run.job_interval(auto_cancel.JOB_NAME) == 42
    assert run.job_interval(service_unblock.JOB_NAME) == settings.service_unblock_interval_seconds
    with pytest.raises(ValueError):
        run.job_interval("nope")


def test_unknown_job_runner_is_rejected():
    with pytest.raises(ValueError, match="unknown_job:nope"):
        run._job_runner("nope", InMemoryNotificationSink())
