import argparse
import asyncio
import logging
import signal
from collections.abc import Awaitable, Callable

from sqlalchemy.ext.asyncio import async_sessionmaker

from booking_core.infra.db import dispose_engine, get_session_factory
from booking_core.infra.logging import clear_log_context, configure_logging, update_log_context
from booking_core.infra.metrics import configure_metrics
from booking_core.infra.notifications import NotificationSink, resolve_notification_sink
from booking_core.jobs import auto_cancel, service_unblock
from booking_core.jobs.heartbeat import record_heartbeat, record_job_result
from booking_core.settings import settings

logger = logging.getLogger(__name__)

JobRunner = Callable[[object], Awaitable[dict[str, int]]]

JOB_NAMES = (auto_cancel.JOB_NAME, service_unblock.JOB_NAME)


async def _run_job(
    name: str,
    session_factory: async_sessionmaker,
    runner: JobRunner,
) -> dict[str, int]:
    try:
        update_log_context(job=name)
        async with session_factory() as session:
            result = await runner(session)
        logger.info("job_complete", extra={"extra": {"job": name, **result}})
        await record_job_result(session_factory, name, success=True)
        return result
    finally:
        clear_log_context()


async def run_cycle(name: str, session_factory: async_sessionmaker, runner: JobRunner) -> bool:
    """One sweeper cycle; failures are logged and recorded, never raised."""
    try:
        await _run_job(name, session_factory, runner)
    except Exception as exc:  # noqa: BLE001
        logger.warning("job_failed", extra={"extra": {"job": name, "reason": type(exc).__name__}})
        try:
            await record_job_result(session_factory, name, success=False, error_reason=type(exc).__name__)
        except Exception as record_exc:  # noqa: BLE001
            logger.warning(
                "job_result_record_failed",
                extra={"extra": {"job": name, "reason": type(record_exc).__name__}},
            )
        return False
    return True


async def run_periodic(
    name: str,
    interval_seconds: float,
    session_factory: async_sessionmaker,
    runner: JobRunner,
    stop_event: asyncio.Event,
) -> None:
    """Run ``runner`` every ``interval_seconds`` until ``stop_event`` is set.

    The event is only observed between cycles, so a cycle in progress always finishes.
    """
    logger.info("job_loop_started", extra={"extra": {"job": name, "interval_seconds": interval_seconds}})
    while not stop_event.is_set():
        await run_cycle(name, session_factory, runner)
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=max(interval_seconds, 1))
        except asyncio.TimeoutError:
            continue
    logger.info("job_loop_stopped", extra={"extra": {"job": name}})


def _job_runner(name: str, notifier: NotificationSink, stop_event: asyncio.Event | None = None) -> JobRunner:
    if name == auto_cancel.JOB_NAME:
        return lambda session: auto_cancel.run_auto_cancel(session, notifier, stop_event=stop_event)
    if name == service_unblock.JOB_NAME:
        return lambda session: service_unblock.run_service_unblock(session, stop_event=stop_event)
    raise ValueError(f"unknown_job:{name}")


def job_interval(name: str) -> float:
    if name == auto_cancel.JOB_NAME:
        return settings.auto_cancel_interval_seconds
    if name == service_unblock.JOB_NAME:
        return settings.service_unblock_interval_seconds
    raise ValueError(f"unknown_job:{name}")


def start_sweepers(
    session_factory: async_sessionmaker,
    notifier: NotificationSink,
    stop_event: asyncio.Event,
    job_names: list[str] | tuple[str, ...] = JOB_NAMES,
) -> list[asyncio.Task]:
    return [
        asyncio.create_task(
            run_periodic(
                name,
                job_interval(name),
                session_factory,
                _job_runner(name, notifier, stop_event),
                stop_event,
            ),
            name=f"sweeper:{name}",
        )
        for name in job_names
    ]


async def stop_sweepers(tasks: list[asyncio.Task], stop_event: asyncio.Event) -> None:
    stop_event.set()
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)


async def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Run booking sweepers")
    parser.add_argument("--job", action="append", dest="jobs", choices=JOB_NAMES, help="Job name to run")
    parser.add_argument("--once", action="store_true", help="Run each job once and exit")
    args = parser.parse_args(argv)

    configure_logging(settings.log_level)
    configure_metrics(settings.metrics_enabled)
    notifier = resolve_notification_sink(settings)
    session_factory = get_session_factory()
    job_names = args.jobs or list(JOB_NAMES)

    try:
        if args.once:
            for name in job_names:
                await run_cycle(name, session_factory, _job_runner(name, notifier))
            await record_heartbeat(session_factory, name="jobs-runner")
            return

        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except NotImplementedError:
                logger.warning("signal_handler_unavailable", extra={"extra": {"signal": sig.name}})
        tasks = start_sweepers(session_factory, notifier, stop_event, job_names)
        await record_heartbeat(session_factory, name="jobs-runner")
        await stop_event.wait()
        await stop_sweepers(tasks, stop_event)
    finally:
        await dispose_engine()


if __name__ == "__main__":
    asyncio.run(main())
