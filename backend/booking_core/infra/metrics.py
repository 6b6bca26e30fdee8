import logging
import time

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    generate_latest,
)

logger = logging.getLogger(__name__)


class Metrics:
    def __init__(self, enabled: bool = False) -> None:
        self._configure(enabled)

    def _configure(self, enabled: bool) -> None:
        self.enabled = enabled
        self.registry = CollectorRegistry(auto_describe=True)
        if not enabled:
            self.booking_transitions = None
            self.slot_conflicts = None
            self.auto_cancellations = None
            self.service_blocks = None
            self.notifications = None
            self.job_heartbeat = None
            self.job_last_success = None
            self.job_errors = None
            return

        self.booking_transitions = Counter(
            "booking_transitions_total",
            "Booking state machine operations by action and outcome.",
            ["action", "outcome"],
            registry=self.registry,
        )
        self.slot_conflicts = Counter(
            "slot_conflicts_total",
            "Slot reservations rejected because the provider window was already taken.",
            registry=self.registry,
        )
        self.auto_cancellations = Counter(
            "auto_cancellations_total",
            "Bookings auto-cancelled after the provider did not respond.",
            registry=self.registry,
        )
        self.service_blocks = Counter(
            "service_blocks_total",
            "Service block lifecycle events.",
            ["event"],
            registry=self.registry,
        )
        self.notifications = Counter(
            "notifications_total",
            "Notification deliveries by status.",
            ["status"],
            registry=self.registry,
        )
        self.job_heartbeat = Gauge(
            "job_heartbeat_timestamp",
            "Last heartbeat timestamp per job.",
            ["job"],
            registry=self.registry,
        )
        self.job_last_success = Gauge(
            "job_last_success_timestamp",
            "Last successful run timestamp per job.",
            ["job"],
            registry=self.registry,
        )
        self.job_errors = Counter(
            "job_errors_total",
            "Job failures by job and reason.",
            ["job", "reason"],
            registry=self.registry,
        )

    def record_transition(self, action: str, outcome: str) -> None:
        if not self.enabled or self.booking_transitions is None:
            return
        self.booking_transitions.labels(action=action or "unknown", outcome=outcome or "unknown").inc()

    def record_slot_conflict(self) -> None:
        if not self.enabled or self.slot_conflicts is None:
            return
        self.slot_conflicts.inc()

    def record_auto_cancel(self, count: int = 1) -> None:
        if not self.enabled or self.auto_cancellations is None:
            return
        self.auto_cancellations.inc(count)

    def record_service_block(self, event: str) -> None:
        if not self.enabled or self.service_blocks is None:
            return
        self.service_blocks.labels(event=event).inc()

    def record_notification(self, status: str) -> None:
        if not self.enabled or self.notifications is None:
            return
        self.notifications.labels(status=status).inc()

    def record_job_heartbeat(self, job: str, timestamp: float | None = None) -> None:
        if not self.enabled or self.job_heartbeat is None:
            return
        self.job_heartbeat.labels(job=job).set(timestamp or time.time())

    def record_job_success(self, job: str, timestamp: float | None = None) -> None:
        if not self.enabled or self.job_last_success is None:
            return
        self.job_last_success.labels(job=job).set(timestamp or time.time())

    def record_job_error(self, job: str, reason: str) -> None:
        if not self.enabled or self.job_errors is None:
            return
        self.job_errors.labels(job=job, reason=reason or "unknown").inc()

    def render(self) -> tuple[bytes, str]:
        if not self.enabled:
            return b"metrics_disabled 1\n", "text/plain; version=0.0.4"
        try:
            return generate_latest(self.registry), CONTENT_TYPE_LATEST
        except Exception:  # noqa: BLE001
            logger.exception("metrics_render_failed")
            return b"metrics_render_failed 1\n", "text/plain; version=0.0.4"


metrics = Metrics(enabled=False)


def configure_metrics(enabled: bool) -> Metrics:
    metrics._configure(enabled)
    return metrics
