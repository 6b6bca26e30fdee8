from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from booking_core.infra.metrics import Metrics, configure_metrics
from booking_core.infra.notifications import NotificationSink, resolve_notification_sink
from booking_core.infra.providers import NullProviderDirectory, ProviderDirectory


@dataclass
class AppServices:
    """Typed container for runtime services stored on `app.state.services`."""

    notifier: NotificationSink
    directory: ProviderDirectory
    metrics: Metrics


def build_app_services(
    app_settings,
    *,
    directory: ProviderDirectory | None = None,
    notifier: NotificationSink | None = None,
    metrics: Metrics | None = None,
) -> AppServices:
    metrics_client = metrics or configure_metrics(app_settings.metrics_enabled)
    return AppServices(
        notifier=notifier or resolve_notification_sink(app_settings),
        directory=directory or NullProviderDirectory(),
        metrics=metrics_client,
    )


def resolve_services(container_like: Any) -> AppServices | None:
    if isinstance(container_like, AppServices):
        return container_like
    if container_like is None:
        return None
    state = getattr(container_like, "state", container_like)
    return getattr(state, "services", None)
