from fastapi import Request

from booking_core.infra.notifications import NoopNotificationSink, NotificationSink
from booking_core.infra.providers import NullProviderDirectory, ProviderDirectory
from booking_core.services import resolve_services


def get_notifier(request: Request) -> NotificationSink:
    services = resolve_services(request.app)
    if services is None:
        return NoopNotificationSink()
    return services.notifier


def get_provider_directory(request: Request) -> ProviderDirectory:
    services = resolve_services(request.app)
    if services is None:
        return NullProviderDirectory()
    return services.directory
