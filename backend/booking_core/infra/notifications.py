from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol

import httpx

from booking_core.infra.metrics import metrics

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    async def notify(self, user_id: str, title: str, message: str) -> None: ...


class NoopNotificationSink:
    async def notify(self, user_id: str, title: str, message: str) -> None:
        return None


class LoggingNotificationSink:
    async def notify(self, user_id: str, title: str, message: str) -> None:
        logger.info(
            "notification_logged",
            extra={"extra": {"user_id": user_id, "title": title, "mode": "log"}},
        )


@dataclass
class SentNotification:
    user_id: str
    title: str
    message: str


class InMemoryNotificationSink:
    def __init__(self) -> None:
        self.sent: list[SentNotification] = []

    async def notify(self, user_id: str, title: str, message: str) -> None:
        self.sent.append(SentNotification(user_id=user_id, title=title, message=message))

    def for_user(self, user_id: str) -> list[SentNotification]:
        return [item for item in self.sent if item.user_id == user_id]

    def titles(self) -> list[str]:
        return [item.title for item in self.sent]


class WebhookNotificationSink:
    def __init__(self, url: str, *, timeout_seconds: float = 5.0, http_client: httpx.AsyncClient | None = None):
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.http_client = http_client

    async def notify(self, user_id: str, title: str, message: str) -> None:
        payload = {"user_id": user_id, "title": title, "message": message}
        if self.http_client is not None:
            response = await self.http_client.post(self.url, json=payload, timeout=self.timeout_seconds)
            response.raise_for_status()
            return
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            response = await client.post(self.url, json=payload)
            response.raise_for_status()


async def deliver(sink: NotificationSink | None, user_id: str, title: str, message: str) -> bool:
    """Fire-and-forget delivery: failures are logged, never raised."""
    if sink is None or not user_id:
        return False
    try:
        await sink.notify(user_id, title, message)
    except Exception as exc:  # noqa: BLE001
        metrics.record_notification("error")
        logger.warning(
            "notification_failed",
            extra={"extra": {"user_id": user_id, "title": title, "reason": type(exc).__name__}},
        )
        return False
    metrics.record_notification("sent")
    return True


@dataclass
class NotificationBatch:
    """Notifications produced inside a unit of work, sent only after it commits."""

    items: list[SentNotification] = field(default_factory=list)

    def add(self, user_id: str, title: str, message: str) -> None:
        self.items.append(SentNotification(user_id=user_id, title=title, message=message))

    def extend(self, other: NotificationBatch) -> None:
        self.items.extend(other.items)

    def discard(self) -> None:
        self.items.clear()

    async def flush(self, sink: NotificationSink | None) -> int:
        pending, self.items = self.items, []
        delivered = 0
        for item in pending:
            if await deliver(sink, item.user_id, item.title, item.message):
                delivered += 1
        return delivered

    def __len__(self) -> int:
        return len(self.items)


def resolve_notification_sink(app_settings) -> NotificationSink:
    if getattr(app_settings, "testing", False) or app_settings.notification_mode == "off":
        return NoopNotificationSink()
    if app_settings.notification_mode == "webhook":
        if not app_settings.notification_webhook_url:
            logger.warning("notification_webhook_url_missing")
            return LoggingNotificationSink()
        return WebhookNotificationSink(
            app_settings.notification_webhook_url,
            timeout_seconds=app_settings.notification_webhook_timeout_seconds,
        )
    return LoggingNotificationSink()
