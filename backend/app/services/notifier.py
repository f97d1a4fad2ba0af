"""Push notification sink.

Pushes are a side effect that runs after the authoritative state change has
been committed. A failing gateway must never fail the operation that
triggered it, so :func:`dispatch_push` swallows and logs every error.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from app.config import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PushNotification:
    user_id: int
    title: str
    body: str
    data: dict[str, Any] = field(default_factory=dict)


class Notifier(Protocol):
    async def send(self, notification: PushNotification) -> None: ...


class NoopNotifier:
    """Discards pushes; used when no gateway is configured."""

    async def send(self, notification: PushNotification) -> None:
        logger.debug("Push notification skipped", extra={"user_id": notification.user_id})


class RecordingNotifier:
    """Keeps every push in memory so tests can assert on them."""

    def __init__(self) -> None:
        self.sent: list[PushNotification] = []

    async def send(self, notification: PushNotification) -> None:
        self.sent.append(notification)


class HttpPushNotifier:
    """Posts pushes to an HTTP gateway as JSON."""

    def __init__(self, url: str, *, token: str | None = None, timeout: float = 5.0) -> None:
        self._url = url
        self._token = token
        self._timeout = timeout

    async def send(self, notification: PushNotification) -> None:
        headers = {"Authorization": f"Bearer {self._token}"} if self._token else {}
        payload = {
            "userId": notification.user_id,
            "title": notification.title,
            "body": notification.body,
            "data": notification.data,
        }
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.post(self._url, json=payload, headers=headers)
            response.raise_for_status()


async def dispatch_push(notifier: Notifier, notification: PushNotification) -> bool:
    """Send a push, returning ``False`` instead of raising on failure."""

    try:
        await notifier.send(notification)
    except Exception:
        logger.warning(
            "Push notification failed",
            extra={"user_id": notification.user_id, "title": notification.title},
            exc_info=logger.isEnabledFor(logging.DEBUG),
        )
        return False
    return True


def build_notifier(settings: Settings | None = None) -> Notifier:
    settings = settings or get_settings()
    if settings.push_notifications_enabled and settings.push_gateway_url:
        return HttpPushNotifier(
            str(settings.push_gateway_url),
            token=settings.push_gateway_token,
            timeout=settings.push_timeout_seconds,
        )
    return NoopNotifier()


__all__ = [
    "HttpPushNotifier",
    "NoopNotifier",
    "Notifier",
    "PushNotification",
    "RecordingNotifier",
    "build_notifier",
    "dispatch_push",
]
