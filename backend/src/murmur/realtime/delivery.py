"""Best-effort delivery of events to a user's live connection."""

from __future__ import annotations

import logging
from typing import Any, Iterable

from app.monitoring.metrics import realtime_events_total, realtime_publish_errors_total

from .connections import ConnectionHub
from .presence import ConnectionDescriptor, PresenceRegistry
from .transport import RedisRelayTransport, Subscription, TransportUnavailableError, node_topic

logger = logging.getLogger(__name__)


class DeliveryRouter:
    """Resolves recipients through presence and pushes events to them.

    Delivery never raises. When the event did not reach a live socket (the
    owning node may have no reader left) it yields ``False`` and the caller
    decides whether to fall back to a push notification.
    """

    def __init__(
        self,
        registry: PresenceRegistry,
        hub: ConnectionHub,
        *,
        node_id: str,
        transport: RedisRelayTransport | None = None,
        fanout_limit: int = 5000,
    ) -> None:
        self._registry = registry
        self._hub = hub
        self._node_id = node_id
        self._transport = transport
        self._fanout_limit = fanout_limit
        self._subscription: Subscription | None = None

    @property
    def node_id(self) -> str:
        return self._node_id

    @property
    def registry(self) -> PresenceRegistry:
        return self._registry

    async def start(self) -> None:
        if self._transport is None or self._subscription is not None:
            return

        async def handle(envelope: dict[str, Any]) -> None:
            connection_id = envelope.get("connection_id")
            event = envelope.get("event")
            payload = envelope.get("payload")
            if not isinstance(connection_id, str) or not isinstance(event, str) or not isinstance(payload, dict):
                logger.debug("Ignoring malformed relay envelope")
                return
            delivered = await self._hub.push(connection_id, event, payload)
            realtime_events_total.labels(event, "delivered" if delivered else "stale").inc()

        self._subscription = await self._transport.subscribe(node_topic(self._node_id), handle)

    async def stop(self) -> None:
        if self._subscription is not None:
            await self._subscription.close()
            self._subscription = None

    async def deliver(self, user_id: int, event: str, payload: dict[str, Any]) -> bool:
        descriptor = await self._registry.resolve(user_id)
        return await self._push(descriptor, user_id, event, payload)

    async def deliver_many(self, user_ids: Iterable[int], event: str, payload: dict[str, Any]) -> int:
        recipients = list(dict.fromkeys(user_ids))
        if len(recipients) > self._fanout_limit:
            logger.warning(
                "Fan-out truncated",
                extra={"event": event, "requested": len(recipients), "limit": self._fanout_limit},
            )
            recipients = recipients[: self._fanout_limit]
        if not recipients:
            return 0
        descriptors = await self._registry.resolve_many(recipients)
        delivered = 0
        for user_id in recipients:
            if await self._push(descriptors.get(user_id), user_id, event, payload):
                delivered += 1
        return delivered

    async def _push(
        self,
        descriptor: ConnectionDescriptor | None,
        user_id: int,
        event: str,
        payload: dict[str, Any],
    ) -> bool:
        if descriptor is None:
            realtime_events_total.labels(event, "offline").inc()
            return False
        if descriptor.node_id == self._node_id:
            delivered = await self._hub.push(descriptor.connection_id, event, payload)
            realtime_events_total.labels(event, "delivered" if delivered else "failed").inc()
            if not delivered:
                logger.debug("Local push failed", extra={"user_id": user_id, "event": event})
            return delivered
        if self._transport is None:
            realtime_events_total.labels(event, "failed").inc()
            logger.debug("No relay configured for remote connection", extra={"user_id": user_id})
            return False
        envelope = {"connection_id": descriptor.connection_id, "event": event, "payload": payload}
        try:
            receivers = await self._transport.publish(node_topic(descriptor.node_id), envelope)
        except TransportUnavailableError:
            realtime_publish_errors_total.labels("unavailable").inc()
            realtime_events_total.labels(event, "failed").inc()
            logger.warning(
                "Relay publish failed; event dropped",
                extra={"user_id": user_id, "event": event},
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            return False
        if receivers == 0:
            realtime_events_total.labels(event, "stale").inc()
            logger.info(
                "No reader on owning node; treating user as offline",
                extra={"user_id": user_id, "node_id": descriptor.node_id, "event": event},
            )
            return False
        realtime_events_total.labels(event, "relayed").inc()
        return True


__all__ = ["DeliveryRouter"]
