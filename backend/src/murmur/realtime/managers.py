"""Realtime wiring: connection lifecycle and process-wide singletons."""

from __future__ import annotations

import logging
import uuid

from fastapi.websockets import WebSocket

from app.config import get_settings
from app.services.notifier import build_notifier
from app.services.users import set_in_call_flags

from ..calls.manager import CallSignalManager
from .connections import ConnectionHub
from .delivery import DeliveryRouter
from .presence import ConnectionDescriptor, PresenceRegistry
from .store import create_store
from .transport import BrokerConfig, RedisRelayTransport, TransportUnavailableError

logger = logging.getLogger(__name__)


class RealtimeLifecycle:
    """Binds websocket connections to presence on this node."""

    def __init__(
        self,
        hub: ConnectionHub,
        registry: PresenceRegistry,
        *,
        node_id: str,
        calls: CallSignalManager | None = None,
    ) -> None:
        self._hub = hub
        self._registry = registry
        self._node_id = node_id
        self._calls = calls

    async def on_connect(self, user_id: int, websocket: WebSocket) -> str:
        connection_id = uuid.uuid4().hex
        await self._hub.add(connection_id, user_id, websocket)
        await self._registry.register(ConnectionDescriptor.create(user_id, connection_id, self._node_id))
        logger.debug("Websocket connected", extra={"user_id": user_id, "connection_id": connection_id})
        if self._calls is not None:
            await self._calls.resume_pending(user_id)
        return connection_id

    async def on_disconnect(self, connection_id: str) -> bool:
        """Drop the connection; presence is only cleared if it still points here."""

        connection = await self._hub.remove(connection_id)
        if connection is None:
            return False
        removed = await self._registry.unregister(connection.user_id, connection_id)
        logger.debug(
            "Websocket disconnected",
            extra={"user_id": connection.user_id, "connection_id": connection_id, "presence_cleared": removed},
        )
        return removed


# ---------------------------------------------------------------------------
# Module level lifecycle helpers
# ---------------------------------------------------------------------------


settings = get_settings()

_node_id = settings.realtime_node_id or uuid.uuid4().hex

store = create_store(settings.realtime_redis_url)
transport = (
    RedisRelayTransport(
        BrokerConfig(
            redis_url=settings.realtime_redis_url,
            redis_prefix=settings.realtime_namespace,
            node_id=_node_id,
        )
    )
    if settings.realtime_redis_url
    else None
)

connection_hub = ConnectionHub()
presence_registry = PresenceRegistry(store, scan_batch_size=settings.presence_scan_batch_size)
delivery_router = DeliveryRouter(
    presence_registry,
    connection_hub,
    node_id=_node_id,
    transport=transport,
    fanout_limit=settings.delivery_fanout_limit,
)
call_manager = CallSignalManager(
    store,
    delivery_router,
    notifier=build_notifier(settings),
    in_call_writer=set_in_call_flags,
    ring_ttl_seconds=settings.call_ring_ttl_seconds,
    active_ttl_seconds=settings.call_active_ttl_seconds,
    pending_ttl_seconds=settings.call_pending_ttl_seconds,
)
lifecycle = RealtimeLifecycle(connection_hub, presence_registry, node_id=_node_id, calls=call_manager)


async def startup_realtime() -> None:
    """Connect the shared store and relay.

    An unreachable store raises :class:`StoreUnavailableError`, which aborts
    application startup. The relay is optional: without it events only reach
    connections held by this process.
    """

    await presence_registry.start()
    if transport is None:
        return
    try:
        await transport.start()
        await delivery_router.start()
    except (TransportUnavailableError, OSError):
        logger.warning(
            "Realtime relay unavailable during startup; continuing without cross-node delivery",
            exc_info=logger.isEnabledFor(logging.DEBUG),
        )


async def shutdown_realtime() -> None:
    await delivery_router.stop()
    if transport is not None:
        await transport.stop()
    await store.close()


async def on_connect(user_id: int, websocket: WebSocket) -> str:
    return await lifecycle.on_connect(user_id, websocket)


async def on_disconnect(connection_id: str) -> bool:
    return await lifecycle.on_disconnect(connection_id)


# Convenience accessors exposed to the FastAPI layer ----------------------


def get_node_id() -> str:
    return _node_id


def get_connection_hub() -> ConnectionHub:
    return connection_hub


def get_presence_registry() -> PresenceRegistry:
    return presence_registry


def get_delivery_router() -> DeliveryRouter:
    return delivery_router


def get_call_manager() -> CallSignalManager:
    return call_manager


__all__ = [
    "RealtimeLifecycle",
    "get_call_manager",
    "get_connection_hub",
    "get_delivery_router",
    "get_node_id",
    "get_presence_registry",
    "on_connect",
    "on_disconnect",
    "shutdown_realtime",
    "startup_realtime",
]
