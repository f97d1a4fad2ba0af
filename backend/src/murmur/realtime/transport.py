"""Cross-node relay for realtime events.

Each API process subscribes to its own topic (``deliver.<node_id>``) and other
processes publish to it when the recipient's connection lives there. Redis
pub/sub carries the traffic; if the reader dies, the subscription is rebuilt
with exponential backoff while publishes fail fast with
:class:`TransportUnavailableError`.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import redis.asyncio as redis_asyncio
from redis.exceptions import RedisError

from app.monitoring.metrics import realtime_transport_restarts_total

logger = logging.getLogger(__name__)

_REDIS_ERRORS: tuple[type[BaseException], ...] = (
    RedisError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
)

MessageHandler = Callable[[dict[str, Any]], Awaitable[None]]


@dataclass(slots=True)
class BrokerConfig:
    """Configuration used for wiring the relay transport."""

    redis_url: str | None
    redis_prefix: str = "murmur.realtime"
    node_id: str | None = None


class Subscription:
    """Handle returned when subscribing to a relay topic."""

    def __init__(
        self,
        name: str,
        cleanup: Callable[[], Awaitable[None]],
        task: asyncio.Task[Any] | None = None,
    ) -> None:
        self._name = name
        self._cleanup = cleanup
        self._task = task

    @property
    def name(self) -> str:
        return self._name

    async def close(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        await self._cleanup()


class TransportUnavailableError(RuntimeError):
    """Raised when the relay backend is missing or unreachable."""


@dataclass(slots=True)
class _SubscriptionState:
    topic: str
    channel: str
    handler: MessageHandler
    subscription: Subscription | None = None
    task: asyncio.Task[Any] | None = None
    pubsub: Any | None = None
    active: bool = True
    suspending: bool = False


_REDIS_RECOVERY_BASE_DELAY = 0.5
_REDIS_RECOVERY_MAX_DELAY = 30.0


class RedisRelayTransport:
    """Pub/sub relay between API processes built on Redis."""

    def __init__(self, config: BrokerConfig) -> None:
        self._config = config
        self._redis: Any | None = None
        self._states: list[_SubscriptionState] = []
        self._recovery_lock = asyncio.Lock()
        self._recovery_task: asyncio.Task[Any] | None = None

    @property
    def node_id(self) -> str | None:
        return self._config.node_id

    @property
    def connected(self) -> bool:
        return self._redis is not None

    async def start(self) -> None:
        if self._config.redis_url and self._redis is None:
            await self._connect()

    async def stop(self) -> None:
        for state in list(self._states):
            if state.subscription is not None:
                await state.subscription.close()
        self._states.clear()
        if self._recovery_task is not None:
            self._recovery_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._recovery_task
            self._recovery_task = None
        if self._redis is not None:
            with contextlib.suppress(*_REDIS_ERRORS, OSError):
                await self._redis.close()
            self._redis = None

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------
    async def _connect(self) -> None:
        client = redis_asyncio.from_url(
            self._config.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        try:
            await client.ping()
        except (OSError, *_REDIS_ERRORS):
            logger.exception("Failed to connect to the Redis relay backend")
            with contextlib.suppress(Exception):
                await client.close()
            raise
        self._redis = client

    async def _pause_state(self, state: _SubscriptionState) -> None:
        state.suspending = True
        task = state.task
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        state.task = None
        pubsub = state.pubsub
        if pubsub is not None:
            with contextlib.suppress(Exception):
                await pubsub.unsubscribe(state.channel)
            with contextlib.suppress(Exception):
                await pubsub.close()
        state.pubsub = None
        state.suspending = False

    async def _close_state(self, state: _SubscriptionState) -> None:
        state.active = False
        await self._pause_state(state)
        if state in self._states:
            self._states.remove(state)

    async def _restart(self, reason: str) -> None:
        async with self._recovery_lock:
            for state in list(self._states):
                await self._pause_state(state)
            if self._redis is not None:
                with contextlib.suppress(Exception):
                    await self._redis.close()
                self._redis = None
            await self.start()
            for state in [item for item in self._states if item.active]:
                try:
                    await self._attach_reader(state)
                except Exception:
                    logger.exception("Failed to restore relay subscription", extra={"channel": state.channel})
                    raise

        realtime_transport_restarts_total.labels("redis", reason).inc()
        logger.info(
            "Redis relay backend recovered",
            extra={"reason": reason, "subscriptions": len(self._states)},
        )

    async def _attach_reader(self, state: _SubscriptionState) -> None:
        if self._redis is None:
            raise TransportUnavailableError("Redis relay backend is not configured")
        pubsub = self._redis.pubsub()
        try:
            await pubsub.subscribe(state.channel)
        except _REDIS_ERRORS as exc:
            await pubsub.close()
            raise TransportUnavailableError("Redis relay backend is unavailable") from exc
        state.pubsub = pubsub

        async def reader() -> None:
            try:
                async for message in pubsub.listen():
                    if message.get("type") != "message":
                        continue
                    raw = message.get("data")
                    if not isinstance(raw, str):
                        continue
                    try:
                        payload = json.loads(raw)
                    except json.JSONDecodeError:
                        logger.warning("Discarded malformed relay payload", extra={"channel": state.channel})
                        continue
                    try:
                        await state.handler(payload)
                    except Exception:
                        logger.exception("Relay handler failed", extra={"channel": state.channel})
            finally:
                with contextlib.suppress(Exception):
                    await pubsub.unsubscribe(state.channel)
                with contextlib.suppress(Exception):
                    await pubsub.close()

        task = asyncio.create_task(reader(), name=f"relay-redis-{state.channel}")
        state.task = task
        if state.subscription is not None:
            state.subscription._task = task
        task.add_done_callback(lambda finished: asyncio.create_task(self._on_reader_done(state, finished)))

    async def _on_reader_done(self, state: _SubscriptionState, task: asyncio.Task[Any]) -> None:
        state.task = None
        state.pubsub = None
        if not state.active or state.suspending or task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(
                "Relay reader stopped due to error; scheduling recovery",
                exc_info=exc,
                extra={"channel": state.channel},
            )
        else:
            logger.warning("Relay reader exited unexpectedly; scheduling recovery", extra={"channel": state.channel})
        self._trigger_recovery("reader_stopped")

    def _trigger_recovery(self, reason: str) -> None:
        if not self._config.redis_url:
            return
        if self._recovery_task is not None and not self._recovery_task.done():
            return
        logger.info("Scheduling Redis relay recovery", extra={"reason": reason})
        self._recovery_task = asyncio.create_task(self._recovery_runner(reason), name="relay-redis-recovery")

    async def _recovery_runner(self, reason: str) -> None:
        attempt = 0
        while True:
            delay = min(_REDIS_RECOVERY_BASE_DELAY * (2**attempt), _REDIS_RECOVERY_MAX_DELAY)
            await asyncio.sleep(delay)
            try:
                await self._restart(reason)
            except Exception:
                attempt += 1
                logger.exception("Redis relay recovery attempt failed", extra={"attempt": attempt, "reason": reason})
                continue
            break
        self._recovery_task = None

    def channel_for(self, topic: str) -> str:
        prefix = self._config.redis_prefix.rstrip(".")
        return f"{prefix}.{topic}" if prefix else topic

    # ------------------------------------------------------------------
    # Pub/sub
    # ------------------------------------------------------------------
    async def publish(self, topic: str, payload: dict[str, Any]) -> int:
        """Publish *payload* and return how many readers received it."""

        if self._redis is None:
            raise TransportUnavailableError("Redis relay backend is not connected")
        channel = self.channel_for(topic)
        try:
            receivers = await self._redis.publish(channel, json.dumps(payload))
        except _REDIS_ERRORS as exc:
            self._trigger_recovery("publish_failed")
            raise TransportUnavailableError("Redis relay backend is unavailable") from exc
        logger.debug("Relayed realtime payload", extra={"channel": channel, "receivers": receivers})
        return int(receivers or 0)

    async def subscribe(self, topic: str, handler: MessageHandler) -> Subscription:
        if self._redis is None:
            await self.start()
        if self._redis is None:
            raise TransportUnavailableError("Redis relay backend is not configured")
        channel = self.channel_for(topic)
        state = _SubscriptionState(topic=topic, channel=channel, handler=handler)

        async def cleanup() -> None:
            await self._close_state(state)

        subscription = Subscription(channel, cleanup)
        state.subscription = subscription
        self._states.append(state)
        try:
            await self._attach_reader(state)
        except Exception as exc:
            await self._close_state(state)
            self._trigger_recovery("subscribe_failed")
            if isinstance(exc, TransportUnavailableError):
                raise
            raise TransportUnavailableError("Redis relay backend is unavailable") from exc
        return subscription


def node_topic(node_id: str) -> str:
    """Topic a process listens on for events addressed to its connections."""

    return f"deliver.{node_id}"


__all__ = [
    "BrokerConfig",
    "MessageHandler",
    "RedisRelayTransport",
    "Subscription",
    "TransportUnavailableError",
    "node_topic",
]
