"""Presence registry: which connection currently represents each user."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Iterable

from app.monitoring.metrics import presence_store_errors_total

from .store import KeyValueStore, StoreUnavailableError

logger = logging.getLogger(__name__)

PRESENCE_PREFIX = "presence:"


@dataclass(slots=True, frozen=True)
class ConnectionDescriptor:
    """Where a user's live connection can be reached."""

    user_id: int
    connection_id: str
    node_id: str
    connected_at: str

    @classmethod
    def create(cls, user_id: int, connection_id: str, node_id: str) -> "ConnectionDescriptor":
        return cls(
            user_id=user_id,
            connection_id=connection_id,
            node_id=node_id,
            connected_at=datetime.now(timezone.utc).isoformat(),
        )

    def dumps(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def loads(cls, raw: str | None) -> "ConnectionDescriptor | None":
        if not raw:
            return None
        try:
            data = json.loads(raw)
            return cls(
                user_id=int(data["user_id"]),
                connection_id=str(data["connection_id"]),
                node_id=str(data["node_id"]),
                connected_at=str(data.get("connected_at", "")),
            )
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            logger.warning("Discarded malformed presence entry", extra={"raw": raw[:200]})
            return None


def presence_key(user_id: int) -> str:
    return f"{PRESENCE_PREFIX}{user_id}"


class PresenceRegistry:
    """Shared mapping of user id to :class:`ConnectionDescriptor`.

    Registration always overwrites (the latest connection wins). Removal is
    conditional on the connection id so a late disconnect from an older socket
    cannot erase a newer registration.
    """

    def __init__(self, store: KeyValueStore, *, scan_batch_size: int = 500) -> None:
        self._store = store
        self._scan_batch_size = max(1, scan_batch_size)

    @property
    def store(self) -> KeyValueStore:
        return self._store

    async def start(self) -> None:
        await self._store.ping()

    async def register(self, descriptor: ConnectionDescriptor) -> None:
        """Make *descriptor* the live connection for ``descriptor.user_id``.

        The user id is carried by the descriptor, so there is no separate
        argument for it.
        """

        try:
            await self._store.set(presence_key(descriptor.user_id), descriptor.dumps())
        except StoreUnavailableError:
            presence_store_errors_total.labels("register").inc()
            logger.warning(
                "Presence registration dropped; store unavailable",
                extra={"user_id": descriptor.user_id},
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )

    async def unregister(self, user_id: int, connection_id: str) -> bool:
        try:
            return await self._store.compare_and_delete(
                presence_key(user_id), "connection_id", connection_id
            )
        except StoreUnavailableError:
            presence_store_errors_total.labels("unregister").inc()
            logger.warning(
                "Presence removal dropped; store unavailable",
                extra={"user_id": user_id},
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            return False

    async def resolve(self, user_id: int) -> ConnectionDescriptor | None:
        try:
            raw = await self._store.get(presence_key(user_id))
        except StoreUnavailableError:
            presence_store_errors_total.labels("resolve").inc()
            logger.warning(
                "Presence lookup failed; treating user as offline",
                extra={"user_id": user_id},
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            return None
        return ConnectionDescriptor.loads(raw)

    async def resolve_many(self, user_ids: Iterable[int]) -> dict[int, ConnectionDescriptor]:
        ids = list(dict.fromkeys(user_ids))
        if not ids:
            return {}
        try:
            values = await self._store.get_many([presence_key(user_id) for user_id in ids])
        except StoreUnavailableError:
            presence_store_errors_total.labels("resolve_many").inc()
            logger.warning(
                "Batched presence lookup failed; treating users as offline",
                extra={"count": len(ids)},
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            return {}
        resolved: dict[int, ConnectionDescriptor] = {}
        for user_id, raw in zip(ids, values):
            descriptor = ConnectionDescriptor.loads(raw)
            if descriptor is not None:
                resolved[user_id] = descriptor
        return resolved

    async def is_online(self, user_id: int) -> bool:
        return await self.resolve(user_id) is not None

    async def list_all(self) -> dict[int, ConnectionDescriptor]:
        """Snapshot of every registered user, read in pages."""

        snapshot: dict[int, ConnectionDescriptor] = {}
        try:
            async for keys in self._store.scan(PRESENCE_PREFIX, batch_size=self._scan_batch_size):
                values = await self._store.get_many(keys)
                for raw in values:
                    descriptor = ConnectionDescriptor.loads(raw)
                    if descriptor is not None:
                        snapshot[descriptor.user_id] = descriptor
                await asyncio.sleep(0)
        except StoreUnavailableError:
            presence_store_errors_total.labels("list_all").inc()
            logger.warning("Presence snapshot incomplete; store unavailable", exc_info=True)
        return snapshot


__all__ = ["ConnectionDescriptor", "PresenceRegistry", "presence_key"]
