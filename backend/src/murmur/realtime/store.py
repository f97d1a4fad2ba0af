"""Shared key-value storage for presence and call-signaling state.

Every API process talks to the same store, which makes it the serialization
point for presence mutations. Two implementations share one contract:

* :class:`RedisKeyValueStore` for multi-process deployments;
* :class:`InMemoryKeyValueStore` for a single process (and tests).

Both support TTLs and an atomic compare-and-delete on a JSON field, which is
what lets a stale disconnect leave a newer registration untouched.
"""

from __future__ import annotations

import contextlib
import json
import logging
import time
from typing import AsyncIterator, Callable, Iterator, Protocol, Sequence

import redis.asyncio as redis_asyncio
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

_STORE_ERRORS: tuple[type[BaseException], ...] = (
    RedisError,
    ConnectionError,
    TimeoutError,
    OSError,
)


class StoreUnavailableError(RuntimeError):
    """Raised when the shared store cannot be reached."""


class KeyValueStore(Protocol):
    """Operations the realtime core relies on."""

    async def ping(self) -> None:
        """Verify connectivity, raising :class:`StoreUnavailableError` on failure."""

    async def get(self, key: str) -> str | None:
        """Return the stored value or ``None`` when missing or expired."""

    async def get_many(self, keys: Sequence[str]) -> list[str | None]:
        """Batched :meth:`get`; results follow the order of ``keys``."""

    async def set(self, key: str, value: str, *, ttl_seconds: int | None = None) -> None:
        """Overwrite a value, optionally expiring it after ``ttl_seconds``."""

    async def delete(self, *keys: str) -> int:
        """Remove keys, returning how many existed."""

    async def exists(self, key: str) -> bool:
        """Return whether a live value is stored under ``key``."""

    async def compare_and_delete(self, key: str, field: str, expected: str) -> bool:
        """Delete ``key`` only if its JSON value has ``field == expected``."""

    def scan(self, prefix: str, *, batch_size: int) -> AsyncIterator[list[str]]:
        """Yield keys starting with ``prefix`` in batches of at most ``batch_size``."""

    async def close(self) -> None:
        """Release connections."""


def _field_matches(raw: str | None, field: str, expected: str) -> bool:
    if raw is None:
        return False
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError:
        return False
    return isinstance(decoded, dict) and str(decoded.get(field)) == expected


class InMemoryKeyValueStore:
    """Process-local store exposing the same contract as the Redis store."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._entries: dict[str, tuple[str, float | None]] = {}
        self._clock = clock

    def _live(self, key: str) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return value

    async def ping(self) -> None:
        return None

    async def get(self, key: str) -> str | None:
        return self._live(key)

    async def get_many(self, keys: Sequence[str]) -> list[str | None]:
        return [self._live(key) for key in keys]

    async def set(self, key: str, value: str, *, ttl_seconds: int | None = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        self._entries[key] = (value, expires_at)

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._live(key) is not None:
                removed += 1
            self._entries.pop(key, None)
        return removed

    async def exists(self, key: str) -> bool:
        return self._live(key) is not None

    async def compare_and_delete(self, key: str, field: str, expected: str) -> bool:
        # No await between the check and the delete, so this is atomic on the loop.
        if not _field_matches(self._live(key), field, expected):
            return False
        self._entries.pop(key, None)
        return True

    async def scan(self, prefix: str, *, batch_size: int) -> AsyncIterator[list[str]]:
        keys = sorted(key for key in list(self._entries) if key.startswith(prefix))
        batch: list[str] = []
        for key in keys:
            if self._live(key) is None:
                continue
            batch.append(key)
            if len(batch) >= batch_size:
                yield batch
                batch = []
        if batch:
            yield batch

    async def close(self) -> None:
        self._entries.clear()


# KEYS[1] = key, ARGV[1] = JSON field, ARGV[2] = expected value
_COMPARE_AND_DELETE_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
    return 0
end
local ok, decoded = pcall(cjson.decode, raw)
if not ok or type(decoded) ~= 'table' then
    return 0
end
if tostring(decoded[ARGV[1]]) == ARGV[2] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


class RedisKeyValueStore:
    """Redis backed store shared by every API process."""

    def __init__(self, url: str | None = None, *, client=None) -> None:
        if client is None:
            if not url:
                raise ValueError("Either a Redis URL or a client is required")
            client = redis_asyncio.from_url(url, encoding="utf-8", decode_responses=True)
        self._client = client
        self._compare_and_delete = client.register_script(_COMPARE_AND_DELETE_SCRIPT)

    @contextlib.contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        try:
            yield
        except _STORE_ERRORS as exc:
            raise StoreUnavailableError(f"Shared store unavailable during {operation}") from exc

    async def ping(self) -> None:
        with self._guard("ping"):
            await self._client.ping()

    async def get(self, key: str) -> str | None:
        with self._guard("get"):
            return await self._client.get(key)

    async def get_many(self, keys: Sequence[str]) -> list[str | None]:
        if not keys:
            return []
        with self._guard("mget"):
            return list(await self._client.mget(list(keys)))

    async def set(self, key: str, value: str, *, ttl_seconds: int | None = None) -> None:
        with self._guard("set"):
            if ttl_seconds:
                await self._client.set(key, value, ex=ttl_seconds)
            else:
                await self._client.set(key, value)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        with self._guard("delete"):
            return int(await self._client.delete(*keys))

    async def exists(self, key: str) -> bool:
        with self._guard("exists"):
            return bool(await self._client.exists(key))

    async def compare_and_delete(self, key: str, field: str, expected: str) -> bool:
        with self._guard("compare_and_delete"):
            removed = await self._compare_and_delete(keys=[key], args=[field, expected])
        return bool(removed)

    async def scan(self, prefix: str, *, batch_size: int) -> AsyncIterator[list[str]]:
        batch: list[str] = []
        with self._guard("scan"):
            async for key in self._client.scan_iter(match=f"{prefix}*", count=batch_size):
                batch.append(key)
                if len(batch) >= batch_size:
                    yield batch
                    batch = []
        if batch:
            yield batch

    async def close(self) -> None:
        with contextlib.suppress(*_STORE_ERRORS):
            await self._client.aclose()


def create_store(redis_url: str | None) -> KeyValueStore:
    """Return the Redis store when a URL is configured, else the in-memory one."""

    if redis_url:
        return RedisKeyValueStore(redis_url)
    logger.info("No realtime Redis URL configured; using the in-memory store (single process only)")
    return InMemoryKeyValueStore()


__all__ = [
    "KeyValueStore",
    "InMemoryKeyValueStore",
    "RedisKeyValueStore",
    "StoreUnavailableError",
    "create_store",
]
