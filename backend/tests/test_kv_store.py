from __future__ import annotations

import json
from typing import Any

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from murmur.realtime import store as store_module
from murmur.realtime.store import InMemoryKeyValueStore, RedisKeyValueStore, StoreUnavailableError


class FakeScript:
    def __init__(self, redis: "FakeRedis") -> None:
        self._redis = redis

    async def __call__(self, keys: list[str], args: list[str]) -> int:
        if not self._redis.online:
            raise RedisConnectionError("offline")
        raw = self._redis.data.get(keys[0])
        if raw is None:
            return 0
        field, expected = args
        if str(json.loads(raw).get(field)) != expected:
            return 0
        del self._redis.data[keys[0]]
        return 1


class FakeRedis:
    def __init__(self) -> None:
        self.online = True
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int] = {}

    def _check(self) -> None:
        if not self.online:
            raise RedisConnectionError("offline")

    def register_script(self, _script: str) -> FakeScript:
        return FakeScript(self)

    async def ping(self) -> bool:
        self._check()
        return True

    async def get(self, key: str) -> str | None:
        self._check()
        return self.data.get(key)

    async def mget(self, keys: list[str]) -> list[str | None]:
        self._check()
        return [self.data.get(key) for key in keys]

    async def set(self, key: str, value: str, ex: int | None = None) -> None:
        self._check()
        self.data[key] = value
        if ex:
            self.ttls[key] = ex

    async def delete(self, *keys: str) -> int:
        self._check()
        return sum(1 for key in keys if self.data.pop(key, None) is not None)

    async def exists(self, key: str) -> int:
        self._check()
        return int(key in self.data)

    async def scan_iter(self, match: str, count: int):
        self._check()
        prefix = match.rstrip("*")
        for key in sorted(self.data):
            if key.startswith(prefix):
                yield key

    async def aclose(self) -> None:
        self.online = False


@pytest.mark.anyio("asyncio")
async def test_in_memory_compare_and_delete_requires_matching_field() -> None:
    store = InMemoryKeyValueStore()
    await store.set("presence:1", json.dumps({"connection_id": "new"}))

    assert await store.compare_and_delete("presence:1", "connection_id", "old") is False
    assert await store.get("presence:1") is not None
    assert await store.compare_and_delete("presence:1", "connection_id", "new") is True
    assert await store.get("presence:1") is None


@pytest.mark.anyio("asyncio")
async def test_in_memory_entries_expire() -> None:
    clock = {"now": 100.0}
    store = InMemoryKeyValueStore(clock=lambda: clock["now"])
    await store.set("activeCall:1:2", "{}", ttl_seconds=60)
    await store.set("presence:1", "{}")

    clock["now"] += 61

    assert await store.get("activeCall:1:2") is None
    assert await store.exists("presence:1")


@pytest.mark.anyio("asyncio")
async def test_in_memory_scan_yields_batches() -> None:
    store = InMemoryKeyValueStore()
    for user_id in range(5):
        await store.set(f"presence:{user_id}", "{}")
    await store.set("pendingCall:9", "{}")

    batches = [batch async for batch in store.scan("presence:", batch_size=2)]

    assert [len(batch) for batch in batches] == [2, 2, 1]
    assert all(key.startswith("presence:") for batch in batches for key in batch)


@pytest.mark.anyio("asyncio")
async def test_redis_store_round_trip_and_ttl() -> None:
    fake = FakeRedis()
    store = RedisKeyValueStore(client=fake)

    await store.set("pendingCall:2", "{}", ttl_seconds=30)
    await store.set("presence:1", json.dumps({"connection_id": "abc"}))

    assert fake.ttls == {"pendingCall:2": 30}
    assert await store.get_many(["presence:1", "presence:404"]) == [json.dumps({"connection_id": "abc"}), None]
    assert await store.compare_and_delete("presence:1", "connection_id", "zzz") is False
    assert await store.compare_and_delete("presence:1", "connection_id", "abc") is True
    assert await store.delete("pendingCall:2", "missing") == 1


@pytest.mark.anyio("asyncio")
async def test_redis_store_wraps_connection_errors() -> None:
    fake = FakeRedis()
    store = RedisKeyValueStore(client=fake)
    fake.online = False

    with pytest.raises(StoreUnavailableError):
        await store.ping()
    with pytest.raises(StoreUnavailableError):
        await store.get("presence:1")
    with pytest.raises(StoreUnavailableError):
        await store.compare_and_delete("presence:1", "connection_id", "abc")


def test_create_store_without_url_is_in_memory() -> None:
    assert isinstance(store_module.create_store(None), InMemoryKeyValueStore)
