"""
Tests for bench-common persistence helpers.

Covers the file and memory key/value stores, the Redis store with a
mocked ``redis.asyncio`` backend, the TTL read-through cache (fresh,
stale and failure paths) and the in-process ``TTLCache``.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from bench_common.storage import (
    CacheEntry,
    FileKeyValueStore,
    MemoryKeyValueStore,
    RedisKeyValueStore,
    TTLCache,
    read_through_cache,
)

_HOUR_S = 3600.0


class _Clock:
    """Manually advanced clock."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


# ---------------------------------------------------------------------------
# Key/value stores
# ---------------------------------------------------------------------------


class TestFileKeyValueStore:

    async def test_set_get_delete(self, tmp_path: Path) -> None:
        store = FileKeyValueStore(tmp_path / "state" / "kv.json")
        await store.set("a", {"x": 1})
        assert await store.get("a") == {"x": 1}
        await store.delete("a")
        assert await store.get("a") is None

    async def test_persists_across_instances(self, tmp_path: Path) -> None:
        path = tmp_path / "kv.json"
        await FileKeyValueStore(path).set("k", [1, 2, 3])
        assert await FileKeyValueStore(path).get("k") == [1, 2, 3]

    async def test_corrupt_file_reads_as_empty(self, tmp_path: Path) -> None:
        path = tmp_path / "kv.json"
        path.write_text("{not json", encoding="utf-8")
        store = FileKeyValueStore(path)
        assert await store.get("k") is None
        await store.set("k", 1)
        assert json.loads(path.read_text(encoding="utf-8")) == {"k": 1}

    async def test_io_runs_off_the_event_loop(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        calls: list[str] = []
        real_to_thread = asyncio.to_thread

        async def spy(func, /, *args, **kwargs):
            calls.append(func.__name__)
            return await real_to_thread(func, *args, **kwargs)

        monkeypatch.setattr("bench_common.storage.kv_store.asyncio.to_thread", spy)
        store = FileKeyValueStore(tmp_path / "kv.json")
        await store.set("k", 1)
        assert await store.get("k") == 1
        await store.delete("k")
        assert calls == ["_set_sync", "_read_all", "_delete_sync"]

    async def test_concurrent_writes_keep_every_key(self, tmp_path: Path) -> None:
        store = FileKeyValueStore(tmp_path / "kv.json")
        await asyncio.gather(*(store.set(f"k{i}", i) for i in range(20)))
        data = json.loads((tmp_path / "kv.json").read_text(encoding="utf-8"))
        assert data == {f"k{i}": i for i in range(20)}


class TestMemoryKeyValueStore:

    async def test_values_are_detached(self) -> None:
        store = MemoryKeyValueStore()
        value = {"runs": [1]}
        await store.set("k", value)
        value["runs"].append(2)
        assert await store.get("k") == {"runs": [1]}


class TestRedisKeyValueStore:

    @pytest.fixture()
    def mock_redis(self) -> AsyncMock:
        r = AsyncMock()
        r.get = AsyncMock(return_value='{"a": 1}')
        r.set = AsyncMock(return_value=True)
        r.delete = AsyncMock(return_value=1)
        r.ping = AsyncMock(return_value=True)
        r.aclose = AsyncMock()
        return r

    @pytest.fixture()
    def store(self, mock_redis: AsyncMock) -> RedisKeyValueStore:
        s = RedisKeyValueStore(url="redis://localhost:6379/0", namespace="bench:")
        s._client = mock_redis
        return s

    async def test_connect_pings_once(self, mock_redis: AsyncMock) -> None:
        with patch("bench_common.storage.redis_store.aioredis.from_url", return_value=mock_redis) as mock_from:
            s = RedisKeyValueStore(url="redis://localhost:6379/0")
            await s.connect()
            await s.connect()
            mock_from.assert_called_once_with("redis://localhost:6379/0", decode_responses=True)
            mock_redis.ping.assert_awaited_once()

    async def test_connect_failure_closes_client(self, mock_redis: AsyncMock) -> None:
        mock_redis.ping.side_effect = ConnectionError("down")
        with patch("bench_common.storage.redis_store.aioredis.from_url", return_value=mock_redis):
            s = RedisKeyValueStore(url="redis://localhost:6379/0")
            with pytest.raises(ConnectionError):
                await s.connect()
        mock_redis.aclose.assert_awaited_once()
        assert s._client is None

    async def test_raises_when_not_connected(self) -> None:
        s = RedisKeyValueStore(url="redis://localhost:6379/0")
        with pytest.raises(RuntimeError, match="not connected"):
            await s.get("k")

    async def test_get_decodes_json(self, store: RedisKeyValueStore, mock_redis: AsyncMock) -> None:
        assert await store.get("k") == {"a": 1}
        mock_redis.get.assert_awaited_once_with("bench:k")

    async def test_get_missing(self, store: RedisKeyValueStore, mock_redis: AsyncMock) -> None:
        mock_redis.get.return_value = None
        assert await store.get("k") is None

    async def test_set_and_delete_use_namespace(self, store: RedisKeyValueStore, mock_redis: AsyncMock) -> None:
        await store.set("k", {"b": 2})
        mock_redis.set.assert_awaited_once_with("bench:k", '{"b": 2}')
        await store.delete("k")
        mock_redis.delete.assert_awaited_once_with("bench:k")

    async def test_close(self, store: RedisKeyValueStore, mock_redis: AsyncMock) -> None:
        await store.close()
        await store.close()
        mock_redis.aclose.assert_awaited_once()
        assert store._client is None


# ---------------------------------------------------------------------------
# read_through_cache
# ---------------------------------------------------------------------------


class TestReadThroughCache:

    async def test_miss_fetches_and_stores(self) -> None:
        store = MemoryKeyValueStore()
        fetcher = AsyncMock(return_value={"splits": ["test"]})
        result = await read_through_cache(store, "k", fetcher, ttl_s=_HOUR_S, clock=lambda: 1000.0)
        assert result.data == {"splits": ["test"]}
        assert result.from_cache is False
        assert await store.get("k") == {"savedAt": 1000.0, "data": {"splits": ["test"]}}

    async def test_fresh_entry_skips_fetch(self) -> None:
        store = MemoryKeyValueStore()
        await store.set("k", CacheEntry(saved_at=0.0, data=["cached"]).to_raw())
        fetcher = AsyncMock()
        clock = _Clock(_HOUR_S * 1000.0)  # exactly at the TTL boundary
        result = await read_through_cache(store, "k", fetcher, ttl_s=_HOUR_S, clock=clock)
        assert result.data == ["cached"]
        assert result.from_cache is True
        assert result.stale is False
        fetcher.assert_not_awaited()

    async def test_expired_entry_refreshes(self) -> None:
        store = MemoryKeyValueStore()
        await store.set("k", CacheEntry(saved_at=0.0, data=["old"]).to_raw())
        fetcher = AsyncMock(return_value=["new"])
        clock = _Clock(_HOUR_S * 1000.0 + 1)
        result = await read_through_cache(store, "k", fetcher, ttl_s=_HOUR_S, clock=clock)
        assert result.data == ["new"]
        assert result.from_cache is False

    async def test_force_refresh(self) -> None:
        store = MemoryKeyValueStore()
        await store.set("k", CacheEntry(saved_at=0.0, data=["old"]).to_raw())
        fetcher = AsyncMock(return_value=["new"])
        result = await read_through_cache(
            store, "k", fetcher, ttl_s=_HOUR_S, force_refresh=True, clock=lambda: 0.0
        )
        assert result.data == ["new"]

    async def test_stale_data_served_on_failure(self) -> None:
        store = MemoryKeyValueStore()
        await store.set("k", CacheEntry(saved_at=0.0, data=["old"]).to_raw())
        fetcher = AsyncMock(side_effect=ConnectionError("offline"))
        clock = _Clock(10 * _HOUR_S * 1000.0)
        result = await read_through_cache(store, "k", fetcher, ttl_s=_HOUR_S, clock=clock)
        assert result.data == ["old"]
        assert result.stale is True
        assert isinstance(result.error, ConnectionError)

    async def test_failure_without_cache_raises(self) -> None:
        fetcher = AsyncMock(side_effect=ConnectionError("offline"))
        with pytest.raises(ConnectionError):
            await read_through_cache(MemoryKeyValueStore(), "k", fetcher, ttl_s=_HOUR_S)

    async def test_malformed_entry_is_ignored(self) -> None:
        store = MemoryKeyValueStore()
        await store.set("k", {"data": ["no timestamp"]})
        fetcher = AsyncMock(return_value=["fresh"])
        result = await read_through_cache(store, "k", fetcher, ttl_s=_HOUR_S)
        assert result.data == ["fresh"]


# ---------------------------------------------------------------------------
# TTLCache
# ---------------------------------------------------------------------------


class TestTTLCache:

    def test_put_get(self) -> None:
        cache: TTLCache[str, int] = TTLCache(max_entries=2)
        cache.put("a", 1)
        assert cache.get("a") == 1
        assert "a" in cache
        assert cache.get("b") is None

    def test_lru_eviction(self) -> None:
        cache: TTLCache[str, int] = TTLCache(max_entries=2)
        cache.put("a", 1)
        cache.put("b", 2)
        cache.get("a")
        cache.put("c", 3)
        assert cache.get("b") is None
        assert cache.get("a") == 1
        assert len(cache) == 2

    def test_expiry(self) -> None:
        clock = _Clock()
        cache: TTLCache[str, int] = TTLCache(max_entries=4, ttl_s=10.0, clock=clock)
        cache.put("a", 1)
        clock.now = 10.0
        assert cache.get("a") == 1
        clock.now = 10.5
        assert cache.get("a") is None
        assert len(cache) == 0

    def test_instances_are_isolated(self) -> None:
        first: TTLCache[str, int] = TTLCache()
        second: TTLCache[str, int] = TTLCache()
        first.put("a", 1)
        assert second.get("a") is None

    def test_invalid_capacity(self) -> None:
        with pytest.raises(ValueError):
            TTLCache(max_entries=0)
