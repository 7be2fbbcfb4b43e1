"""
Caching helpers for ASR Bench Lab.

Two caches live here:

* :func:`read_through_cache` keeps dataset metadata in a
  :class:`~bench_common.storage.kv_store.KeyValueStore` as
  ``{"savedAt": <epoch ms>, "data": ...}`` entries. An entry is fresh iff
  ``now - savedAt <= ttl``. When a refresh fails and an entry exists, the
  stale data is returned with ``stale=True`` instead of raising.
* :class:`TTLCache` is an in-process cache object with a TTL and an LRU
  size bound, owned by whichever component constructs it (audio loader,
  model file listing).
"""

from __future__ import annotations

import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

import structlog

from bench_common.storage.kv_store import KeyValueStore

logger = structlog.get_logger()

K = TypeVar("K")
V = TypeVar("V")


def _now_ms() -> float:
    return time.time() * 1000.0


@dataclass(frozen=True)
class CacheEntry:
    """A persisted cache entry."""

    saved_at: float
    data: Any

    @classmethod
    def parse(cls, raw: Any) -> CacheEntry | None:
        """Build an entry from its stored form; ``None`` if malformed."""
        if not isinstance(raw, dict):
            return None
        saved_at = raw.get("savedAt")
        if not isinstance(saved_at, (int, float)) or isinstance(saved_at, bool):
            return None
        return cls(saved_at=float(saved_at), data=raw.get("data"))

    def to_raw(self) -> dict[str, Any]:
        return {"savedAt": self.saved_at, "data": self.data}

    def is_fresh(self, ttl_s: float, now_ms: float | None = None) -> bool:
        now = _now_ms() if now_ms is None else now_ms
        return (now - self.saved_at) <= ttl_s * 1000.0


@dataclass(frozen=True)
class CacheResult:
    """Outcome of a read-through lookup."""

    data: Any
    from_cache: bool
    stale: bool
    error: BaseException | None = None


async def read_through_cache(
    store: KeyValueStore,
    key: str,
    fetcher: Callable[[], Awaitable[Any]],
    *,
    ttl_s: float,
    force_refresh: bool = False,
    clock: Callable[[], float] = _now_ms,
) -> CacheResult:
    """Return cached data for *key*, refreshing it through *fetcher* when stale.

    Args:
        store: Backing key/value store.
        key: Cache key.
        fetcher: Zero-argument coroutine factory producing fresh data.
        ttl_s: Freshness window in seconds.
        force_refresh: Skip the freshness check.
        clock: Epoch-milliseconds clock (injectable for tests).

    Returns:
        A :class:`CacheResult`.

    Raises:
        Exception: Whatever *fetcher* raised, when no cached data exists.
    """
    cached = CacheEntry.parse(await store.get(key))
    now = clock()
    if not force_refresh and cached is not None and cached.is_fresh(ttl_s, now):
        return CacheResult(data=cached.data, from_cache=True, stale=False)

    try:
        data = await fetcher()
    except Exception as exc:
        if cached is not None and cached.data:
            logger.warning("cache_serving_stale", key=key, error=str(exc))
            return CacheResult(data=cached.data, from_cache=True, stale=True, error=exc)
        raise

    try:
        await store.set(key, CacheEntry(saved_at=clock(), data=data).to_raw())
    except (OSError, TypeError, ValueError) as exc:
        logger.warning("cache_write_failed", key=key, error=str(exc))
    return CacheResult(data=data, from_cache=False, stale=False)


class TTLCache(Generic[K, V]):
    """In-process cache with per-entry TTL and LRU eviction.

    Args:
        max_entries: Capacity; the least recently used entry is evicted
            when exceeded.
        ttl_s: Entry lifetime in seconds (``None`` = no expiry).
        clock: Monotonic clock in seconds (injectable for tests).
    """

    def __init__(
        self,
        max_entries: int = 64,
        ttl_s: float | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.max_entries = max_entries
        self.ttl_s = ttl_s
        self._clock = clock
        self._items: OrderedDict[K, tuple[float, V]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, key: object) -> bool:
        return self.get(key) is not None  # type: ignore[arg-type]

    def get(self, key: K) -> V | None:
        """Return the live value for *key*, or ``None`` (expired entries are dropped)."""
        item = self._items.get(key)
        if item is None:
            return None
        stored_at, value = item
        if self.ttl_s is not None and self._clock() - stored_at > self.ttl_s:
            del self._items[key]
            return None
        self._items.move_to_end(key)
        return value

    def put(self, key: K, value: V) -> None:
        """Insert or replace *key*, evicting the oldest entries beyond capacity."""
        self._items[key] = (self._clock(), value)
        self._items.move_to_end(key)
        while len(self._items) > self.max_entries:
            self._items.popitem(last=False)

    def pop(self, key: K) -> V | None:
        item = self._items.pop(key, None)
        return None if item is None else item[1]

    def clear(self) -> None:
        self._items.clear()
