"""
Persistence utilities for ASR Bench Lab.

This package provides the key/value stores used for settings, snapshots
and dataset metadata (JSON file or Redis), the TTL read-through cache
over them, and an in-process TTL/LRU cache object.
"""

from bench_common.storage.cache import CacheEntry, CacheResult, TTLCache, read_through_cache
from bench_common.storage.kv_store import FileKeyValueStore, KeyValueStore, MemoryKeyValueStore
from bench_common.storage.redis_store import RedisKeyValueStore

__all__ = [
    "CacheEntry",
    "CacheResult",
    "FileKeyValueStore",
    "KeyValueStore",
    "MemoryKeyValueStore",
    "RedisKeyValueStore",
    "TTLCache",
    "read_through_cache",
]
