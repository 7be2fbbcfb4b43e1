"""
Redis-backed key/value store for ASR Bench Lab.

Lets several benchmark hosts share one settings and snapshot history.
Values are stored JSON-encoded under ``{namespace}{key}``.
"""

from __future__ import annotations

import json
from typing import Any

import redis.asyncio as aioredis
import structlog

from bench_common.config import get_settings
from bench_common.storage.kv_store import KeyValueStore

logger = structlog.get_logger()


class RedisKeyValueStore(KeyValueStore):
    """Async Redis key/value store.

    Args:
        url: Redis connection URL. Defaults to ``Settings.redis_url``.
        namespace: Prefix applied to every key.
    """

    def __init__(self, url: str | None = None, namespace: str = "") -> None:
        self._url = url or get_settings().redis_url
        self._namespace = namespace
        self._client: aioredis.Redis | None = None

    async def connect(self) -> None:
        """Open the connection and check it with ``PING``.

        Calling it again on an open store does nothing. Connection errors
        from redis propagate to the caller.
        """
        if self._client is not None:
            return
        client = aioredis.from_url(self._url, decode_responses=True)
        try:
            await client.ping()
        except Exception:
            await client.aclose()
            raise
        self._client = client
        logger.info("kv_store_connected", backend="redis", namespace=self._namespace)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _require(self) -> aioredis.Redis:
        if self._client is None:
            raise RuntimeError("RedisKeyValueStore is not connected; call connect() first")
        return self._client

    def _key(self, key: str) -> str:
        return f"{self._namespace}{key}"

    async def get(self, key: str) -> Any | None:
        raw = await self._require().get(self._key(key))
        return None if raw is None else json.loads(raw)

    async def set(self, key: str, value: Any) -> None:
        await self._require().set(self._key(key), json.dumps(value))

    async def delete(self, key: str) -> None:
        await self._require().delete(self._key(key))
