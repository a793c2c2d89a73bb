from __future__ import annotations

from typing import Optional

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin key-value wrapper over redis.asyncio with per-key TTLs."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self, redis_url: str, *, socket_timeout: float = 5.0, prefix: str = "warden:"
    ):
        self.redis_url = redis_url
        self.prefix = prefix
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling the cache."""
        # A short-lived sync client keeps the async client off a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(self._key(key))

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(self._key(key), value, ex=max(1, int(ttl_seconds)))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self.client.delete(*(self._key(k) for k in keys))

    async def ttl(self, key: str) -> Optional[int]:
        """Remaining seconds for ``key``; ``None`` if missing or persistent."""
        remaining = await self.client.ttl(self._key(key))
        return remaining if remaining is not None and remaining >= 0 else None

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    in pytest, but exposes async methods so it can be awaited uniformly like
    ``RedisCache``.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self, redis_url: str, *, socket_timeout: float = 5.0, prefix: str = "warden:"
    ):
        self.redis_url = redis_url
        self.prefix = prefix
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def get(self, key: str) -> Optional[str]:
        return self._sync_client.get(self._key(key))

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._sync_client.set(self._key(key), value, ex=max(1, int(ttl_seconds)))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return self._sync_client.delete(*(self._key(k) for k in keys))

    async def ttl(self, key: str) -> Optional[int]:
        remaining = self._sync_client.ttl(self._key(key))
        return remaining if remaining is not None and remaining >= 0 else None

    async def close(self) -> None:
        """Close Redis connection."""
        self._sync_client.close()
