from __future__ import annotations

from typing import Optional, Protocol

import redis.asyncio as aioredis
from redis import Redis


class SessionCache(Protocol):
    """Key-value store with per-key expiry used for session state.

    Keys are namespaced ``refresh:<id>``, ``blacklist:<id>``, ``reset:<id>``
    and ``verify:<id>``. Values are strings.
    """

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def pop(self, key: str) -> Optional[str]: ...

    async def delete(self, key: str) -> None: ...

    async def close(self) -> None: ...


class RedisCache:
    """Thin Redis wrapper for refresh tokens and revocation markers."""

    DEFAULT_OPERATION_TIMEOUT = 5.0  # 5 seconds

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _ttl(ttl_seconds: int) -> int:
        # Redis rejects zero or negative expiries.
        return max(1, int(ttl_seconds))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(key, value, ex=self._ttl(ttl_seconds))

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def pop(self, key: str) -> Optional[str]:
        """Atomically read and remove ``key`` (GETDEL)."""
        return await self.client.getdel(key)

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so it can be awaited
    uniformly like RedisCache.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._sync_client.set(key, value, ex=RedisCache._ttl(ttl_seconds))

    async def get(self, key: str) -> Optional[str]:
        return self._sync_client.get(key)

    async def pop(self, key: str) -> Optional[str]:
        return self._sync_client.getdel(key)

    async def delete(self, key: str) -> None:
        self._sync_client.delete(key)

    async def close(self) -> None:
        """Close Redis connection."""
        self._sync_client.close()


__all__ = ["SessionCache", "RedisCache", "SyncRedisCache"]
