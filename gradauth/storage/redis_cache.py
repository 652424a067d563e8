from __future__ import annotations

from typing import Optional, Protocol

import redis.asyncio as aioredis


class SessionCache(Protocol):
    """Key-value store with per-entry expiry backing lightweight sessions.

    Eventual consistency across nodes is acceptable; callers re-check the
    absolute expiry stored inside each value.
    """

    async def get(self, key: str) -> Optional[str]: ...

    async def put(self, key: str, value: str, *, ttl_seconds: int) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def pop(self, key: str) -> Optional[str]: ...

    async def close(self) -> None: ...


class RedisCache:
    """Thin Redis wrapper for lightweight sessions and OAuth state."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _ttl(ttl_seconds: int) -> int:
        # Redis rejects zero or negative expiries
        return max(1, int(ttl_seconds))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def put(self, key: str, value: str, *, ttl_seconds: int) -> None:
        await self.client.set(key, value, ex=self._ttl(ttl_seconds))

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    async def pop(self, key: str) -> Optional[str]:
        """Atomically get and delete a key (single-use values such as OAuth state)."""
        return await self.client.getdel(key)

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
