from __future__ import annotations

import redis.asyncio as aioredis
from redis import Redis

REVOKED_PREFIX = "auth:revoked:"


class RedisCache:
    """Thin Redis wrapper for the credential revocation keyspace."""

    DEFAULT_OPERATION_TIMEOUT = 5.0  # 5 seconds

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def revoke_credential(self, credential: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            await self.client.set(f"{REVOKED_PREFIX}{credential}", "1", ex=ttl_seconds)

    async def is_credential_revoked(self, credential: str) -> bool:
        return bool(await self.client.exists(f"{REVOKED_PREFIX}{credential}"))

    async def count_revoked_credentials(self) -> int:
        count = 0
        async for _ in self.client.scan_iter(match=f"{REVOKED_PREFIX}*", count=500):
            count += 1
        return count

    async def clear_revoked_credentials(self) -> int:
        """Delete revocation entries only; other keys sharing the database survive."""
        removed = 0
        batch: list[str] = []
        async for key in self.client.scan_iter(match=f"{REVOKED_PREFIX}*", count=500):
            batch.append(key)
            if len(batch) >= 500:
                removed += await self.client.delete(*batch)
                batch = []
        if batch:
            removed += await self.client.delete(*batch)
        return removed

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so they can be awaited
    uniformly like RedisCache.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0  # 5 seconds

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

    async def revoke_credential(self, credential: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            self._sync_client.set(f"{REVOKED_PREFIX}{credential}", "1", ex=ttl_seconds)

    async def is_credential_revoked(self, credential: str) -> bool:
        return bool(self._sync_client.exists(f"{REVOKED_PREFIX}{credential}"))

    async def count_revoked_credentials(self) -> int:
        return sum(
            1 for _ in self._sync_client.scan_iter(match=f"{REVOKED_PREFIX}*", count=500)
        )

    async def clear_revoked_credentials(self) -> int:
        keys = list(self._sync_client.scan_iter(match=f"{REVOKED_PREFIX}*", count=500))
        if not keys:
            return 0
        return int(self._sync_client.delete(*keys))

    async def ping(self) -> bool:
        return bool(self._sync_client.ping())

    async def close(self) -> None:
        """Close Redis connection."""
        self._sync_client.close()
