from __future__ import annotations

import secrets
from typing import Optional

import redis.asyncio as aioredis


class RedisCache:
    """Thin Redis wrapper for short-lived security state.

    Holds the access-token denylist (revoked ``jti`` values until their natural
    expiry) and the cross-process lock that keeps cleanup sweeps single-flight.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Compare-and-delete so a worker only ever releases its own lock
    _RELEASE_LOCK_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # short-lived sync client so the async one is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def denylist_access_token(self, jti: str, ttl_seconds: int) -> None:
        """Add an access token JTI to the denylist until the token would expire anyway."""
        if ttl_seconds > 0:
            await self.client.set(f"auth:access:denylist:{jti}", "1", ex=ttl_seconds)

    async def is_access_token_denylisted(self, jti: str) -> bool:
        return bool(await self.client.exists(f"auth:access:denylist:{jti}"))

    async def acquire_lock(self, name: str, ttl_seconds: int) -> Optional[str]:
        """Try to take a named lock; returns the owner token or None if held elsewhere."""
        owner = secrets.token_hex(16)
        acquired = await self.client.set(f"lock:{name}", owner, nx=True, ex=max(1, ttl_seconds))
        return owner if acquired else None

    async def release_lock(self, name: str, owner: str) -> bool:
        result = await self.client.eval(self._RELEASE_LOCK_SCRIPT, 1, f"lock:{name}", owner)
        return bool(result)

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
