from __future__ import annotations

import hashlib
import secrets
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for cross-instance locks and revocation hints.

    Redis is never authoritative here: the credential store owns every
    security decision, Redis only serialises counters across processes and
    shares blacklist hits so other instances skip a store round-trip.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Delete the lock only if we still own it
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
        self._release_lock = self.client.register_script(self._RELEASE_LOCK_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    @staticmethod
    def _lock_key(name: str) -> str:
        digest = hashlib.sha256(name.encode()).hexdigest()
        return f"lock:{digest}"

    async def acquire_lock(self, name: str, ttl_ms: int) -> Optional[str]:
        """Try once to take the named lock; returns the owner token or None."""
        token = secrets.token_hex(16)
        acquired = await self.client.set(self._lock_key(name), token, nx=True, px=ttl_ms)
        return token if acquired else None

    async def release_lock(self, name: str, token: str) -> bool:
        released = await self._release_lock(keys=[self._lock_key(name)], args=[token])
        return bool(released)

    async def mark_token_revoked(self, token_hash: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        await self.client.set(f"auth:revoked:{token_hash}", "1", ex=ttl_seconds)

    async def is_token_revoked(self, token_hash: str) -> bool:
        return bool(await self.client.exists(f"auth:revoked:{token_hash}"))

    async def close(self) -> None:
        """Close the Redis connection pool on shutdown or runtime reset."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
