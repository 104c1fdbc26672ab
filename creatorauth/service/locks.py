from __future__ import annotations

import asyncio
import contextlib
import threading
import time
from typing import AsyncIterator, Dict, Optional, Tuple

from redis.exceptions import RedisError

from creatorauth.logging import get_logger
from creatorauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class KeyedLock:
    """Short-lived per-key critical sections for read-then-write counters.

    Within a process every key maps to an ``asyncio.Lock`` that exists only
    while someone holds or waits on it. When a Redis cache is configured the
    holder also takes a ``SET NX PX`` lock so other instances serialise on the
    same key. If Redis misbehaves the section still runs under the local lock
    (counting precision degrades, availability does not).
    """

    def __init__(
        self,
        cache: Optional[RedisCache] = None,
        *,
        ttl_ms: int = 5000,
        acquire_timeout: float = 2.0,
        retry_interval: float = 0.02,
    ) -> None:
        self.cache = cache
        self.ttl_ms = ttl_ms
        self.acquire_timeout = acquire_timeout
        self.retry_interval = retry_interval
        self._locks: Dict[str, Tuple[asyncio.Lock, int]] = {}
        self._guard = threading.Lock()

    def _checkout(self, key: str) -> asyncio.Lock:
        with self._guard:
            lock, users = self._locks.get(key, (None, 0))
            if lock is None:
                lock = asyncio.Lock()
            self._locks[key] = (lock, users + 1)
            return lock

    def _checkin(self, key: str) -> None:
        with self._guard:
            lock, users = self._locks.get(key, (None, 0))
            if lock is None:
                return
            if users <= 1:
                self._locks.pop(key, None)
            else:
                self._locks[key] = (lock, users - 1)

    def active_keys(self) -> int:
        with self._guard:
            return len(self._locks)

    async def _acquire_remote(self, key: str) -> Optional[str]:
        if self.cache is None:
            return None
        deadline = time.monotonic() + self.acquire_timeout
        try:
            while True:
                token = await self.cache.acquire_lock(key, self.ttl_ms)
                if token:
                    return token
                if time.monotonic() >= deadline:
                    logger.warning("distributed_lock_timeout", key=key)
                    return None
                await asyncio.sleep(self.retry_interval)
        except RedisError as exc:
            logger.warning("distributed_lock_unavailable", key=key, error=str(exc))
            return None

    async def _release_remote(self, key: str, token: Optional[str]) -> None:
        if self.cache is None or token is None:
            return
        try:
            await self.cache.release_lock(key, token)
        except RedisError as exc:
            # The lock expires on its own after ttl_ms
            logger.warning("distributed_lock_release_failed", key=key, error=str(exc))

    @contextlib.asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._checkout(key)
        try:
            async with lock:
                token = await self._acquire_remote(key)
                try:
                    yield
                finally:
                    await self._release_remote(key, token)
        finally:
            self._checkin(key)
