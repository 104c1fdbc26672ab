from __future__ import annotations

import asyncio
import threading
from datetime import datetime
from typing import Callable, Optional
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from creatorauth.config import Settings, get_settings, reset_settings_cache
from creatorauth.logging import get_logger
from creatorauth.service.audit import SecurityEventLog
from creatorauth.service.blacklist import TokenRevocationRegistry
from creatorauth.service.credentials import CredentialService
from creatorauth.service.gateway import AuthGateway
from creatorauth.service.lockout import AccountLockoutTracker
from creatorauth.service.locks import KeyedLock
from creatorauth.service.maintenance import MaintenanceJobs
from creatorauth.service.rate_limit import IPRateLimiter
from creatorauth.service.sessions import SessionManager
from creatorauth.service.tokens import TokenCodec
from creatorauth.storage.base import CredentialStore
from creatorauth.storage.memory import MemoryStore
from creatorauth.storage.postgres import PostgresStore
from creatorauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        if parsed.username:
            netloc = f"{parsed.username}:***@{netloc}"
        else:
            netloc = f":***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Owns the store, cache and every security component for one process.

    Components are constructed here and handed their collaborators, so tests
    can build isolated instances with their own settings and clock.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[CredentialStore] = None,
        cache: Optional[RedisCache] = None,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store: CredentialStore = store or self._build_store()
        self.cache = cache if cache is not None else self._build_cache()

        self.locks = KeyedLock(self.cache)
        self.codec = TokenCodec(self.settings, now=now)
        self.audit = SecurityEventLog(self.store, now=now)
        self.credentials = CredentialService(self.store, now=now)
        self.sessions = SessionManager(
            self.store, self.codec, self.audit, self.locks, self.settings, now=now
        )
        self.registry = TokenRevocationRegistry(
            self.store, self.codec, self.audit, self.locks, cache=self.cache, now=now
        )
        self.lockout = AccountLockoutTracker(
            self.store,
            self.audit,
            self.locks,
            self.settings,
            credentials=self.credentials,
            sessions=self.sessions,
            registry=self.registry,
            now=now,
        )
        self.rate_limiter = IPRateLimiter(
            self.store, self.audit, self.locks, self.settings, now=now
        )
        self.gateway = AuthGateway(
            codec=self.codec,
            registry=self.registry,
            sessions=self.sessions,
            lockout=self.lockout,
            rate_limiter=self.rate_limiter,
            credentials=self.credentials,
            audit=self.audit,
            settings=self.settings,
            now=now,
        )
        self.maintenance = MaintenanceJobs(
            registry=self.registry,
            lockout=self.lockout,
            rate_limiter=self.rate_limiter,
            sessions=self.sessions,
            audit=self.audit,
            security_event_retention_days=self.settings.security_event_retention_days,
        )
        logger.info(
            "runtime_init_complete",
            store_type=type(self.store).__name__,
            redis_enabled=self.cache is not None,
        )

    def _build_store(self) -> CredentialStore:
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                store: CredentialStore = MemoryStore()
            else:
                store = PostgresStore(
                    self.settings.database_url,
                    statement_timeout_seconds=self.settings.store_timeout_seconds,
                )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)
        return store

    def _build_cache(self) -> Optional[RedisCache]:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(
                    self.settings.redis_url,
                    socket_timeout=self.settings.store_timeout_seconds,
                )
                cache.verify_connection()
                return cache
            except (RedisError, OSError) as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for cross-instance locks and revocation hints; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; counter locks are "
                "per-process and blacklist hits are not shared across instances."
            ),
            mode=fallback_mode,
        )
        return None

    async def start(self) -> None:
        await self.store.connect()
        await self.registry.warm_cache()
        logger.info("runtime_started")

    async def close(self) -> None:
        await self.store.close()
        if self.cache is not None:
            await self.cache.close()
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime singleton from a fresh settings read."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                try:
                    asyncio.run(runtime.cache.close())
                except (RedisError, OSError) as exc:
                    logger.warning("runtime_reset_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
