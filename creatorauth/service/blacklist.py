from __future__ import annotations

import threading
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Union

from redis.exceptions import RedisError

from creatorauth.logging import get_logger
from creatorauth.service.audit import SecurityEventLog, SecurityEventType
from creatorauth.service.errors import NotFoundError, ValidationError
from creatorauth.service.locks import KeyedLock
from creatorauth.service.policy import FailurePolicy, failure_policy
from creatorauth.service.tokens import TokenCodec, hash_token
from creatorauth.storage.base import CredentialStore
from creatorauth.storage.models import BlacklistedToken, from_row, new_id, to_row, utcnow
from creatorauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)

BLACKLIST_REASONS = frozenset(
    {
        "logout",
        "password_change",
        "suspicious_activity",
        "admin_revoke",
        "account_disabled",
        "security_breach",
    }
)

# Only recent entries are worth preloading; older tokens are mostly expired
WARM_CACHE_HORIZON = timedelta(hours=1)


class TokenRevocationRegistry:
    """Single-token blacklist plus per-user bulk revocation marker.

    The store is authoritative. The local ``hash -> expiry`` map and the Redis
    hints only short-circuit repeat lookups of tokens already known revoked.
    """

    def __init__(
        self,
        store: CredentialStore,
        codec: TokenCodec,
        audit: SecurityEventLog,
        locks: KeyedLock,
        *,
        cache: Optional[RedisCache] = None,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.codec = codec
        self.audit = audit
        self.locks = locks
        self.cache = cache
        self._now = now or utcnow
        self._cache_lock = threading.Lock()
        self._revoked: Dict[str, datetime] = {}

    def _remember(self, token_hash: str, expires_at: datetime) -> None:
        with self._cache_lock:
            self._revoked[token_hash] = expires_at

    def _cached(self, token_hash: str, now: datetime) -> bool:
        with self._cache_lock:
            expires_at = self._revoked.get(token_hash)
            if expires_at is None:
                return False
            if expires_at <= now:
                self._revoked.pop(token_hash, None)
                return False
            return True

    def cache_size(self) -> int:
        with self._cache_lock:
            return len(self._revoked)

    def clear_cache(self) -> None:
        with self._cache_lock:
            self._revoked.clear()

    async def _share_hint(self, token_hash: str, expires_at: datetime) -> None:
        if not self.cache:
            return
        ttl = int((expires_at - self._now()).total_seconds())
        try:
            await self.cache.mark_token_revoked(token_hash, ttl)
        except RedisError as exc:
            logger.warning("blacklist_hint_write_failed", error=str(exc))

    async def _shared_hint(self, token_hash: str) -> bool:
        if not self.cache:
            return False
        try:
            return await self.cache.is_token_revoked(token_hash)
        except RedisError as exc:
            logger.warning("blacklist_hint_read_failed", error=str(exc))
            return False

    @failure_policy(FailurePolicy.CLOSED, reason="a logout that did not revoke must be reported")
    async def blacklist_token(self, token: str, user_id: str, reason: str) -> BlacklistedToken:
        if reason not in BLACKLIST_REASONS:
            raise ValidationError("unknown revocation reason", detail={"reason": reason})
        # Raises InvalidTokenError when the token carries no usable expiry
        expires_at = self.codec.expiry_of(token)
        token_hash = hash_token(token)
        entry = BlacklistedToken(
            id=new_id(),
            token_hash=token_hash,
            user_id=user_id,
            expires_at=expires_at,
            reason=reason,
            created_at=self._now(),
        )
        await self.store.upsert("blacklisted_tokens", to_row(entry), conflict=("token_hash",))
        self._remember(token_hash, expires_at)
        await self._share_hint(token_hash, expires_at)
        await self.audit.record(
            SecurityEventType.TOKEN_BLACKLISTED,
            user_id=user_id,
            metadata={"reason": reason},
        )
        logger.info("token_blacklisted", user_id=user_id, reason=reason)
        return entry

    @failure_policy(
        FailurePolicy.OPEN,
        reason="defense in depth on top of short access-token lifetimes",
        fallback=lambda *args, **kwargs: False,
    )
    async def is_token_blacklisted(self, token: str) -> bool:
        now = self._now()
        token_hash = hash_token(token)
        if self._cached(token_hash, now):
            return True
        if await self._shared_hint(token_hash):
            return True
        rows = await self.store.select(
            "blacklisted_tokens",
            {"token_hash": token_hash, "expires_at__gt": now},
            limit=1,
        )
        if not rows:
            return False
        self._remember(token_hash, rows[0]["expires_at"])
        return True

    @failure_policy(FailurePolicy.CLOSED, reason="bulk revocation after password change or admin action")
    async def blacklist_all_user_tokens(self, user_id: str, reason: str) -> int:
        """Invalidate every access token issued to ``user_id`` before now."""
        if reason not in BLACKLIST_REASONS:
            raise ValidationError("unknown revocation reason", detail={"reason": reason})
        now = self._now()
        async with self.locks.hold(f"token_version:{user_id}"):
            rows = await self.store.select("user_profiles", {"id": user_id}, limit=1)
            if not rows:
                raise NotFoundError("user not found", detail={"user_id": user_id})
            version = int(rows[0].get("token_version") or 0) + 1
            await self.store.update(
                "user_profiles",
                {"id": user_id},
                {"token_version": version, "tokens_revoked_at": now, "updated_at": now},
            )
        # Cache entries are not indexed by user
        self.clear_cache()
        await self.audit.record(
            SecurityEventType.TOKENS_REVOKED,
            user_id=user_id,
            metadata={"reason": reason, "token_version": version},
        )
        logger.info("user_tokens_revoked", user_id=user_id, reason=reason, token_version=version)
        return version

    @failure_policy(
        FailurePolicy.OPEN,
        reason="defense in depth on top of short access-token lifetimes",
        fallback=lambda *args, **kwargs: True,
    )
    async def is_user_token_version_valid(
        self, user_id: str, issued_at: Union[float, datetime]
    ) -> bool:
        rows = await self.store.select("user_profiles", {"id": user_id}, limit=1)
        if not rows:
            logger.warning("token_version_user_missing", user_id=user_id)
            return True
        revoked_at = rows[0].get("tokens_revoked_at")
        if revoked_at is None:
            return True
        issued_ts = issued_at.timestamp() if isinstance(issued_at, datetime) else float(issued_at)
        # Both sides at microsecond resolution, matching the iat claim
        return round(issued_ts, 6) >= round(revoked_at.timestamp(), 6)

    @failure_policy(
        FailurePolicy.OPEN,
        reason="the cache is an optimisation; startup must not depend on it",
        fallback=lambda *args, **kwargs: 0,
    )
    async def warm_cache(self) -> int:
        now = self._now()
        rows = await self.store.select(
            "blacklisted_tokens",
            {"created_at__gte": now - WARM_CACHE_HORIZON, "expires_at__gt": now},
        )
        for row in rows:
            self._remember(row["token_hash"], row["expires_at"])
        logger.info("blacklist_cache_warmed", entries=len(rows))
        return len(rows)

    async def cleanup_expired_tokens(self) -> int:
        now = self._now()
        removed = await self.store.delete("blacklisted_tokens", {"expires_at__lt": now})
        with self._cache_lock:
            for token_hash in [h for h, exp in self._revoked.items() if exp <= now]:
                self._revoked.pop(token_hash, None)
        if removed:
            logger.info("blacklist_cleaned", removed=removed)
        return removed

    async def get_blacklist_stats(self) -> Dict[str, Any]:
        rows = await self.store.select("blacklisted_tokens")
        since = self._now() - timedelta(hours=24)
        by_reason = Counter(row["reason"] for row in rows)
        return {
            "total_blacklisted": len(rows),
            "by_reason": dict(by_reason),
            "recent_activity": sum(1 for row in rows if row["created_at"] >= since),
            "cache_entries": self.cache_size(),
        }

    async def get_user_blacklisted_tokens(self, user_id: str) -> List[BlacklistedToken]:
        rows = await self.store.select(
            "blacklisted_tokens",
            {"user_id": user_id, "expires_at__gt": self._now()},
            order_by="-created_at",
        )
        return [from_row(BlacklistedToken, row) for row in rows]
