from __future__ import annotations

import ipaddress
import math
import re
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional

from creatorauth.config import Settings
from creatorauth.logging import get_logger
from creatorauth.service.audit import SecurityEventLog, SecurityEventType
from creatorauth.service.errors import ValidationError
from creatorauth.service.locks import KeyedLock
from creatorauth.service.policy import FailurePolicy, failure_policy
from creatorauth.storage.base import CredentialStore
from creatorauth.storage.models import IPRateLimitRecord, from_row, new_id, utcnow

logger = get_logger(__name__)

MANUAL_BLOCK_ENDPOINT = "manual_block"
MANUAL_BLOCK_COUNT = 999999
MAX_BLOCK_MINUTES = 7 * 24 * 60
MIN_BLOCK_REASON_LENGTH = 3
TOP_OFFENDERS = 10
FALLBACK_IP = "0.0.0.0"

# Checked in order; the first header holding a valid address wins
CLIENT_IP_HEADERS = (
    "x-forwarded-for",
    "x-real-ip",
    "x-client-ip",
    "cf-connecting-ip",
    "x-forwarded",
    "forwarded-for",
    "forwarded",
)

_VERSION_PREFIX = re.compile(r"^(?:api/)?v\d+/")


@dataclass(frozen=True)
class RateLimitRule:
    window_ms: int
    max_requests: int
    block_duration_ms: int

    @property
    def window(self) -> timedelta:
        return timedelta(milliseconds=self.window_ms)

    @property
    def block_duration(self) -> timedelta:
        return timedelta(milliseconds=self.block_duration_ms)


_MINUTE = 60 * 1000
_HOUR = 60 * _MINUTE

DEFAULT_RULES: Dict[str, RateLimitRule] = {
    "auth/login": RateLimitRule(15 * _MINUTE, 5, 30 * _MINUTE),
    "auth/register": RateLimitRule(_HOUR, 3, 2 * _HOUR),
    "auth/reset-password": RateLimitRule(_HOUR, 3, _HOUR),
    "analyze/video": RateLimitRule(_HOUR, 50, _HOUR),
    "analyze/upload": RateLimitRule(_HOUR, 20, 2 * _HOUR),
    "password-security/check": RateLimitRule(5 * _MINUTE, 20, 15 * _MINUTE),
    "default": RateLimitRule(15 * _MINUTE, 100, 30 * _MINUTE),
}


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining_requests: int
    reset_time: datetime
    retry_after: Optional[int] = None

    def headers(self) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining_requests),
            "X-RateLimit-Reset": str(math.ceil(self.reset_time.timestamp())),
        }
        if not self.allowed and self.retry_after:
            headers["Retry-After"] = str(self.retry_after)
        return headers


def build_rules(overrides: Optional[Mapping[str, Mapping[str, int]]] = None) -> Dict[str, RateLimitRule]:
    """Merge per-class overrides (``window_ms``/``max_requests``/``block_duration_ms``)."""
    rules = dict(DEFAULT_RULES)
    for endpoint, values in (overrides or {}).items():
        base = rules.get(endpoint, DEFAULT_RULES["default"])
        unknown = set(values) - {"window_ms", "max_requests", "block_duration_ms"}
        if unknown:
            raise ValueError(f"unknown rate limit settings for {endpoint}: {sorted(unknown)}")
        rule = replace(base, **{k: int(v) for k, v in values.items()})
        if rule.window_ms <= 0 or rule.max_requests <= 0 or rule.block_duration_ms <= 0:
            raise ValueError(f"rate limit settings for {endpoint} must be positive")
        rules[endpoint] = rule
    return rules


def normalize_endpoint(path: str) -> str:
    """``/v1/auth/login?next=x`` -> ``auth/login``; empty paths map to ``root``."""
    endpoint = (path or "").split("?", 1)[0]
    endpoint = endpoint[1:] if endpoint.startswith("/") else endpoint
    endpoint = _VERSION_PREFIX.sub("", endpoint)
    segments = [s for s in endpoint.split("/") if s][:2]
    normalized = "/".join(segments) or "root"
    # The admin block row shares the table with the automatic counters
    return "default" if normalized == MANUAL_BLOCK_ENDPOINT else normalized


def is_valid_ip(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


def resolve_client_ip(
    headers: Mapping[str, str],
    peer: Optional[str],
    *,
    trust_proxy_headers: bool = True,
) -> str:
    if trust_proxy_headers:
        for header in CLIENT_IP_HEADERS:
            value = headers.get(header)
            if not value:
                continue
            candidate = value.split(",")[0].strip()
            if is_valid_ip(candidate):
                return candidate
    if peer and is_valid_ip(peer):
        return peer
    return FALLBACK_IP


class IPRateLimiter:
    """Fixed-window request counters per (IP, endpoint class) with escalating blocks."""

    def __init__(
        self,
        store: CredentialStore,
        audit: SecurityEventLog,
        locks: KeyedLock,
        settings: Settings,
        *,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.audit = audit
        self.locks = locks
        self.rules = build_rules(settings.rate_limit_rules)
        self.retention = timedelta(days=settings.rate_limit_record_retention_days)
        self._now = now or utcnow

    def rule_for(self, endpoint: str) -> RateLimitRule:
        return self.rules.get(endpoint, self.rules["default"])

    def _allow_on_failure(
        self,
        ip_address: str,
        endpoint: str,
        user_agent: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> RateLimitResult:
        rule = self.rule_for(endpoint)
        return RateLimitResult(
            allowed=True,
            limit=rule.max_requests,
            remaining_requests=rule.max_requests - 1,
            reset_time=self._now() + rule.window,
        )

    async def _reject(
        self,
        event_type: SecurityEventType,
        rule: RateLimitRule,
        blocked_until: datetime,
        now: datetime,
        *,
        ip_address: str,
        endpoint: str,
        user_agent: Optional[str],
        user_id: Optional[str],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> RateLimitResult:
        retry_after = max(1, math.ceil((blocked_until - now).total_seconds()))
        logger.warning(
            "rate_limit_rejected",
            ip_address=ip_address,
            endpoint=endpoint,
            reason=event_type.value,
            retry_after=retry_after,
        )
        await self.audit.record(
            event_type,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"endpoint": endpoint, **(metadata or {})},
        )
        return RateLimitResult(
            allowed=False,
            limit=rule.max_requests,
            remaining_requests=0,
            reset_time=blocked_until,
            retry_after=retry_after,
        )

    @failure_policy(
        FailurePolicy.OPEN,
        reason="rate limiting must never be a single point of total outage",
        fallback=_allow_on_failure,
    )
    async def check_rate_limit(
        self,
        ip_address: str,
        endpoint: str,
        user_agent: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> RateLimitResult:
        if endpoint == MANUAL_BLOCK_ENDPOINT:
            endpoint = "default"
        rule = self.rule_for(endpoint)
        async with self.locks.hold(f"ratelimit:{ip_address}:{endpoint}"):
            now = self._now()
            rows = await self.store.select(
                "ip_rate_limits",
                {"ip_address": ip_address, "endpoint__in": [endpoint, MANUAL_BLOCK_ENDPOINT]},
            )
            record: Optional[IPRateLimitRecord] = None
            for row in rows:
                current = from_row(IPRateLimitRecord, row)
                if current.endpoint == endpoint:
                    record = current
                elif (
                    current.endpoint == MANUAL_BLOCK_ENDPOINT
                    and current.blocked_until
                    and current.blocked_until > now
                ):
                    return await self._reject(
                        SecurityEventType.BLOCKED_REQUEST,
                        rule,
                        current.blocked_until,
                        now,
                        ip_address=ip_address,
                        endpoint=endpoint,
                        user_agent=user_agent,
                        user_id=user_id,
                        metadata={"manual_block": True},
                    )

            if record and record.blocked_until and record.blocked_until > now:
                return await self._reject(
                    SecurityEventType.BLOCKED_REQUEST,
                    rule,
                    record.blocked_until,
                    now,
                    ip_address=ip_address,
                    endpoint=endpoint,
                    user_agent=user_agent,
                    user_id=user_id,
                )

            reset_window = (
                record is None
                or record.window_start < now - rule.window
                or record.blocked_until is not None
            )
            request_count = 1 if reset_window else record.request_count + 1
            window_start = now if reset_window else record.window_start
            exceeded = request_count > rule.max_requests
            # The block runs from the violation, not from the window start
            blocked_until = now + rule.block_duration if exceeded else None
            row = {
                "ip_address": ip_address,
                "endpoint": endpoint,
                "request_count": request_count,
                "window_start": window_start,
                "blocked_until": blocked_until,
                "last_request": now,
                "user_agent": user_agent,
                "user_id": user_id,
                "updated_at": now,
            }
            if record:
                await self.store.update("ip_rate_limits", {"id": record.id}, row)
            else:
                await self.store.insert(
                    "ip_rate_limits",
                    {**row, "id": new_id(), "first_request": now, "created_at": now},
                )

        if exceeded:
            return await self._reject(
                SecurityEventType.LIMIT_EXCEEDED,
                rule,
                blocked_until,
                now,
                ip_address=ip_address,
                endpoint=endpoint,
                user_agent=user_agent,
                user_id=user_id,
                metadata={"request_count": request_count, "limit": rule.max_requests},
            )
        return RateLimitResult(
            allowed=True,
            limit=rule.max_requests,
            remaining_requests=rule.max_requests - request_count,
            reset_time=window_start + rule.window,
        )

    @staticmethod
    def validate_block(ip_address: str, duration_minutes: int, reason: str) -> None:
        if not is_valid_ip(ip_address):
            raise ValidationError("invalid IP address", detail={"field": "ip_address"})
        if not 1 <= int(duration_minutes) <= MAX_BLOCK_MINUTES:
            raise ValidationError(
                f"block duration must be between 1 and {MAX_BLOCK_MINUTES} minutes",
                detail={"field": "duration_minutes"},
            )
        if len((reason or "").strip()) < MIN_BLOCK_REASON_LENGTH:
            raise ValidationError("block reason is too short", detail={"field": "reason"})

    @failure_policy(FailurePolicy.CLOSED, reason="admin actions must not fail silently")
    async def block_ip(
        self,
        ip_address: str,
        duration_minutes: int,
        reason: str,
        *,
        admin_user_id: Optional[str] = None,
    ) -> datetime:
        self.validate_block(ip_address, duration_minutes, reason)
        now = self._now()
        block_until = now + timedelta(minutes=int(duration_minutes))
        await self.store.upsert(
            "ip_rate_limits",
            {
                "id": new_id(),
                "ip_address": ip_address,
                "endpoint": MANUAL_BLOCK_ENDPOINT,
                "request_count": MANUAL_BLOCK_COUNT,
                "window_start": now,
                "blocked_until": block_until,
                "first_request": now,
                "last_request": now,
                "user_id": admin_user_id,
                "created_at": now,
                "updated_at": now,
            },
            conflict=("ip_address", "endpoint"),
        )
        await self.audit.record(
            SecurityEventType.IP_BLOCKED,
            user_id=admin_user_id,
            ip_address=ip_address,
            metadata={
                "reason": reason,
                "duration_minutes": int(duration_minutes),
                "block_until": block_until.isoformat(),
            },
        )
        logger.warning(
            "ip_blocked_manually",
            ip_address=ip_address,
            admin_user_id=admin_user_id,
            block_until=block_until.isoformat(),
        )
        return block_until

    @failure_policy(FailurePolicy.CLOSED, reason="admin actions must not fail silently")
    async def unblock_ip(self, ip_address: str, *, admin_user_id: Optional[str] = None) -> int:
        if not is_valid_ip(ip_address):
            raise ValidationError("invalid IP address", detail={"field": "ip_address"})
        now = self._now()
        blocked = await self.store.select(
            "ip_rate_limits", {"ip_address": ip_address, "blocked_until__isnull": False}
        )
        if blocked:
            await self.store.update(
                "ip_rate_limits",
                {"id__in": [row["id"] for row in blocked]},
                {"blocked_until": None, "request_count": 0, "updated_at": now},
            )
        await self.audit.record(
            SecurityEventType.IP_UNBLOCKED,
            user_id=admin_user_id,
            ip_address=ip_address,
            metadata={"records": len(blocked)},
        )
        logger.info("ip_unblocked", ip_address=ip_address, admin_user_id=admin_user_id)
        return len(blocked)

    async def get_rate_limit_stats(self) -> Dict[str, Any]:
        now = self._now()
        rows = await self.store.select("ip_rate_limits", order_by="-request_count")
        blocked = [row for row in rows if row.get("blocked_until") is not None]
        top: List[Dict[str, Any]] = [
            {
                "ip": row["ip_address"],
                "request_count": row["request_count"],
                "endpoint": row["endpoint"],
            }
            for row in rows[:TOP_OFFENDERS]
        ]
        return {
            "total_blocked": len(blocked),
            "currently_blocked": sum(1 for row in blocked if row["blocked_until"] > now),
            "top_offenders": top,
        }

    async def cleanup_old_records(self) -> int:
        now = self._now()
        candidates = await self.store.select(
            "ip_rate_limits", {"updated_at__lt": now - self.retention}
        )
        stale = [
            row["id"]
            for row in candidates
            if row.get("blocked_until") is None or row["blocked_until"] <= now
        ]
        if not stale:
            return 0
        removed = await self.store.delete("ip_rate_limits", {"id__in": stale})
        logger.info("rate_limit_records_cleaned", removed=removed)
        return removed
