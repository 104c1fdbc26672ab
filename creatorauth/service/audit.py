from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from creatorauth.logging import get_logger
from creatorauth.service.policy import INFRASTRUCTURE_ERRORS
from creatorauth.storage.base import CredentialStore
from creatorauth.storage.errors import StoreError
from creatorauth.storage.models import SecurityEvent, new_id, to_row, utcnow

logger = get_logger(__name__)


class SecurityEventType(str, Enum):
    SESSION_CREATED = "session_created"
    TOKEN_REFRESHED = "token_refreshed"
    SESSION_REVOKED = "session_revoked"
    LOGOUT_ALL_DEVICES = "logout_all_devices"
    LOGOUT_SINGLE_DEVICE = "logout_single_device"
    DEVICE_FINGERPRINT_MISMATCH = "device_fingerprint_mismatch"
    TOKEN_BLACKLISTED = "token_blacklisted"
    TOKENS_REVOKED = "tokens_revoked"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_UNLOCKED = "account_unlocked"
    LOCKOUT_TRIGGERED = "lockout_triggered"
    LOCKOUT_RESET = "lockout_reset"
    BLOCKED_REQUEST = "blocked_request"
    LIMIT_EXCEEDED = "limit_exceeded"
    IP_BLOCKED = "ip_blocked"
    IP_UNBLOCKED = "ip_unblocked"
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILED = "login_failed"
    PASSWORD_CHANGED = "password_changed"
    USER_REGISTERED = "user_registered"


class SecurityEventLog:
    """Append-only audit trail; writes never fail the operation they describe."""

    def __init__(
        self,
        store: CredentialStore,
        *,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self._now = now or utcnow

    async def record(
        self,
        event_type: SecurityEventType | str,
        *,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        device_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        kind = event_type.value if isinstance(event_type, SecurityEventType) else event_type
        event = SecurityEvent(
            id=new_id(),
            event_type=kind,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            device_id=device_id,
            metadata=metadata or {},
            created_at=self._now(),
        )
        try:
            await self.store.insert("security_events", to_row(event))
        except (StoreError, *INFRASTRUCTURE_ERRORS) as exc:
            logger.error(
                "security_event_write_failed",
                event_type=kind,
                user_id=user_id,
                error=str(exc),
            )

    async def list_events(
        self,
        *,
        user_id: Optional[str] = None,
        event_type: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[SecurityEvent]:
        filters: Dict[str, Any] = {}
        if user_id:
            filters["user_id"] = user_id
        if event_type:
            filters["event_type"] = event_type
        if since:
            filters["created_at__gte"] = since
        rows = await self.store.select(
            "security_events", filters, order_by="-created_at", limit=limit
        )
        return [SecurityEvent(**row) for row in rows]

    async def prune(self, retention_days: int) -> int:
        cutoff = self._now() - timedelta(days=retention_days)
        removed = await self.store.delete("security_events", {"created_at__lt": cutoff})
        if removed:
            logger.info("security_events_pruned", removed=removed, retention_days=retention_days)
        return removed
