from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from creatorauth.config import Settings
from creatorauth.logging import get_logger
from creatorauth.service.audit import SecurityEventLog, SecurityEventType
from creatorauth.service.blacklist import TokenRevocationRegistry
from creatorauth.service.credentials import CredentialService, normalize_email
from creatorauth.service.errors import NotFoundError, ValidationError
from creatorauth.service.locks import KeyedLock
from creatorauth.service.policy import FailurePolicy, failure_policy
from creatorauth.service.sessions import SessionManager
from creatorauth.storage.base import CredentialStore
from creatorauth.storage.models import AccountLockout, from_row, new_id, to_row, utcnow

logger = get_logger(__name__)

# Admin locks use a far-future expiry so every "is it locked" check agrees
PERMANENT_LOCK_SPAN = timedelta(days=365 * 100)
PERMANENT_LOCK_ATTEMPTS = 999
MIN_LOCK_REASON_LENGTH = 3


@dataclass(frozen=True)
class LockoutStatus:
    is_locked: bool
    remaining_attempts: int
    total_failed_attempts: int
    lockout_until: Optional[datetime] = None
    is_permanent: bool = False
    lock_reason: Optional[str] = None

    def retry_after(self, now: datetime) -> Optional[int]:
        if not self.is_locked or self.lockout_until is None or self.is_permanent:
            return None
        return max(1, math.ceil((self.lockout_until - now).total_seconds()))


class AccountLockoutTracker:
    """Sliding-window failed-login counter and admin account locks.

    Counters are keyed by a generic identifier (normally the lower-cased
    email). The read-modify-write of a counter runs under a per-identifier
    lock so concurrent failures cannot lose increments.
    """

    def __init__(
        self,
        store: CredentialStore,
        audit: SecurityEventLog,
        locks: KeyedLock,
        settings: Settings,
        *,
        credentials: CredentialService,
        sessions: SessionManager,
        registry: TokenRevocationRegistry,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.audit = audit
        self.locks = locks
        self.credentials = credentials
        self.sessions = sessions
        self.registry = registry
        self.max_attempts = settings.max_login_attempts
        self.lockout_duration = timedelta(minutes=settings.lockout_duration_minutes)
        self.reset_window = timedelta(minutes=settings.reset_window_minutes)
        self._now = now or utcnow

    def _unlocked(self, *args, **kwargs) -> LockoutStatus:
        return LockoutStatus(
            is_locked=False,
            remaining_attempts=self.max_attempts,
            total_failed_attempts=0,
        )

    def _status_of(self, record: AccountLockout) -> LockoutStatus:
        return LockoutStatus(
            is_locked=True,
            remaining_attempts=0,
            total_failed_attempts=record.failed_attempts,
            lockout_until=record.locked_until,
            is_permanent=record.is_permanently_locked,
            lock_reason=record.lock_reason,
        )

    async def _load(self, identifier: str) -> Optional[AccountLockout]:
        rows = await self.store.select(
            "account_lockouts", {"identifier": identifier}, limit=1
        )
        return from_row(AccountLockout, rows[0]) if rows else None

    @failure_policy(
        FailurePolicy.OPEN,
        reason="lockout tracking must never itself block a legitimate login",
        fallback=lambda self, *args, **kwargs: self._unlocked(),
    )
    async def record_failed_attempt(self, identifier: str) -> LockoutStatus:
        async with self.locks.hold(f"lockout:{identifier}"):
            now = self._now()
            record = await self._load(identifier)
            if record and record.locked_until and record.locked_until > now:
                # Already locked: reject without extending the counter
                return self._status_of(record)

            failed_attempts = 1
            first_failure_at = now
            # An elapsed lockout starts a fresh window like an elapsed reset window
            if (
                record
                and record.locked_until is None
                and now - record.first_failure_at <= self.reset_window
            ):
                failed_attempts = record.failed_attempts + 1
                first_failure_at = record.first_failure_at

            should_lock = failed_attempts >= self.max_attempts
            locked_until = now + self.lockout_duration if should_lock else None
            patch = {
                "failed_attempts": failed_attempts,
                "first_failure_at": first_failure_at,
                "last_failure_at": now,
                "locked_until": locked_until,
                "is_permanently_locked": False,
                "lock_reason": None,
                "updated_at": now,
            }
            if record:
                await self.store.update("account_lockouts", {"id": record.id}, patch)
            else:
                await self.store.insert(
                    "account_lockouts",
                    {"id": new_id(), "identifier": identifier, "created_at": now, **patch},
                )

        if should_lock:
            logger.warning(
                "account_lockout_triggered",
                identifier=identifier,
                attempts=failed_attempts,
                locked_until=locked_until.isoformat(),
            )
            await self.audit.record(
                SecurityEventType.LOCKOUT_TRIGGERED,
                metadata={
                    "identifier": identifier,
                    "attempts": failed_attempts,
                    "locked_until": locked_until.isoformat(),
                },
            )
        else:
            logger.info(
                "failed_login_recorded",
                identifier=identifier,
                attempts=failed_attempts,
                max_attempts=self.max_attempts,
            )
        return LockoutStatus(
            is_locked=should_lock,
            remaining_attempts=max(0, self.max_attempts - failed_attempts),
            total_failed_attempts=failed_attempts,
            lockout_until=locked_until,
        )

    @failure_policy(
        FailurePolicy.OPEN,
        reason="lockout checks fall back to credential verification",
        fallback=lambda self, *args, **kwargs: self._unlocked(),
    )
    async def check_lockout_status(self, identifier: str) -> LockoutStatus:
        record = await self._load(identifier)
        if not record:
            return self._unlocked()
        now = self._now()
        if record.is_permanently_locked or (record.locked_until and record.locked_until > now):
            return self._status_of(record)
        if now - record.first_failure_at > self.reset_window:
            await self._delete(identifier)
            return self._unlocked()
        if record.locked_until is not None:
            # Lockout served; the next failure starts a new count
            return self._unlocked()
        return LockoutStatus(
            is_locked=False,
            remaining_attempts=max(0, self.max_attempts - record.failed_attempts),
            total_failed_attempts=record.failed_attempts,
        )

    async def _delete(self, identifier: str) -> int:
        async with self.locks.hold(f"lockout:{identifier}"):
            removed = await self.store.delete("account_lockouts", {"identifier": identifier})
        if removed:
            logger.info("lockout_reset", identifier=identifier)
        return removed

    @failure_policy(FailurePolicy.CLOSED, reason="explicit resets must report failure")
    async def reset_lockout(self, identifier: str) -> int:
        removed = await self._delete(identifier)
        if removed:
            await self.audit.record(
                SecurityEventType.LOCKOUT_RESET,
                metadata={"identifier": identifier},
            )
        return removed

    @failure_policy(
        FailurePolicy.OPEN,
        reason="periodic sweep; the next run retries",
        fallback=lambda *args, **kwargs: 0,
    )
    async def clear_expired_lockouts(self) -> int:
        now = self._now()
        candidates = await self.store.select(
            "account_lockouts",
            {
                "first_failure_at__lt": now - self.reset_window,
                "is_permanently_locked": False,
            },
        )
        expired = [
            row["id"]
            for row in candidates
            if row.get("locked_until") is None or row["locked_until"] < now
        ]
        if not expired:
            return 0
        removed = await self.store.delete("account_lockouts", {"id__in": expired})
        logger.info("expired_lockouts_cleared", removed=removed)
        return removed

    def get_lockout_config(self) -> Dict[str, int]:
        return {
            "max_attempts": self.max_attempts,
            "lockout_duration_minutes": int(self.lockout_duration.total_seconds() // 60),
            "reset_window_minutes": int(self.reset_window.total_seconds() // 60),
        }

    @failure_policy(FailurePolicy.CLOSED, reason="admin actions must not fail silently")
    async def lock_account(
        self,
        email: str,
        reason: str = "Admin action",
        *,
        actor_id: Optional[str] = None,
    ) -> AccountLockout:
        """Permanently lock ``email`` and revoke everything it holds."""
        identifier = normalize_email(email)
        if len((reason or "").strip()) < MIN_LOCK_REASON_LENGTH:
            raise ValidationError("lock reason is too short", detail={"field": "reason"})
        now = self._now()
        lock_until = now + PERMANENT_LOCK_SPAN
        row = {
            "id": new_id(),
            "identifier": identifier,
            "failed_attempts": PERMANENT_LOCK_ATTEMPTS,
            "first_failure_at": now,
            "last_failure_at": now,
            "locked_until": lock_until,
            "is_permanently_locked": True,
            "lock_reason": reason.strip(),
            "created_at": now,
            "updated_at": now,
        }
        async with self.locks.hold(f"lockout:{identifier}"):
            stored = await self.store.upsert("account_lockouts", row, conflict=("identifier",))

        user = await self.credentials.get_by_email(identifier)
        if user:
            await self.sessions.revoke_all_user_sessions(user.id)
            await self.registry.blacklist_all_user_tokens(user.id, "account_disabled")
        else:
            logger.warning("account_lock_user_missing", identifier=identifier)

        await self.audit.record(
            SecurityEventType.ACCOUNT_LOCKED,
            user_id=user.id if user else None,
            metadata={
                "identifier": identifier,
                "reason": reason,
                "locked_by": actor_id or "admin",
                "lock_until": lock_until.isoformat(),
            },
        )
        logger.warning("account_locked", identifier=identifier, actor_id=actor_id)
        return from_row(AccountLockout, stored)

    @failure_policy(FailurePolicy.CLOSED, reason="admin actions must not fail silently")
    async def unlock_account(self, email: str, *, actor_id: Optional[str] = None) -> None:
        identifier = normalize_email(email)
        async with self.locks.hold(f"lockout:{identifier}"):
            removed = await self.store.delete("account_lockouts", {"identifier": identifier})
        if not removed:
            raise NotFoundError("no lockout for this account", detail={"email": identifier})
        user = await self.credentials.get_by_email(identifier)
        await self.audit.record(
            SecurityEventType.ACCOUNT_UNLOCKED,
            user_id=user.id if user else None,
            metadata={"identifier": identifier, "unlocked_by": actor_id or "admin"},
        )
        logger.info("account_unlocked", identifier=identifier, actor_id=actor_id)

    async def get_lockout_status(self, email: str) -> LockoutStatus:
        record = await self._load(normalize_email(email))
        if not record:
            return self._unlocked()
        now = self._now()
        locked = record.is_permanently_locked or bool(
            record.locked_until and record.locked_until > now
        )
        if locked:
            remaining = 0
        elif record.locked_until is not None:
            remaining = self.max_attempts
        else:
            remaining = max(0, self.max_attempts - record.failed_attempts)
        return LockoutStatus(
            is_locked=locked,
            remaining_attempts=remaining,
            total_failed_attempts=record.failed_attempts,
            lockout_until=record.locked_until if locked else None,
            is_permanent=record.is_permanently_locked,
            lock_reason=record.lock_reason,
        )

    async def get_all_locked_accounts(self) -> List[AccountLockout]:
        rows = await self.store.select(
            "account_lockouts",
            {"locked_until__gt": self._now()},
            order_by="-created_at",
        )
        return [from_row(AccountLockout, row) for row in rows]
