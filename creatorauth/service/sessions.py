from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from creatorauth.config import FingerprintMismatchPolicy, Settings
from creatorauth.logging import get_logger
from creatorauth.service.audit import SecurityEventLog, SecurityEventType
from creatorauth.service.locks import KeyedLock
from creatorauth.service.policy import FailurePolicy, failure_policy
from creatorauth.service.tokens import TokenCodec, generate_opaque_secret, hash_token
from creatorauth.storage.base import CredentialStore
from creatorauth.storage.errors import RecordNotFound
from creatorauth.storage.models import (
    RefreshToken,
    UserSession,
    from_row,
    new_id,
    to_row,
    utcnow,
)

logger = get_logger(__name__)


def device_fingerprint(
    user_agent: Optional[str],
    accept_language: Optional[str],
    accept_encoding: Optional[str],
) -> str:
    """Group requests by client; a weak anomaly signal, not an identity proof."""
    raw = f"{user_agent or ''}{accept_language or ''}{accept_encoding or ''}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


@dataclass(frozen=True)
class IssuedSession:
    access_token: str
    refresh_token: str
    session_id: str
    device_id: str
    expires_in: int
    refresh_expires_at: datetime


@dataclass(frozen=True)
class RefreshedAccess:
    access_token: str
    session_id: str
    user_id: str
    expires_in: int


class SessionManager:
    """Per-device sessions, refresh tokens and the per-user session cap."""

    def __init__(
        self,
        store: CredentialStore,
        codec: TokenCodec,
        audit: SecurityEventLog,
        locks: KeyedLock,
        settings: Settings,
        *,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.codec = codec
        self.audit = audit
        self.locks = locks
        self.max_sessions = settings.max_sessions_per_user
        self.refresh_ttl = timedelta(days=settings.refresh_token_ttl_days)
        self.inactivity = timedelta(days=settings.session_inactivity_days)
        self.mismatch_policy = FingerprintMismatchPolicy(settings.fingerprint_mismatch_policy)
        self._now = now or utcnow

    @property
    def access_ttl_seconds(self) -> int:
        return int(self.codec.access_ttl.total_seconds())

    async def _revoke_refresh_tokens(self, filters: Dict[str, Any]) -> int:
        try:
            rows = await self.store.update(
                "refresh_tokens",
                {**filters, "is_revoked": False},
                {"is_revoked": True, "revoked_at": self._now()},
            )
        except RecordNotFound:
            return 0
        return len(rows)

    async def _evict_over_cap(self, user_id: str) -> List[str]:
        sessions = await self.store.select(
            "user_sessions", {"user_id": user_id}, order_by="last_activity"
        )
        evicted: List[str] = []
        # Make room for the session about to be inserted
        overflow = len(sessions) - self.max_sessions + 1
        for row in sessions[: max(overflow, 0)]:
            await self._revoke_refresh_tokens(
                {"user_id": user_id, "device_id": row["device_id"]}
            )
            await self.store.delete("user_sessions", {"id": row["id"]})
            evicted.append(row["id"])
        if evicted:
            logger.info("sessions_evicted_over_cap", user_id=user_id, count=len(evicted))
        return evicted

    @failure_policy(FailurePolicy.CLOSED, reason="session creation is a primary state transition")
    async def create_or_update_session(
        self,
        user_id: str,
        email: str,
        role: str,
        device_id: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> IssuedSession:
        now = self._now()
        async with self.locks.hold(f"sessions:{user_id}"):
            existing = await self.store.select(
                "user_sessions", {"user_id": user_id, "device_id": device_id}, limit=1
            )
            if existing:
                session_id = existing[0]["id"]
                await self.store.update(
                    "user_sessions",
                    {"id": session_id},
                    {
                        "last_activity": now,
                        "ip_address": ip_address,
                        "user_agent": user_agent,
                        "email": email,
                        "role": role,
                    },
                )
            else:
                await self._evict_over_cap(user_id)
                session = UserSession(
                    id=new_id(),
                    user_id=user_id,
                    email=email,
                    role=role,
                    device_id=device_id,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    created_at=now,
                    last_activity=now,
                )
                await self.store.insert("user_sessions", to_row(session))
                session_id = session.id

            # One live refresh token per (user, device)
            await self._revoke_refresh_tokens({"user_id": user_id, "device_id": device_id})
            refresh_value = generate_opaque_secret()
            refresh = RefreshToken(
                id=new_id(),
                token_hash=hash_token(refresh_value),
                user_id=user_id,
                device_id=device_id,
                session_id=session_id,
                expires_at=now + self.refresh_ttl,
                created_at=now,
            )
            await self.store.insert("refresh_tokens", to_row(refresh))

        access_token = self.codec.sign(
            user_id=user_id, email=email, role=role, session_id=session_id
        )
        await self.audit.record(
            SecurityEventType.SESSION_CREATED,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            device_id=device_id,
            metadata={"session_id": session_id, "reused": bool(existing)},
        )
        logger.info("session_issued", user_id=user_id, session_id=session_id)
        return IssuedSession(
            access_token=access_token,
            refresh_token=refresh_value,
            session_id=session_id,
            device_id=device_id,
            expires_in=self.access_ttl_seconds,
            refresh_expires_at=refresh.expires_at,
        )

    @failure_policy(FailurePolicy.CLOSED, reason="refresh tokens are identity checks")
    async def refresh_session(
        self,
        refresh_token: str,
        device_id: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[RefreshedAccess]:
        """Mint a new access token, or ``None`` when the refresh must be refused.

        The refresh token itself is not rotated so concurrent tabs sharing it
        keep working.
        """
        if not refresh_token:
            return None
        now = self._now()
        rows = await self.store.select(
            "refresh_tokens", {"token_hash": hash_token(refresh_token)}, limit=1
        )
        if not rows:
            logger.warning("refresh_token_unknown")
            return None
        token = from_row(RefreshToken, rows[0])
        if token.is_revoked or token.expires_at <= now:
            logger.warning(
                "refresh_token_rejected",
                user_id=token.user_id,
                revoked=token.is_revoked,
            )
            return None

        sessions = await self.store.select(
            "user_sessions",
            {"user_id": token.user_id, "device_id": token.device_id},
            limit=1,
        )
        if not sessions:
            logger.warning("refresh_session_missing", user_id=token.user_id)
            return None
        session = from_row(UserSession, sessions[0])

        if device_id != token.device_id:
            await self.audit.record(
                SecurityEventType.DEVICE_FINGERPRINT_MISMATCH,
                user_id=token.user_id,
                ip_address=ip_address,
                user_agent=user_agent,
                device_id=device_id,
                metadata={"expected_device": token.device_id, "policy": self.mismatch_policy.value},
            )
            if self.mismatch_policy is FingerprintMismatchPolicy.STRICT:
                await self._revoke_refresh_tokens({"id": token.id})
                logger.warning("refresh_device_mismatch_revoked", user_id=token.user_id)
                return None
            logger.warning("refresh_device_mismatch_allowed", user_id=token.user_id)

        try:
            await self.store.update(
                "user_sessions",
                {"id": session.id},
                {"last_activity": now, "ip_address": ip_address or session.ip_address},
            )
        except RecordNotFound:
            # Revoked by a concurrent logout after the lookup above
            logger.warning("refresh_session_vanished", user_id=token.user_id)
            return None
        access_token = self.codec.sign(
            user_id=session.user_id,
            email=session.email,
            role=session.role,
            session_id=session.id,
        )
        await self.audit.record(
            SecurityEventType.TOKEN_REFRESHED,
            user_id=session.user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            device_id=token.device_id,
            metadata={"session_id": session.id},
        )
        return RefreshedAccess(
            access_token=access_token,
            session_id=session.id,
            user_id=session.user_id,
            expires_in=self.access_ttl_seconds,
        )

    @failure_policy(FailurePolicy.CLOSED, reason="revocation must not silently fail")
    async def revoke_session(self, session_id: str, *, actor_id: Optional[str] = None) -> bool:
        """Delete one session and revoke the refresh tokens of its device only."""
        rows = await self.store.select("user_sessions", {"id": session_id}, limit=1)
        if not rows:
            return False
        session = from_row(UserSession, rows[0])
        async with self.locks.hold(f"sessions:{session.user_id}"):
            revoked = await self._revoke_refresh_tokens(
                {"user_id": session.user_id, "device_id": session.device_id}
            )
            await self.store.delete("user_sessions", {"id": session_id})
        await self.audit.record(
            SecurityEventType.SESSION_REVOKED,
            user_id=session.user_id,
            device_id=session.device_id,
            metadata={"session_id": session_id, "revoked_tokens": revoked, "actor_id": actor_id},
        )
        return True

    @failure_policy(FailurePolicy.CLOSED, reason="revocation must not silently fail")
    async def revoke_all_user_sessions(self, user_id: str) -> int:
        async with self.locks.hold(f"sessions:{user_id}"):
            await self._revoke_refresh_tokens({"user_id": user_id})
            removed = await self.store.delete("user_sessions", {"user_id": user_id})
        logger.info("user_sessions_revoked", user_id=user_id, count=removed)
        return removed

    async def logout(self, user_id: str, device_id: Optional[str] = None) -> int:
        if device_id is None:
            removed = await self.revoke_all_user_sessions(user_id)
            await self.audit.record(
                SecurityEventType.LOGOUT_ALL_DEVICES,
                user_id=user_id,
                metadata={"sessions": removed},
            )
            return removed
        removed = await self._logout_device(user_id, device_id)
        await self.audit.record(
            SecurityEventType.LOGOUT_SINGLE_DEVICE, user_id=user_id, device_id=device_id
        )
        return removed

    @failure_policy(FailurePolicy.CLOSED, reason="revocation must not silently fail")
    async def _logout_device(self, user_id: str, device_id: str) -> int:
        async with self.locks.hold(f"sessions:{user_id}"):
            await self._revoke_refresh_tokens({"user_id": user_id, "device_id": device_id})
            return await self.store.delete(
                "user_sessions", {"user_id": user_id, "device_id": device_id}
            )

    async def list_user_sessions(self, user_id: str) -> List[UserSession]:
        rows = await self.store.select(
            "user_sessions", {"user_id": user_id}, order_by="-last_activity"
        )
        return [from_row(UserSession, row) for row in rows]

    async def get_session_details(self, session_id: str) -> Optional[UserSession]:
        rows = await self.store.select("user_sessions", {"id": session_id}, limit=1)
        return from_row(UserSession, rows[0]) if rows else None

    async def cleanup_expired_sessions(self) -> Dict[str, int]:
        now = self._now()
        tokens = await self.store.delete("refresh_tokens", {"expires_at__lt": now})
        sessions = await self.store.delete(
            "user_sessions", {"last_activity__lt": now - self.inactivity}
        )
        if tokens or sessions:
            logger.info("expired_sessions_cleaned", refresh_tokens=tokens, sessions=sessions)
        return {"refresh_tokens": tokens, "sessions": sessions}
