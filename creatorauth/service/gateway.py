"""Request-level composition of the security components.

Order of checks for an inbound call, cheapest first:

1. IP rate limit per (client IP, endpoint class)  -> 429 with Retry-After
2. account lockout for credential endpoints       -> 423
3. bearer token signature/expiry, then the single-token blacklist and the
   per-user revocation marker                     -> 401
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Mapping, Optional, Tuple

from creatorauth.config import Settings
from creatorauth.logging import get_logger
from creatorauth.service.audit import SecurityEventLog, SecurityEventType
from creatorauth.service.blacklist import TokenRevocationRegistry
from creatorauth.service.credentials import CredentialService, normalize_email
from creatorauth.service.errors import (
    AccountLockedError,
    AuthenticationError,
    NotFoundError,
    ValidationError,
)
from creatorauth.service.lockout import AccountLockoutTracker, LockoutStatus
from creatorauth.service.rate_limit import (
    IPRateLimiter,
    RateLimitResult,
    normalize_endpoint,
    resolve_client_ip,
)
from creatorauth.service.sessions import (
    IssuedSession,
    RefreshedAccess,
    SessionManager,
    device_fingerprint,
)
from creatorauth.service.tokens import AccessClaims, TokenCodec
from creatorauth.storage.models import UserProfile, utcnow

logger = get_logger(__name__)

# Below this many remaining attempts the login error tells the user
REMAINING_ATTEMPTS_WARNING = 2


@dataclass(frozen=True)
class ClientContext:
    ip_address: str
    user_agent: Optional[str]
    device_id: str
    endpoint: str


@dataclass(frozen=True)
class Principal:
    user_id: str
    email: str
    role: str
    session_id: str
    token: str
    claims: AccessClaims

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class AuthGateway:
    def __init__(
        self,
        *,
        codec: TokenCodec,
        registry: TokenRevocationRegistry,
        sessions: SessionManager,
        lockout: AccountLockoutTracker,
        rate_limiter: IPRateLimiter,
        credentials: CredentialService,
        audit: SecurityEventLog,
        settings: Settings,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.codec = codec
        self.registry = registry
        self.sessions = sessions
        self.lockout = lockout
        self.rate_limiter = rate_limiter
        self.credentials = credentials
        self.audit = audit
        self.trust_proxy_headers = settings.trust_proxy_headers
        self._now = now or utcnow

    def client_context(
        self, headers: Mapping[str, str], peer: Optional[str], path: str
    ) -> ClientContext:
        user_agent = headers.get("user-agent")
        return ClientContext(
            ip_address=resolve_client_ip(
                headers, peer, trust_proxy_headers=self.trust_proxy_headers
            ),
            user_agent=user_agent,
            device_id=device_fingerprint(
                user_agent,
                headers.get("accept-language"),
                headers.get("accept-encoding"),
            ),
            endpoint=normalize_endpoint(path),
        )

    def unverified_user_id(self, authorization: Optional[str]) -> Optional[str]:
        """Best-effort subject for attribution in rate-limit events."""
        token = bearer_token(authorization)
        if not token:
            return None
        try:
            payload = self.codec.decode_unverified(token)
        except ValidationError:
            return None
        subject = payload.get("sub") or payload.get("user_id") or payload.get("id")
        return str(subject) if subject else None

    async def check_rate_limit(
        self, client: ClientContext, user_id: Optional[str] = None
    ) -> RateLimitResult:
        return await self.rate_limiter.check_rate_limit(
            client.ip_address, client.endpoint, client.user_agent, user_id
        )

    async def check_lockout(self, identifier: str) -> LockoutStatus:
        status = await self.lockout.check_lockout_status(identifier)
        if status.is_locked:
            raise AccountLockedError(
                "account is locked" if status.is_permanent
                else "account temporarily locked due to failed login attempts",
                locked_until=status.lockout_until,
                retry_after=status.retry_after(self._now()),
                permanent=status.is_permanent,
            )
        return status

    async def authenticate(self, authorization: Optional[str]) -> Principal:
        token = bearer_token(authorization)
        if not token:
            raise AuthenticationError("missing bearer token")
        claims = self.codec.verify(token)
        if await self.registry.is_token_blacklisted(token):
            logger.warning("revoked_token_presented", user_id=claims.sub, reason="blacklisted")
            raise AuthenticationError("token has been revoked")
        if not await self.registry.is_user_token_version_valid(claims.sub, claims.iat):
            logger.warning("revoked_token_presented", user_id=claims.sub, reason="token_version")
            raise AuthenticationError("token has been revoked")
        return Principal(
            user_id=claims.sub,
            email=claims.email,
            role=claims.role,
            session_id=claims.session_id,
            token=token,
            claims=claims,
        )

    async def login(
        self, email: str, password: str, client: ClientContext
    ) -> Tuple[UserProfile, IssuedSession]:
        identifier = normalize_email(email)
        await self.check_lockout(identifier)

        user = await self.credentials.verify(identifier, password)
        if not user:
            status = await self.lockout.record_failed_attempt(identifier)
            await self.audit.record(
                SecurityEventType.LOGIN_FAILED,
                ip_address=client.ip_address,
                user_agent=client.user_agent,
                device_id=client.device_id,
                metadata={
                    "identifier": identifier,
                    "attempts": status.total_failed_attempts,
                    "locked": status.is_locked,
                },
            )
            if status.is_locked:
                raise AccountLockedError(
                    "too many failed login attempts; account temporarily locked",
                    locked_until=status.lockout_until,
                    retry_after=status.retry_after(self._now()),
                    permanent=status.is_permanent,
                )
            if 0 < status.remaining_attempts <= REMAINING_ATTEMPTS_WARNING:
                raise AuthenticationError(
                    f"invalid credentials; {status.remaining_attempts} attempt(s) "
                    "remaining before the account is locked",
                    detail={"remaining_attempts": status.remaining_attempts},
                )
            raise AuthenticationError("invalid credentials")

        await self.lockout.reset_lockout(identifier)
        issued = await self.sessions.create_or_update_session(
            user.id, user.email, user.role, client.device_id, client.ip_address, client.user_agent
        )
        await self.audit.record(
            SecurityEventType.LOGIN_SUCCESS,
            user_id=user.id,
            ip_address=client.ip_address,
            user_agent=client.user_agent,
            device_id=client.device_id,
            metadata={"session_id": issued.session_id},
        )
        return user, issued

    async def register(
        self, email: str, password: str, client: ClientContext
    ) -> Tuple[UserProfile, IssuedSession]:
        user = await self.credentials.register(email, password)
        await self.audit.record(
            SecurityEventType.USER_REGISTERED,
            user_id=user.id,
            ip_address=client.ip_address,
            user_agent=client.user_agent,
        )
        issued = await self.sessions.create_or_update_session(
            user.id, user.email, user.role, client.device_id, client.ip_address, client.user_agent
        )
        return user, issued

    async def refresh(
        self, refresh_token: Optional[str], client: ClientContext
    ) -> Optional[RefreshedAccess]:
        if not refresh_token:
            return None
        return await self.sessions.refresh_session(
            refresh_token,
            client.device_id,
            ip_address=client.ip_address,
            user_agent=client.user_agent,
        )

    async def logout(
        self, principal: Principal, client: ClientContext, *, all_devices: bool = False
    ) -> int:
        await self.registry.blacklist_token(principal.token, principal.user_id, "logout")
        if all_devices:
            return await self.sessions.logout(principal.user_id)
        session = await self.sessions.get_session_details(principal.session_id)
        device_id = session.device_id if session else client.device_id
        return await self.sessions.logout(principal.user_id, device_id)

    async def change_password(
        self,
        principal: Principal,
        current_password: str,
        new_password: str,
        client: ClientContext,
    ) -> None:
        if current_password == new_password:
            raise ValidationError(
                "new password must differ from the current one",
                detail={"field": "new_password"},
            )
        profile = await self.credentials.get_by_id(principal.user_id)
        if not profile:
            raise NotFoundError("user not found")
        if not await self.credentials.verify(profile.email, current_password):
            raise AuthenticationError("current password is incorrect")
        await self.credentials.set_password(profile.id, new_password)
        await self.revoke_user_tokens(profile.id, "password_change")
        await self.audit.record(
            SecurityEventType.PASSWORD_CHANGED,
            user_id=profile.id,
            ip_address=client.ip_address,
            user_agent=client.user_agent,
            device_id=client.device_id,
        )

    async def revoke_user_tokens(
        self, user_id: str, reason: str, *, actor_id: Optional[str] = None
    ) -> int:
        """Bulk revocation: every outstanding access token, session and refresh token."""
        version = await self.registry.blacklist_all_user_tokens(user_id, reason)
        removed = await self.sessions.revoke_all_user_sessions(user_id)
        logger.info(
            "user_access_revoked",
            user_id=user_id,
            reason=reason,
            actor_id=actor_id,
            sessions=removed,
        )
        return version
