from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Body, Cookie, Depends, Header, HTTPException, Query, Request, Response

from creatorauth.api.schemas import (
    AdminSessionView,
    AuthResponse,
    BlacklistEntryView,
    BlockIPRequest,
    Envelope,
    LockAccountRequest,
    LockoutRecordView,
    LockoutStatusView,
    LoginRequest,
    PasswordChangeRequest,
    RefreshResponse,
    RegisterRequest,
    RevokeTokensRequest,
    SecurityEventList,
    SecurityEventView,
    SessionView,
    TokenRefreshRequest,
    UnblockIPRequest,
    UnlockAccountRequest,
    UserView,
)
from creatorauth.config import get_settings
from creatorauth.logging import get_logger
from creatorauth.service.gateway import ClientContext, Principal
from creatorauth.service.runtime import get_runtime
from creatorauth.service.sessions import IssuedSession
from creatorauth.storage.models import UserProfile, UserSession

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

REFRESH_COOKIE = "refreshToken"
REFRESH_COOKIE_PATH = "/v1/auth/refresh"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _ok(data) -> Envelope:
    return Envelope(status="ok", data=data)


def _cookie_flags() -> dict:
    production = get_settings().is_production
    return {
        "httponly": True,
        "secure": production,
        "samesite": "strict" if production else "lax",
        "path": REFRESH_COOKIE_PATH,
    }


def _set_refresh_cookie(response: Response, refresh_token: str) -> None:
    max_age = int(timedelta(days=get_settings().refresh_token_ttl_days).total_seconds())
    response.set_cookie(REFRESH_COOKIE, refresh_token, max_age=max_age, **_cookie_flags())


def _clear_refresh_cookie(response: Response) -> None:
    response.delete_cookie(REFRESH_COOKIE, **_cookie_flags())


def _auth_payload(user: UserProfile, issued: IssuedSession) -> AuthResponse:
    return AuthResponse(
        user_id=user.id,
        email=user.email,
        role=user.role,
        session_id=issued.session_id,
        access_token=issued.access_token,
        expires_in=issued.expires_in,
    )


def _session_view(session: UserSession, current_session_id: Optional[str] = None) -> SessionView:
    return SessionView(
        id=session.id,
        device_id=session.device_id,
        ip_address=session.ip_address,
        user_agent=session.user_agent,
        created_at=session.created_at,
        last_activity=session.last_activity,
        current=session.id == current_session_id,
    )


async def get_client(request: Request) -> ClientContext:
    runtime = get_runtime()
    return runtime.gateway.client_context(
        request.headers,
        request.client.host if request.client else None,
        request.url.path,
    )


async def get_user(authorization: Optional[str] = Header(None)) -> Principal:
    runtime = get_runtime()
    return await runtime.gateway.authenticate(authorization)


async def get_admin_user(authorization: Optional[str] = Header(None)) -> Principal:
    principal = await get_user(authorization)
    if not principal.is_admin:
        raise _http_error("forbidden", "admin access required", status_code=403)
    return principal


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(
    body: RegisterRequest,
    response: Response,
    client: ClientContext = Depends(get_client),
):
    """Create an account and open a session for the calling device."""
    runtime = get_runtime()
    user, issued = await runtime.gateway.register(body.email, body.password, client)
    _set_refresh_cookie(response, issued.refresh_token)
    return _ok(_auth_payload(user, issued))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    response: Response,
    client: ClientContext = Depends(get_client),
):
    """Verify credentials and issue an access token plus refresh cookie.

    Raises:
        401: invalid credentials (reports remaining attempts when few are left)
        423: account locked, with Retry-After for temporary locks
        429: IP rate limit exceeded for auth/login
    """
    runtime = get_runtime()
    user, issued = await runtime.gateway.login(body.email, body.password, client)
    _set_refresh_cookie(response, issued.refresh_token)
    return _ok(_auth_payload(user, issued))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(
    response: Response,
    body: Optional[TokenRefreshRequest] = Body(default=None),
    refresh_cookie: Optional[str] = Cookie(default=None, alias=REFRESH_COOKIE),
    client: ClientContext = Depends(get_client),
):
    runtime = get_runtime()
    token = refresh_cookie or (body.refresh_token if body else None)
    result = await runtime.gateway.refresh(token, client)
    if result is None:
        # Refusals never leave a stale cookie behind
        exc = _http_error("unauthorized", "invalid refresh token", status_code=401)
        exc.headers = {
            "set-cookie": _expired_cookie_header(),
        }
        raise exc
    return _ok(
        RefreshResponse(
            access_token=result.access_token,
            session_id=result.session_id,
            expires_in=result.expires_in,
        )
    )


def _expired_cookie_header() -> str:
    scratch = Response()
    _clear_refresh_cookie(scratch)
    return scratch.headers["set-cookie"]


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    response: Response,
    principal: Principal = Depends(get_user),
    client: ClientContext = Depends(get_client),
):
    runtime = get_runtime()
    removed = await runtime.gateway.logout(principal, client)
    _clear_refresh_cookie(response)
    return _ok({"sessions_revoked": removed})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(
    response: Response,
    principal: Principal = Depends(get_user),
    client: ClientContext = Depends(get_client),
):
    runtime = get_runtime()
    removed = await runtime.gateway.logout(principal, client, all_devices=True)
    _clear_refresh_cookie(response)
    return _ok({"sessions_revoked": removed})


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(principal: Principal = Depends(get_user)):
    runtime = get_runtime()
    sessions = await runtime.sessions.list_user_sessions(principal.user_id)
    return _ok([_session_view(s, principal.session_id) for s in sessions])


@router.delete("/auth/sessions/{session_id}", response_model=Envelope, tags=["auth"])
async def revoke_own_session(
    session_id: str,
    response: Response,
    principal: Principal = Depends(get_user),
):
    runtime = get_runtime()
    session = await runtime.sessions.get_session_details(session_id)
    # Someone else's session looks exactly like a missing one
    if not session or session.user_id != principal.user_id:
        raise _http_error("not_found", "session not found", status_code=404)
    await runtime.sessions.revoke_session(session_id, actor_id=principal.user_id)
    if session_id == principal.session_id:
        _clear_refresh_cookie(response)
    return _ok({"revoked": True, "session_id": session_id})


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    response: Response,
    principal: Principal = Depends(get_user),
    client: ClientContext = Depends(get_client),
):
    """Change the password and revoke every token and session of the account."""
    runtime = get_runtime()
    await runtime.gateway.change_password(
        principal, body.current_password, body.new_password, client
    )
    _clear_refresh_cookie(response)
    return _ok({"password_changed": True})


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(principal: Principal = Depends(get_user)):
    return _ok(
        UserView(
            id=principal.user_id,
            email=principal.email,
            role=principal.role,
            session_id=principal.session_id,
        )
    )


# Admin security surface


@router.get("/admin/security/lockouts", response_model=Envelope, tags=["admin"])
async def list_locked_accounts(principal: Principal = Depends(get_admin_user)):
    runtime = get_runtime()
    records = await runtime.lockout.get_all_locked_accounts()
    return _ok(
        [
            LockoutRecordView(
                identifier=r.identifier,
                failed_attempts=r.failed_attempts,
                locked_until=r.locked_until,
                is_permanently_locked=r.is_permanently_locked,
                lock_reason=r.lock_reason,
                last_failure_at=r.last_failure_at,
            )
            for r in records
        ]
    )


@router.get("/admin/security/lockouts/config", response_model=Envelope, tags=["admin"])
async def lockout_config(principal: Principal = Depends(get_admin_user)):
    return _ok(get_runtime().lockout.get_lockout_config())


@router.get("/admin/security/lockouts/{email}", response_model=Envelope, tags=["admin"])
async def lockout_status(email: str, principal: Principal = Depends(get_admin_user)):
    status = await get_runtime().lockout.get_lockout_status(email)
    return _ok(
        LockoutStatusView(
            is_locked=status.is_locked,
            remaining_attempts=status.remaining_attempts,
            total_failed_attempts=status.total_failed_attempts,
            lockout_until=status.lockout_until,
            is_permanent=status.is_permanent,
            lock_reason=status.lock_reason,
        )
    )


@router.post("/admin/security/lockouts/lock", response_model=Envelope, tags=["admin"])
async def lock_account(body: LockAccountRequest, principal: Principal = Depends(get_admin_user)):
    if body.email == principal.email:
        raise _http_error("validation_error", "admins cannot lock their own account", status_code=400)
    record = await get_runtime().lockout.lock_account(
        body.email, body.reason, actor_id=principal.user_id
    )
    return _ok({"email": record.identifier, "locked_until": record.locked_until, "permanent": True})


@router.post("/admin/security/lockouts/unlock", response_model=Envelope, tags=["admin"])
async def unlock_account(body: UnlockAccountRequest, principal: Principal = Depends(get_admin_user)):
    await get_runtime().lockout.unlock_account(body.email, actor_id=principal.user_id)
    return _ok({"email": body.email, "unlocked": True})


@router.delete("/admin/security/lockouts/{identifier}", response_model=Envelope, tags=["admin"])
async def reset_lockout(identifier: str, principal: Principal = Depends(get_admin_user)):
    removed = await get_runtime().lockout.reset_lockout(identifier.strip().lower())
    return _ok({"identifier": identifier, "removed": removed})


@router.post("/admin/security/lockouts/cleanup", response_model=Envelope, tags=["admin"])
async def cleanup_lockouts(principal: Principal = Depends(get_admin_user)):
    removed = await get_runtime().lockout.clear_expired_lockouts()
    return _ok({"removed": removed})


@router.post("/admin/security/ip/block", response_model=Envelope, tags=["admin"])
async def block_ip(body: BlockIPRequest, principal: Principal = Depends(get_admin_user)):
    block_until = await get_runtime().rate_limiter.block_ip(
        body.ip_address,
        body.duration_minutes,
        body.reason,
        admin_user_id=principal.user_id,
    )
    return _ok({"ip_address": body.ip_address, "blocked_until": block_until})


@router.post("/admin/security/ip/unblock", response_model=Envelope, tags=["admin"])
async def unblock_ip(body: UnblockIPRequest, principal: Principal = Depends(get_admin_user)):
    cleared = await get_runtime().rate_limiter.unblock_ip(
        body.ip_address, admin_user_id=principal.user_id
    )
    return _ok({"ip_address": body.ip_address, "records_cleared": cleared})


@router.get("/admin/security/ip/stats", response_model=Envelope, tags=["admin"])
async def rate_limit_stats(principal: Principal = Depends(get_admin_user)):
    stats = await get_runtime().rate_limiter.get_rate_limit_stats()
    logger.info("rate_limit_stats_viewed", admin_user_id=principal.user_id)
    return _ok(stats)


@router.post("/admin/security/ip/cleanup", response_model=Envelope, tags=["admin"])
async def cleanup_rate_limits(principal: Principal = Depends(get_admin_user)):
    removed = await get_runtime().rate_limiter.cleanup_old_records()
    return _ok({"removed": removed})


@router.get("/admin/security/blacklist/stats", response_model=Envelope, tags=["admin"])
async def blacklist_stats(principal: Principal = Depends(get_admin_user)):
    return _ok(await get_runtime().registry.get_blacklist_stats())


@router.get("/admin/security/blacklist/users/{user_id}", response_model=Envelope, tags=["admin"])
async def user_blacklist(user_id: str, principal: Principal = Depends(get_admin_user)):
    entries = await get_runtime().registry.get_user_blacklisted_tokens(user_id)
    return _ok(
        [
            BlacklistEntryView(
                id=e.id, reason=e.reason, expires_at=e.expires_at, created_at=e.created_at
            )
            for e in entries
        ]
    )


@router.post("/admin/security/users/{user_id}/revoke-tokens", response_model=Envelope, tags=["admin"])
async def revoke_user_tokens(
    user_id: str,
    body: Optional[RevokeTokensRequest] = Body(default=None),
    principal: Principal = Depends(get_admin_user),
):
    reason = body.reason if body else "admin_revoke"
    version = await get_runtime().gateway.revoke_user_tokens(
        user_id, reason, actor_id=principal.user_id
    )
    return _ok({"user_id": user_id, "token_version": version, "reason": reason})


@router.get("/admin/security/sessions/{session_id}", response_model=Envelope, tags=["admin"])
async def session_details(session_id: str, principal: Principal = Depends(get_admin_user)):
    session = await get_runtime().sessions.get_session_details(session_id)
    if not session:
        raise _http_error("not_found", "session not found", status_code=404)
    view = _session_view(session)
    return _ok(
        AdminSessionView(
            **view.model_dump(), user_id=session.user_id, email=session.email, role=session.role
        )
    )


@router.get("/admin/security/events", response_model=Envelope, tags=["admin"])
async def security_events(
    user_id: Optional[str] = Query(default=None, max_length=64),
    event_type: Optional[str] = Query(default=None, max_length=64),
    since: Optional[datetime] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    principal: Principal = Depends(get_admin_user),
):
    if since is not None and since.tzinfo is None:
        since = since.replace(tzinfo=timezone.utc)
    events = await get_runtime().audit.list_events(
        user_id=user_id, event_type=event_type, since=since, limit=limit
    )
    return _ok(
        SecurityEventList(
            items=[
                SecurityEventView(
                    id=e.id,
                    event_type=e.event_type,
                    user_id=e.user_id,
                    ip_address=e.ip_address,
                    user_agent=e.user_agent,
                    device_id=e.device_id,
                    metadata=e.metadata or {},
                    created_at=e.created_at,
                )
                for e in events
            ]
        )
    )
