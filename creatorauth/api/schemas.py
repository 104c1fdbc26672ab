from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from creatorauth.service.blacklist import BLACKLIST_REASONS
from creatorauth.service.rate_limit import MAX_BLOCK_MINUTES

# Stable error codes carried by every error envelope
_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "account_locked",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC-normalize."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


class RegisterRequest(BaseModel):
    email: str
    password: str

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class TokenRefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=512)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class AuthResponse(BaseModel):
    user_id: str
    email: str
    role: str = "user"
    session_id: str
    access_token: str
    token_type: str = "bearer"
    expires_in: int


class RefreshResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    session_id: str
    expires_in: int


class SessionView(BaseModel):
    id: str
    device_id: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime
    last_activity: datetime
    current: bool = False


class AdminSessionView(SessionView):
    user_id: str
    email: str
    role: str


class UserView(BaseModel):
    id: str
    email: str
    role: str
    session_id: str


class LockAccountRequest(BaseModel):
    email: str
    reason: str = Field(default="Admin action", min_length=3, max_length=500)

    @field_validator("email")
    @classmethod
    def _validate_lock_email(cls, value: str) -> str:
        return _validate_email(value)


class UnlockAccountRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_unlock_email(cls, value: str) -> str:
        return _validate_email(value)


class LockoutStatusView(BaseModel):
    is_locked: bool
    remaining_attempts: int
    total_failed_attempts: int
    lockout_until: Optional[datetime] = None
    is_permanent: bool = False
    lock_reason: Optional[str] = None


class LockoutRecordView(BaseModel):
    identifier: str
    failed_attempts: int
    locked_until: Optional[datetime] = None
    is_permanently_locked: bool = False
    lock_reason: Optional[str] = None
    last_failure_at: datetime


class BlockIPRequest(BaseModel):
    ip_address: str = Field(..., max_length=64)
    duration_minutes: int = Field(..., ge=1, le=MAX_BLOCK_MINUTES)
    reason: str = Field(..., min_length=3, max_length=500)


class UnblockIPRequest(BaseModel):
    ip_address: str = Field(..., max_length=64)


class RevokeTokensRequest(BaseModel):
    reason: str = "admin_revoke"

    @field_validator("reason")
    @classmethod
    def _validate_reason(cls, value: str) -> str:
        if value not in BLACKLIST_REASONS:
            raise ValueError(f"reason must be one of: {', '.join(sorted(BLACKLIST_REASONS))}")
        return value


class BlacklistEntryView(BaseModel):
    id: str
    reason: str
    expires_at: datetime
    created_at: datetime


class SecurityEventView(BaseModel):
    id: str
    event_type: str
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class SecurityEventList(BaseModel):
    items: List[SecurityEventView]
