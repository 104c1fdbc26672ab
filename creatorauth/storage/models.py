from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Type, TypeVar

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def from_row(cls: Type[T], row: Dict[str, Any]) -> T:
    """Build a dataclass from a store row, ignoring columns it does not declare."""
    names = {f.name for f in fields(cls)}  # type: ignore[arg-type]
    return cls(**{k: v for k, v in row.items() if k in names})


def to_row(obj: Any) -> Dict[str, Any]:
    return asdict(obj)


@dataclass
class UserProfile:
    id: str
    email: str
    role: str = "user"
    password_hash: Optional[str] = None
    token_version: int = 0
    # Tokens issued before this instant are rejected (bulk revocation marker)
    tokens_revoked_at: Optional[datetime] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class UserSession:
    id: str
    user_id: str
    email: str
    role: str
    device_id: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_activity: datetime = field(default_factory=utcnow)


@dataclass
class RefreshToken:
    id: str
    token_hash: str
    user_id: str
    device_id: str
    expires_at: datetime
    session_id: Optional[str] = None
    is_revoked: bool = False
    revoked_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class BlacklistedToken:
    id: str
    token_hash: str
    user_id: str
    expires_at: datetime
    reason: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class AccountLockout:
    id: str
    identifier: str
    failed_attempts: int
    first_failure_at: datetime
    last_failure_at: datetime
    locked_until: Optional[datetime] = None
    is_permanently_locked: bool = False
    lock_reason: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class IPRateLimitRecord:
    id: str
    ip_address: str
    endpoint: str
    request_count: int
    window_start: datetime
    blocked_until: Optional[datetime] = None
    first_request: datetime = field(default_factory=utcnow)
    last_request: datetime = field(default_factory=utcnow)
    user_agent: Optional[str] = None
    user_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class SecurityEvent:
    id: str
    event_type: str
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_id: Optional[str] = None
    metadata: Dict | None = None
    created_at: datetime = field(default_factory=utcnow)
