from __future__ import annotations

from datetime import datetime
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code used in the error envelope:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - account_locked (423)
    - rate_limited (429)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class InvalidTokenError(ValidationError):
    """Token is malformed or lacks a required claim (400)."""


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidSignatureError(AuthenticationError):
    """Token signature or header did not verify (401)."""


class TokenExpiredError(AuthenticationError):
    """Token expiry has passed (401)."""


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class AccountLockedError(ServiceError):
    """Account is temporarily or permanently locked (423)."""
    status_code = 423
    error_code = "account_locked"

    def __init__(
        self,
        message: str,
        *,
        locked_until: Optional[datetime] = None,
        retry_after: Optional[int] = None,
        permanent: bool = False,
    ) -> None:
        detail: dict = {"permanent": permanent}
        if retry_after is not None and not permanent:
            detail["retry_after"] = retry_after
        super().__init__(message, detail=detail)
        self.locked_until = locked_until
        self.retry_after = retry_after
        self.permanent = permanent


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str = "rate limit exceeded",
        *,
        retry_after: Optional[int] = None,
        detail: Optional[dict] = None,
    ) -> None:
        payload = dict(detail or {})
        if retry_after is not None:
            payload.setdefault("retry_after", retry_after)
        super().__init__(message, detail=payload)
        self.retry_after = retry_after


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidTokenError",
    "AuthenticationError",
    "InvalidSignatureError",
    "TokenExpiredError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "AccountLockedError",
    "RateLimitedError",
    "ServerError",
]
