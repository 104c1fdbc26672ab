"""Per-operation failure policies.

Every security operation that touches infrastructure declares how it behaves
when the store or cache is unavailable:

- ``FailurePolicy.OPEN``: log at error severity and return a fallback that
  lets the request proceed (defense-in-depth checks).
- ``FailurePolicy.CLOSED``: log and raise ``ServerError`` so the caller sees a
  failure (primary state transitions and identity checks).

Only infrastructure errors are subject to the policy. Validation errors,
security denials and missing rows always propagate unchanged.
"""

from __future__ import annotations

import asyncio
import functools
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from redis.exceptions import RedisError

from creatorauth.logging import get_logger
from creatorauth.service.errors import ServerError
from creatorauth.storage.errors import StoreUnavailable

logger = get_logger(__name__)

INFRASTRUCTURE_ERRORS = (
    StoreUnavailable,
    RedisError,
    asyncio.TimeoutError,
    ConnectionError,
)


class FailurePolicy(str, Enum):
    OPEN = "fail_open"
    CLOSED = "fail_closed"


@dataclass(frozen=True)
class PolicyRecord:
    operation: str
    policy: FailurePolicy
    reason: str


_REGISTRY: Dict[str, PolicyRecord] = {}


def failure_policy(
    policy: FailurePolicy,
    *,
    reason: str,
    fallback: Optional[Callable[..., Any]] = None,
):
    """Declare the failure policy of an async service method.

    ``fallback`` is called with the same arguments as the wrapped method and
    must return the fail-open result; it is required for ``OPEN``.
    """
    if policy is FailurePolicy.OPEN and fallback is None:
        raise ValueError("fail-open operations need a fallback")

    def decorator(func):
        operation = func.__qualname__
        _REGISTRY[operation] = PolicyRecord(operation, policy, reason)

        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except INFRASTRUCTURE_ERRORS as exc:
                logger.error(
                    "security_check_infrastructure_failure",
                    operation=operation,
                    policy=policy.value,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                if policy is FailurePolicy.OPEN:
                    return fallback(*args, **kwargs)
                raise ServerError(
                    "security service temporarily unavailable",
                    detail={"operation": operation.rsplit(".", 1)[-1]},
                ) from exc

        wrapper.__failure_policy__ = _REGISTRY[operation]
        return wrapper

    return decorator


def describe_policies() -> Dict[str, Dict[str, str]]:
    """Snapshot of every registered operation and its failure policy."""
    return {
        name: {"policy": record.policy.value, "reason": record.reason}
        for name, record in sorted(_REGISTRY.items())
    }
