from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Tuple

from creatorauth.logging import get_logger
from creatorauth.service.audit import SecurityEventLog
from creatorauth.service.blacklist import TokenRevocationRegistry
from creatorauth.service.lockout import AccountLockoutTracker
from creatorauth.service.rate_limit import IPRateLimiter
from creatorauth.service.sessions import SessionManager

logger = get_logger(__name__)

# Floor for the loop interval so a misconfiguration cannot hammer the store
MIN_INTERVAL_SECONDS = 60


class MaintenanceJobs:
    """Periodic cleanup of expired security state, independent of traffic."""

    def __init__(
        self,
        *,
        registry: TokenRevocationRegistry,
        lockout: AccountLockoutTracker,
        rate_limiter: IPRateLimiter,
        sessions: SessionManager,
        audit: SecurityEventLog,
        security_event_retention_days: int,
    ) -> None:
        self.jobs: List[Tuple[str, Callable[[], Awaitable[Any]]]] = [
            ("blacklisted_tokens", registry.cleanup_expired_tokens),
            ("account_lockouts", lockout.clear_expired_lockouts),
            ("ip_rate_limits", rate_limiter.cleanup_old_records),
            ("sessions", sessions.cleanup_expired_sessions),
            ("security_events", lambda: audit.prune(security_event_retention_days)),
        ]

    async def run_once(self) -> Dict[str, Any]:
        """Run every job; a failing job is logged and does not stop the rest."""
        results: Dict[str, Any] = {}
        for name, job in self.jobs:
            try:
                results[name] = await job()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(
                    "maintenance_job_failed",
                    job=name,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                results[name] = None
        logger.info("maintenance_run_complete", results=results)
        return results

    async def run_forever(self, interval_seconds: int) -> None:
        interval = max(interval_seconds, MIN_INTERVAL_SECONDS)
        try:
            while True:
                await self.run_once()
                await asyncio.sleep(interval)
        except asyncio.CancelledError:
            logger.info("maintenance_task_cancelled")
