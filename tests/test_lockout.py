"""Tests for the sliding-window lockout counter and admin account locks."""

from datetime import timedelta

import pytest

from creatorauth.service.errors import NotFoundError, ValidationError
from creatorauth.service.lockout import PERMANENT_LOCK_ATTEMPTS

IDENTIFIER = "alice@example.com"


async def _fail(runtime, times, identifier=IDENTIFIER):
    status = None
    for _ in range(times):
        status = await runtime.lockout.record_failed_attempt(identifier)
    return status


class TestFailedAttempts:
    async def test_counts_down_remaining_attempts(self, runtime):
        status = await _fail(runtime, 1)
        assert not status.is_locked
        assert status.remaining_attempts == 4
        assert status.total_failed_attempts == 1

        status = await _fail(runtime, 3)
        assert status.remaining_attempts == 1
        assert status.total_failed_attempts == 4

    async def test_locks_at_max_attempts(self, runtime, clock):
        status = await _fail(runtime, 5)

        assert status.is_locked
        assert status.remaining_attempts == 0
        assert status.lockout_until == clock() + timedelta(minutes=15)
        assert status.retry_after(clock()) == 15 * 60

        checked = await runtime.lockout.check_lockout_status(IDENTIFIER)
        assert checked.is_locked
        assert checked.remaining_attempts == 0

    async def test_failures_while_locked_do_not_extend(self, runtime, clock):
        for _ in range(5):
            clock.advance(minutes=2)
            await runtime.lockout.record_failed_attempt(IDENTIFIER)
        locked_until = clock() + timedelta(minutes=15)

        clock.advance(minutes=10)
        status = await runtime.lockout.record_failed_attempt(IDENTIFIER)

        assert status.is_locked
        assert status.total_failed_attempts == 5
        assert status.lockout_until == locked_until

    async def test_failure_after_lock_elapses_counts_from_one(self, runtime, clock):
        await _fail(runtime, 5)
        clock.advance(minutes=16)

        assert not (await runtime.lockout.check_lockout_status(IDENTIFIER)).is_locked

        status = await runtime.lockout.record_failed_attempt(IDENTIFIER)

        assert not status.is_locked
        assert status.total_failed_attempts == 1
        assert status.remaining_attempts == 4

    async def test_reset_window_restarts_count(self, runtime, clock):
        await _fail(runtime, 4)
        clock.advance(minutes=61)

        status = await runtime.lockout.record_failed_attempt(IDENTIFIER)

        assert status.total_failed_attempts == 1
        assert not status.is_locked

    async def test_window_is_measured_from_first_failure(self, runtime, clock):
        await _fail(runtime, 1)
        for _ in range(3):
            clock.advance(minutes=20)
            await runtime.lockout.record_failed_attempt(IDENTIFIER)
        # 60 minutes after the first failure: still the same window
        status = await runtime.lockout.record_failed_attempt(IDENTIFIER)
        assert status.is_locked

    async def test_check_clears_record_after_reset_window(self, runtime, clock):
        await _fail(runtime, 3)
        clock.advance(minutes=61)

        status = await runtime.lockout.check_lockout_status(IDENTIFIER)

        assert not status.is_locked
        assert status.remaining_attempts == 5
        assert await runtime.store.count("account_lockouts") == 0

    async def test_identifiers_are_independent(self, runtime):
        await _fail(runtime, 5)
        status = await runtime.lockout.check_lockout_status("bob@example.com")
        assert not status.is_locked
        assert status.remaining_attempts == 5

    async def test_lockout_event_recorded(self, runtime):
        await _fail(runtime, 5)
        events = await runtime.audit.list_events(event_type="lockout_triggered")
        assert len(events) == 1
        assert events[0].metadata["identifier"] == IDENTIFIER

    async def test_custom_thresholds(self, make_runtime):
        runtime = make_runtime(max_login_attempts=2, lockout_duration_minutes=1)
        status = await _fail(runtime, 2)
        assert status.is_locked
        assert runtime.lockout.get_lockout_config() == {
            "max_attempts": 2,
            "lockout_duration_minutes": 1,
            "reset_window_minutes": 60,
        }


class TestResetAndSweep:
    async def test_reset_lockout_deletes_record(self, runtime):
        await _fail(runtime, 5)
        assert await runtime.lockout.reset_lockout(IDENTIFIER) == 1
        assert not (await runtime.lockout.check_lockout_status(IDENTIFIER)).is_locked

    async def test_reset_lockout_is_audited_only_when_removed(self, runtime):
        assert await runtime.lockout.reset_lockout(IDENTIFIER) == 0
        assert await runtime.audit.list_events(event_type="lockout_reset") == []

        await _fail(runtime, 2)
        await runtime.lockout.reset_lockout(IDENTIFIER)

        events = await runtime.audit.list_events(event_type="lockout_reset")
        assert [e.metadata["identifier"] for e in events] == [IDENTIFIER]

    async def test_clear_expired_requires_both_windows(self, runtime, clock):
        await _fail(runtime, 2, "stale@example.com")
        await _fail(runtime, 5, "locked@example.com")
        clock.advance(minutes=61)
        await _fail(runtime, 1, "fresh@example.com")

        removed = await runtime.lockout.clear_expired_lockouts()

        assert removed == 2
        remaining = await runtime.store.select("account_lockouts")
        assert [row["identifier"] for row in remaining] == ["fresh@example.com"]

    async def test_clear_expired_keeps_long_running_lock(self, make_runtime, clock):
        runtime = make_runtime(lockout_duration_minutes=120)
        await _fail(runtime, 5)
        clock.advance(minutes=61)

        assert await runtime.lockout.clear_expired_lockouts() == 0


class TestAdminLocks:
    async def test_lock_account_is_permanent_and_cascades(self, runtime, clock):
        user = await runtime.credentials.register(IDENTIFIER, "correct-horse-battery")
        issued = await runtime.sessions.create_or_update_session(
            user.id, user.email, user.role, "device-a", None, None
        )
        claims = runtime.codec.verify(issued.access_token)
        clock.advance(seconds=1)

        record = await runtime.lockout.lock_account(
            "Alice@Example.com", "fraud review", actor_id="admin-1"
        )

        assert record.is_permanently_locked
        assert record.failed_attempts == PERMANENT_LOCK_ATTEMPTS
        assert record.lock_reason == "fraud review"
        assert await runtime.sessions.list_user_sessions(user.id) == []
        assert await runtime.sessions.refresh_session(issued.refresh_token, "device-a") is None
        assert not await runtime.registry.is_user_token_version_valid(user.id, claims.iat)
        events = await runtime.audit.list_events(event_type="account_locked")
        assert events[0].metadata["locked_by"] == "admin-1"

    async def test_permanent_lock_survives_sliding_window(self, runtime, clock):
        await runtime.lockout.lock_account(IDENTIFIER, "abuse")
        clock.advance(days=3)

        status = await runtime.lockout.check_lockout_status(IDENTIFIER)
        assert status.is_locked
        assert status.is_permanent
        assert status.retry_after(clock()) is None
        assert await runtime.lockout.clear_expired_lockouts() == 0

        after_failure = await runtime.lockout.record_failed_attempt(IDENTIFIER)
        assert after_failure.is_permanent

    async def test_lock_replaces_sliding_window_record(self, runtime):
        await _fail(runtime, 2)
        await runtime.lockout.lock_account(IDENTIFIER, "manual")
        assert await runtime.store.count("account_lockouts") == 1

    async def test_lock_reason_must_be_meaningful(self, runtime):
        with pytest.raises(ValidationError):
            await runtime.lockout.lock_account(IDENTIFIER, " x ")

    async def test_lock_without_user_still_locks(self, runtime):
        await runtime.lockout.lock_account("ghost@example.com", "pre-emptive")
        status = await runtime.lockout.get_lockout_status("ghost@example.com")
        assert status.is_locked

    async def test_unlock_account(self, runtime):
        await runtime.lockout.lock_account(IDENTIFIER, "abuse")

        await runtime.lockout.unlock_account(IDENTIFIER, actor_id="admin-1")

        status = await runtime.lockout.get_lockout_status(IDENTIFIER)
        assert not status.is_locked
        assert status.remaining_attempts == 5
        assert len(await runtime.audit.list_events(event_type="account_unlocked")) == 1

    async def test_unlock_without_lock_is_not_found(self, runtime):
        with pytest.raises(NotFoundError):
            await runtime.lockout.unlock_account(IDENTIFIER)

    async def test_get_lockout_status_reports_reason(self, runtime):
        await runtime.lockout.lock_account(IDENTIFIER, "chargeback")
        status = await runtime.lockout.get_lockout_status(IDENTIFIER)
        assert status.lock_reason == "chargeback"
        assert status.is_permanent

    async def test_list_locked_accounts(self, runtime, clock):
        await _fail(runtime, 5, "temp@example.com")
        clock.advance(minutes=1)
        await runtime.lockout.lock_account("perm@example.com", "abuse")
        await _fail(runtime, 2, "counting@example.com")

        locked = await runtime.lockout.get_all_locked_accounts()
        assert [r.identifier for r in locked] == ["perm@example.com", "temp@example.com"]

        clock.advance(minutes=20)
        locked = await runtime.lockout.get_all_locked_accounts()
        assert [r.identifier for r in locked] == ["perm@example.com"]
