"""Tests for settings parsing, keyed locks, the Redis wrapper and maintenance."""

import asyncio
import hashlib
from unittest.mock import AsyncMock, MagicMock

import pytest
from pydantic import ValidationError
from redis.exceptions import ConnectionError as RedisConnectionError

from creatorauth.config import FingerprintMismatchPolicy, Settings
from creatorauth.logging import _redact_pii
from creatorauth.service.locks import KeyedLock
from creatorauth.service.runtime import Runtime, _mask_url_password
from creatorauth.storage.redis_cache import RedisCache


class TestSettings:
    def test_env_parsing(self, monkeypatch):
        monkeypatch.setenv("MAX_LOGIN_ATTEMPTS", "7")
        monkeypatch.setenv("FINGERPRINT_MISMATCH_POLICY", "warn")
        monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example,")
        monkeypatch.setenv("RATE_LIMIT_RULES", '{"auth/login": {"max_requests": 9}}')
        monkeypatch.setenv("APP_ENV", "Production")

        settings = Settings.from_env()

        assert settings.max_login_attempts == 7
        assert settings.fingerprint_mismatch_policy is FingerprintMismatchPolicy.WARN
        assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]
        assert settings.rate_limit_rules == {"auth/login": {"max_requests": 9}}
        assert settings.is_production

    def test_defaults(self, settings):
        assert settings.max_sessions_per_user == 5
        assert settings.lockout_duration_minutes == 15
        assert settings.reset_window_minutes == 60
        assert settings.access_token_ttl_minutes == 15
        assert settings.refresh_token_ttl_days == 30
        assert not settings.is_production

    @pytest.mark.parametrize(
        "field", ["max_login_attempts", "max_sessions_per_user", "refresh_token_ttl_days"]
    )
    def test_rejects_non_positive_limits(self, settings_factory, field):
        with pytest.raises(ValidationError):
            settings_factory(**{field: 0})

    def test_rejects_malformed_rate_limit_rules(self, settings_factory):
        with pytest.raises(ValidationError):
            settings_factory(rate_limit_rules="{not json")
        with pytest.raises(ValidationError):
            settings_factory(rate_limit_rules="[1, 2]")

    def test_generated_jwt_secret_is_persisted(self, monkeypatch, tmp_path):
        monkeypatch.setenv("SECRETS_DIR", str(tmp_path))
        first = Settings(jwt_secret=None)
        second = Settings(jwt_secret="")
        assert len(first.jwt_secret) >= 32
        assert first.jwt_secret == second.jwt_secret
        assert (tmp_path / ".jwt_secret").read_text() == first.jwt_secret

    def test_mask_url_password(self):
        assert _mask_url_password("redis://:hunter2@cache:6379/0") == "redis://:***@cache:6379/0"
        assert _mask_url_password("redis://cache:6379") == "redis://cache:6379"
        assert _mask_url_password(None) is None

    def test_log_redaction(self):
        event = _redact_pii(
            None,
            "info",
            {"email": "alice@example.com", "token_hash": "abcdef123456", "password": "hunter22"},
        )
        assert event["email"] == "al***om"
        assert event["token_hash"] == "abcdef123456"
        assert event["password"] == "hu***22"


class TestKeyedLock:
    async def test_serialises_same_key(self):
        locks = KeyedLock()
        order = []

        async def worker(name):
            async with locks.hold("ip:1"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))

        assert order in (
            ["a-in", "a-out", "b-in", "b-out"],
            ["b-in", "b-out", "a-in", "a-out"],
        )
        assert locks.active_keys() == 0

    async def test_lock_released_on_error(self):
        locks = KeyedLock()
        with pytest.raises(RuntimeError):
            async with locks.hold("k"):
                raise RuntimeError("boom")
        assert locks.active_keys() == 0

    async def test_takes_and_releases_remote_lock(self):
        cache = AsyncMock()
        cache.acquire_lock.return_value = "owner-token"
        locks = KeyedLock(cache, ttl_ms=1234)

        async with locks.hold("lockout:alice"):
            cache.acquire_lock.assert_awaited_once_with("lockout:alice", 1234)

        cache.release_lock.assert_awaited_once_with("lockout:alice", "owner-token")

    async def test_remote_timeout_still_runs_locally(self):
        cache = AsyncMock()
        cache.acquire_lock.return_value = None
        locks = KeyedLock(cache, acquire_timeout=0.03, retry_interval=0.01)
        ran = False

        async with locks.hold("k"):
            ran = True

        assert ran
        assert cache.acquire_lock.await_count >= 2
        cache.release_lock.assert_not_awaited()

    async def test_redis_errors_degrade_to_local_lock(self):
        cache = AsyncMock()
        cache.acquire_lock.side_effect = RedisConnectionError("down")
        locks = KeyedLock(cache)

        async with locks.hold("k"):
            pass

        cache.release_lock.assert_not_awaited()
        assert locks.active_keys() == 0


class TestRedisCache:
    @pytest.fixture
    def cache(self):
        cache = RedisCache("redis://localhost:6379/0")
        cache.client = AsyncMock()
        return cache

    async def test_acquire_lock_uses_set_nx(self, cache):
        cache.client.set.return_value = True

        token = await cache.acquire_lock("ip:1", 500)

        assert token and len(token) == 32
        key = "lock:" + hashlib.sha256(b"ip:1").hexdigest()
        cache.client.set.assert_awaited_once_with(key, token, nx=True, px=500)

    async def test_acquire_lock_contended(self, cache):
        cache.client.set.return_value = None
        assert await cache.acquire_lock("ip:1", 500) is None

    async def test_release_lock_runs_owner_check_script(self, cache):
        cache._release_lock = AsyncMock(return_value=1)
        assert await cache.release_lock("ip:1", "tok")
        cache._release_lock.assert_awaited_once()

    async def test_revocation_hints(self, cache):
        cache.client.exists.return_value = 1

        await cache.mark_token_revoked("abc", 60)
        await cache.mark_token_revoked("abc", 0)

        cache.client.set.assert_awaited_once_with("auth:revoked:abc", "1", ex=60)
        assert await cache.is_token_revoked("abc")


class TestMaintenance:
    async def test_failing_job_does_not_stop_the_rest(self, runtime):
        failing = AsyncMock(side_effect=RuntimeError("store hiccup"))
        runtime.maintenance.jobs.insert(0, ("broken", failing))

        results = await runtime.maintenance.run_once()

        assert results["broken"] is None
        assert results["blacklisted_tokens"] == 0
        assert results["account_lockouts"] == 0
        assert results["security_events"] == 0

    async def test_run_once_clears_expired_state(self, runtime, clock):
        for _ in range(5):
            await runtime.lockout.record_failed_attempt("alice@example.com")
        clock.advance(minutes=61)

        results = await runtime.maintenance.run_once()

        assert results["account_lockouts"] == 1

    async def test_run_forever_stops_on_cancel(self, runtime):
        runtime.maintenance.run_once = AsyncMock(return_value={})
        task = asyncio.create_task(runtime.maintenance.run_forever(1))
        await asyncio.sleep(0.01)

        task.cancel()
        await task

        runtime.maintenance.run_once.assert_awaited_once()

    def test_jobs_cover_every_table(self, runtime):
        names = [name for name, _ in runtime.maintenance.jobs]
        assert names == [
            "blacklisted_tokens",
            "account_lockouts",
            "ip_rate_limits",
            "sessions",
            "security_events",
        ]


def test_runtime_requires_redis_outside_test_mode(settings_factory):
    settings = settings_factory(test_mode=False, allow_redis_fallback_dev=False)
    with pytest.raises(RuntimeError):
        Runtime(settings, store=MagicMock())
