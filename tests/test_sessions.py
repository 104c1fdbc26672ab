"""Tests for per-device sessions, refresh tokens and the session cap."""

from creatorauth.service.runtime import Runtime
from creatorauth.service.sessions import device_fingerprint
from creatorauth.service.tokens import hash_token
from creatorauth.storage.memory import MemoryStore


async def _issue(runtime, device_id="device-a", user_id="user-1"):
    return await runtime.sessions.create_or_update_session(
        user_id, "alice@example.com", "user", device_id, "203.0.113.7", "pytest-agent"
    )


async def _events(runtime, event_type):
    return await runtime.audit.list_events(event_type=event_type)


class TestDeviceFingerprint:
    def test_is_16_hex_chars(self):
        fp = device_fingerprint("Mozilla/5.0", "en-US", "gzip")
        assert len(fp) == 16
        int(fp, 16)

    def test_depends_on_every_header(self):
        base = device_fingerprint("Mozilla/5.0", "en-US", "gzip")
        assert base == device_fingerprint("Mozilla/5.0", "en-US", "gzip")
        assert base != device_fingerprint("Mozilla/5.0", "de-DE", "gzip")
        assert base != device_fingerprint("curl/8.0", "en-US", "gzip")
        assert base != device_fingerprint("Mozilla/5.0", "en-US", "br")

    def test_missing_headers_are_tolerated(self):
        assert device_fingerprint(None, None, None) == device_fingerprint("", "", "")


class TestSessionCreation:
    async def test_issues_access_and_refresh_tokens(self, runtime):
        issued = await _issue(runtime)

        claims = runtime.codec.verify(issued.access_token)
        assert claims.sub == "user-1"
        assert claims.session_id == issued.session_id
        assert issued.expires_in == 15 * 60
        assert len(issued.refresh_token) == 128

    async def test_refresh_token_is_stored_hashed(self, runtime):
        issued = await _issue(runtime)

        rows = await runtime.store.select("refresh_tokens", {"user_id": "user-1"})
        assert len(rows) == 1
        assert rows[0]["token_hash"] == hash_token(issued.refresh_token)
        assert issued.refresh_token not in rows[0].values()

    async def test_same_device_reuses_session_and_revokes_prior_token(self, runtime, clock):
        first = await _issue(runtime)
        clock.advance(minutes=5)
        second = await _issue(runtime)

        assert second.session_id == first.session_id
        assert await runtime.store.count("user_sessions", {"user_id": "user-1"}) == 1
        active = await runtime.store.select(
            "refresh_tokens", {"user_id": "user-1", "is_revoked": False}
        )
        assert [row["token_hash"] for row in active] == [hash_token(second.refresh_token)]
        assert await runtime.sessions.refresh_session(first.refresh_token, "device-a") is None

    async def test_session_cap_evicts_least_recently_active(self, runtime, clock):
        issued = {}
        for index in range(6):
            clock.advance(minutes=1)
            issued[index] = await _issue(runtime, device_id=f"device-{index}")

        sessions = await runtime.sessions.list_user_sessions("user-1")
        assert len(sessions) == 5
        assert "device-0" not in {s.device_id for s in sessions}
        assert await runtime.sessions.refresh_session(issued[0].refresh_token, "device-0") is None
        assert await runtime.sessions.refresh_session(issued[5].refresh_token, "device-5")

    async def test_cap_respects_recent_activity(self, runtime, clock):
        issued = {}
        for index in range(5):
            clock.advance(minutes=1)
            issued[index] = await _issue(runtime, device_id=f"device-{index}")
        # device-0 becomes the most recently active
        clock.advance(minutes=1)
        await runtime.sessions.refresh_session(issued[0].refresh_token, "device-0")
        clock.advance(minutes=1)
        await _issue(runtime, device_id="device-new")

        devices = {s.device_id for s in await runtime.sessions.list_user_sessions("user-1")}
        assert "device-0" in devices
        assert "device-1" not in devices

    async def test_session_created_event(self, runtime):
        issued = await _issue(runtime)
        events = await _events(runtime, "session_created")
        assert events[0].metadata["session_id"] == issued.session_id
        assert events[0].device_id == "device-a"


class TestRefresh:
    async def test_refresh_mints_new_access_token(self, runtime, clock):
        issued = await _issue(runtime)
        clock.advance(minutes=20)

        refreshed = await runtime.sessions.refresh_session(issued.refresh_token, "device-a")

        assert refreshed.session_id == issued.session_id
        assert refreshed.user_id == "user-1"
        claims = runtime.codec.verify(refreshed.access_token)
        assert claims.session_id == issued.session_id

    async def test_refresh_token_is_not_rotated(self, runtime):
        issued = await _issue(runtime)
        assert await runtime.sessions.refresh_session(issued.refresh_token, "device-a")
        assert await runtime.sessions.refresh_session(issued.refresh_token, "device-a")

    async def test_refresh_updates_last_activity(self, runtime, clock):
        issued = await _issue(runtime)
        later = clock.advance(hours=2)
        await runtime.sessions.refresh_session(issued.refresh_token, "device-a")
        session = await runtime.sessions.get_session_details(issued.session_id)
        assert session.last_activity == later

    async def test_unknown_token_refused(self, runtime):
        assert await runtime.sessions.refresh_session("f" * 128, "device-a") is None
        assert await runtime.sessions.refresh_session("", "device-a") is None

    async def test_expired_refresh_token_refused(self, runtime, clock):
        issued = await _issue(runtime)
        clock.advance(days=30, seconds=1)
        assert await runtime.sessions.refresh_session(issued.refresh_token, "device-a") is None

    async def test_refresh_without_session_refused(self, runtime):
        issued = await _issue(runtime)
        await runtime.store.delete("user_sessions", {"id": issued.session_id})
        assert await runtime.sessions.refresh_session(issued.refresh_token, "device-a") is None

    async def test_session_revoked_mid_refresh_is_refused(self, settings, clock):
        class LogoutRace(MemoryStore):
            async def update(self, table, filters, patch):
                if table == "user_sessions":
                    await self.delete("user_sessions", filters)
                return await super().update(table, filters, patch)

        runtime = Runtime(settings, store=LogoutRace(), now=clock)
        issued = await _issue(runtime)

        assert await runtime.sessions.refresh_session(issued.refresh_token, "device-a") is None
        assert await _events(runtime, "token_refreshed") == []

    async def test_device_mismatch_strict_revokes(self, runtime):
        issued = await _issue(runtime)

        assert await runtime.sessions.refresh_session(issued.refresh_token, "device-b") is None
        # Revoked for the legitimate device too
        assert await runtime.sessions.refresh_session(issued.refresh_token, "device-a") is None
        events = await _events(runtime, "device_fingerprint_mismatch")
        assert len(events) == 1
        assert events[0].metadata["expected_device"] == "device-a"

    async def test_device_mismatch_warn_allows(self, make_runtime):
        runtime = make_runtime(fingerprint_mismatch_policy="warn")
        issued = await _issue(runtime)

        refreshed = await runtime.sessions.refresh_session(issued.refresh_token, "device-b")

        assert refreshed is not None
        assert len(await _events(runtime, "device_fingerprint_mismatch")) == 1


class TestRevocation:
    async def test_revoke_session_only_touches_its_device(self, runtime):
        phone = await _issue(runtime, device_id="phone")
        laptop = await _issue(runtime, device_id="laptop")

        assert await runtime.sessions.revoke_session(phone.session_id, actor_id="user-1")

        assert await runtime.sessions.refresh_session(phone.refresh_token, "phone") is None
        assert await runtime.sessions.refresh_session(laptop.refresh_token, "laptop")
        assert await runtime.sessions.get_session_details(phone.session_id) is None

    async def test_revoke_unknown_session(self, runtime):
        assert await runtime.sessions.revoke_session("missing") is False

    async def test_revoke_all_user_sessions(self, runtime):
        a = await _issue(runtime, device_id="a")
        b = await _issue(runtime, device_id="b")
        other = await _issue(runtime, device_id="a", user_id="user-2")

        assert await runtime.sessions.revoke_all_user_sessions("user-1") == 2

        assert await runtime.sessions.refresh_session(a.refresh_token, "a") is None
        assert await runtime.sessions.refresh_session(b.refresh_token, "b") is None
        assert await runtime.sessions.refresh_session(other.refresh_token, "a")

    async def test_logout_single_device(self, runtime):
        await _issue(runtime, device_id="a")
        b = await _issue(runtime, device_id="b")

        assert await runtime.sessions.logout("user-1", "a") == 1

        remaining = await runtime.sessions.list_user_sessions("user-1")
        assert [s.device_id for s in remaining] == ["b"]
        assert await runtime.sessions.refresh_session(b.refresh_token, "b")
        assert len(await _events(runtime, "logout_single_device")) == 1

    async def test_logout_all_devices(self, runtime):
        await _issue(runtime, device_id="a")
        await _issue(runtime, device_id="b")

        assert await runtime.sessions.logout("user-1") == 2

        assert await runtime.sessions.list_user_sessions("user-1") == []
        events = await _events(runtime, "logout_all_devices")
        assert events[0].metadata["sessions"] == 2


class TestListingAndCleanup:
    async def test_list_orders_by_last_activity(self, runtime, clock):
        for device in ("a", "b", "c"):
            clock.advance(minutes=1)
            await _issue(runtime, device_id=device)

        sessions = await runtime.sessions.list_user_sessions("user-1")
        assert [s.device_id for s in sessions] == ["c", "b", "a"]

    async def test_cleanup_removes_expired_tokens_and_idle_sessions(self, runtime, clock):
        await _issue(runtime, device_id="old")
        clock.advance(days=31)
        fresh = await _issue(runtime, device_id="new")

        removed = await runtime.sessions.cleanup_expired_sessions()

        assert removed == {"refresh_tokens": 1, "sessions": 1}
        remaining = await runtime.sessions.list_user_sessions("user-1")
        assert [s.device_id for s in remaining] == ["new"]
        assert await runtime.sessions.refresh_session(fresh.refresh_token, "new")
