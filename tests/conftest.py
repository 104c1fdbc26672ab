import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Environment must be in place before anything reads settings
_test_tmp_dir = tempfile.mkdtemp(prefix="creatorauth_test_")
os.environ.setdefault("SECRETS_DIR", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Tests run without Redis; components fall back to process-local locks
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from creatorauth.config import Settings  # noqa: E402
from creatorauth.service.runtime import Runtime, reset_runtime_for_tests  # noqa: E402
from creatorauth.storage.memory import MemoryStore  # noqa: E402


class FakeClock:
    """Mutable clock handed to components as their ``now`` callable."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta) -> datetime:
        self.current = self.current + timedelta(**delta)
        return self.current


def make_settings(**overrides) -> Settings:
    values = {
        "jwt_secret": "unit-test-secret-" + "x" * 32,
        "test_mode": True,
        "use_memory_store": True,
        "redis_url": None,
    }
    values.update(overrides)
    return Settings(**values)


class YieldingStore(MemoryStore):
    """Memory store that suspends before each read and write.

    Lets interleaved coroutines observe stale reads the way a networked store
    would, so unguarded read-modify-write sequences lose updates.
    """

    async def select(self, table, filters=None, *, order_by=None, limit=None):
        await asyncio.sleep(0)
        rows = await super().select(table, filters, order_by=order_by, limit=limit)
        await asyncio.sleep(0)
        return rows

    async def insert(self, table, row):
        await asyncio.sleep(0)
        return await super().insert(table, row)

    async def update(self, table, filters, patch):
        await asyncio.sleep(0)
        return await super().update(table, filters, patch)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings_factory():
    return make_settings


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def runtime(settings, clock):
    """Isolated runtime on a memory store driven by the fake clock."""
    return Runtime(settings, store=MemoryStore(), now=clock)


@pytest.fixture
def yielding_runtime(settings, clock):
    return Runtime(settings, store=YieldingStore(), now=clock)


@pytest.fixture
def make_runtime(clock):
    def _factory(**overrides):
        return Runtime(make_settings(**overrides), store=MemoryStore(), now=clock)

    return _factory


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
