import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Environment must be in place before any import that builds the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("HMAC_SECRET", "test-hmac-secret-for-testing-only-do-not-use-in-production")
os.environ.setdefault("COOKIE_SECURE", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from authedge.config import Settings  # noqa: E402
from authedge.service.crypto import TokenHasher  # noqa: E402
from authedge.service.runtime import reset_runtime_for_tests  # noqa: E402
from authedge.service.sessions import SessionService  # noqa: E402
from authedge.storage.memory import MemoryCache  # noqa: E402
from authedge.storage.sessions import SessionStore  # noqa: E402


class FrozenClock:
    """Manually advanced UTC clock shared by the memory store and the services."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.now = self.now + timedelta(seconds=seconds, **kwargs)
        return self.now


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def make_settings():
    def _make(**overrides) -> Settings:
        values = {"test_mode": True, "hmac_secret": "unit-test-secret"}
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture
def settings(make_settings):
    return make_settings()


@pytest.fixture
def kv(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def hasher(settings):
    return TokenHasher(settings.hmac_secret)


@pytest.fixture
def session_store(kv, hasher, settings):
    return SessionStore(
        kv,
        hasher,
        session_prefix=settings.session_prefix,
        account_session_prefix=settings.account_session_prefix,
    )


@pytest.fixture
def session_service(session_store, settings, clock):
    return SessionService(session_store, settings, clock=clock)


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
