import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock

# Environment must be in place before anything reads settings
_test_tmp_dir = tempfile.mkdtemp(prefix="backoffice_auth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault(
    "AUTH_SIGNING_SECRET", "test-signing-secret-for-automation-only-do-not-use-in-production"
)
# Empty REDIS_URL runs the suite on the in-process fallback
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("GEOLOCATION_ENABLED", "false")
os.environ.setdefault("FAILURE_DELAY_MIN_MS", "0")
os.environ.setdefault("FAILURE_DELAY_MAX_MS", "0")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from backoffice_auth.config import Settings  # noqa: E402
from backoffice_auth.service.runtime import Runtime, reset_runtime_for_tests  # noqa: E402
from backoffice_auth.storage.memory import MemoryStore  # noqa: E402
from backoffice_auth.storage.models import DeviceInfo  # noqa: E402

CHROME_MAC = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)
FIREFOX_WINDOWS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:125.0) Gecko/20100101 Firefox/125.0"
)
SAFARI_IPHONE = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_4 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.4 Mobile/15E148 Safari/604.1"
)

PASSWORD = "Correct-Horse-Battery-9"


class FakeClock:
    """Mutable UTC clock injected into services."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def epoch(self) -> float:
        return self.now.timestamp()


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        signing_secret="unit-test-signing-secret-0123456789-abcdefghijklmnop",
        shared_fs_root=str(tmp_path),
        test_mode=True,
        redis_url=None,
        geolocation_enabled=False,
        failure_delay_min_ms=0,
        failure_delay_max_ms=0,
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def notifier():
    return MagicMock(name="notifier")


@pytest.fixture
def audit():
    return MagicMock(name="audit")


@pytest.fixture
def runtime(settings, store, notifier, audit, clock):
    return Runtime(
        settings,
        store=store,
        connect_cache=False,
        notifier=notifier,
        audit=audit,
        clock=clock,
    )


@pytest.fixture
def device():
    return DeviceInfo(user_agent=CHROME_MAC, ip_address="203.0.113.7")


@pytest.fixture
def user(runtime, store):
    created = store.create_user("alice@example.com")
    runtime.passwords.set_password(created.id, PASSWORD)
    return store.get_user(created.id)


async def new_session(runtime, user_id, user_agent=CHROME_MAC, ip="203.0.113.7"):
    return await runtime.sessions.create(
        user_id, DeviceInfo(user_agent=user_agent, ip_address=ip), notify=False
    )


def open_session(runtime, user_id, user_agent=CHROME_MAC, ip="203.0.113.7"):
    """Create a session outside an event loop, for fixtures and sync tests."""
    return asyncio.run(new_session(runtime, user_id, user_agent, ip))


async def step_up_session(runtime, session, password=PASSWORD):
    grant = await runtime.step_up.verify_password(session.user_id, password)
    await runtime.step_up.apply(session.id, grant.token)
    return runtime.sessions.get(session.id)


def sent_code(mock_method):
    """Return the one-time code argument of the last notifier call."""
    assert mock_method.called, "expected a notification to be sent"
    return mock_method.call_args.args[1]


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
