import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Environment must be in place before anything initializes settings or the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="clinauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-testing-only-do-not-use-in-production")
# Empty REDIS_URL keeps rate limiting in-process so tests do not share counters
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("SESSION_CLEANUP_INTERVAL_SECONDS", "0")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from clinauth.service.runtime import reset_runtime_for_tests  # noqa: E402


class FakeClock:
    """Settable UTC clock for components that accept ``clock=``."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now

    def timestamp(self) -> float:
        return self.now.timestamp()


class RecordingEmitter:
    def __init__(self):
        self.events: list[tuple[str, dict]] = []

    def emit(self, event, fields):
        self.events.append((event, dict(fields)))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]


class RecordingNotifier:
    """Captures issued codes instead of sending mail."""

    def __init__(self, deliver: bool = True):
        self.deliver = deliver
        self.sent: list[dict] = []

    def send_otp(self, to_email, code, *, username, purpose, expires_in):
        self.sent.append(
            {
                "to": to_email,
                "code": code,
                "username": username,
                "purpose": purpose,
                "expires_in": expires_in,
            }
        )
        return self.deliver

    @property
    def last_code(self) -> str:
        return self.sent[-1]["code"]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def events():
    return RecordingEmitter()


@pytest.fixture
def notifier():
    return RecordingNotifier()


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
