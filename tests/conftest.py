import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="tablecode_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("ADMIN_KEY", "test-admin-key-for-testing-only")
os.environ.setdefault("COOKIE_SECRET", "test-cookie-secret-for-testing-only")
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("PIN_HASH_TIME_COST", "1")
os.environ.setdefault("PIN_HASH_MEMORY_COST", "1024")
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tablecode.service.credentials import CredentialStore  # noqa: E402
from tablecode.service.runtime import reset_runtime_for_tests  # noqa: E402
from tablecode.storage.memory import MemoryStore  # noqa: E402

ADMIN_KEY = os.environ["ADMIN_KEY"]
STRONG_PIN = "59273841"


class FakeClock:
    """Settable UTC clock for services that take a ``clock`` callable."""

    def __init__(self, start=None):
        self.now = start or datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeNotifier:
    def __init__(self, result=True):
        self.result = result
        self.sent = []

    def send_otp(self, email, otp):
        self.sent.append((email, otp))
        return self.result

    @property
    def last_otp(self):
        return self.sent[-1][1]


class FakeAssets:
    def __init__(self, failing=()):
        self.failing = set(failing)
        self.deleted = []

    def delete_by_reference(self, ref):
        if ref in self.failing:
            raise OSError(f"cannot delete {ref}")
        self.deleted.append(ref)
        return True


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def credentials():
    return CredentialStore(
        time_cost=1,
        memory_cost=1024,
        cookie_secret="unit-cookie-secret",
        admin_key="unit-admin-key",
        digest_key="unit-digest-key",
    )


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def assets():
    return FakeAssets()


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
