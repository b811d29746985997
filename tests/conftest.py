import asyncio
import inspect
import os
import tempfile
from datetime import datetime, timedelta, timezone

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="profileauth_test_")
os.environ.setdefault("STATE_DIR", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "64")
os.environ.setdefault("ARGON2_PARALLELISM", "1")

import pytest  # noqa: E402

from profileauth.service.hashing import CredentialHasher  # noqa: E402
from profileauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from profileauth.service.sessions import SessionManager  # noqa: E402
from profileauth.service.tokens import TokenIssuer  # noqa: E402
from profileauth.service.verification import VerificationCodeManager  # noqa: E402
from profileauth.storage.memory import MemoryStore  # noqa: E402

TEST_JWT_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"
TEST_PASSWORD = "TestPassword123!"


class FakeClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


class RecordingNotifier:
    """Notifier double that records every delivery attempt."""

    def __init__(self, *, enabled: bool = True, deliver: bool = True, error: Exception | None = None):
        self.enabled = enabled
        self.deliver = deliver
        self.error = error
        self.sent: list[tuple[str, str, str]] = []

    @property
    def is_enabled(self) -> bool:
        return self.enabled

    def send_verification_message(self, target: str, display_name: str, code: str) -> bool:
        self.sent.append((target, display_name, code))
        if self.error is not None:
            raise self.error
        return self.deliver

    @property
    def last_code(self) -> str:
        return self.sent[-1][2]


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
def hasher():
    # Minimal argon2 costs keep the suite fast; production defaults are covered separately
    return CredentialHasher(time_cost=1, memory_cost=64, parallelism=1)


@pytest.fixture
def issuer(clock):
    return TokenIssuer(
        TEST_JWT_SECRET,
        issuer="OpenProfileServer",
        audience="OpenProfileClient",
        access_ttl=timedelta(minutes=10),
        refresh_ttl=timedelta(days=7),
        clock=clock,
    )


@pytest.fixture
def sessions(memory_store, hasher, issuer, clock):
    return SessionManager(memory_store, hasher, issuer, clock=clock)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def verification(memory_store, notifier, clock):
    return VerificationCodeManager(memory_store, notifier, clock=clock)


@pytest.fixture
def password():
    return TEST_PASSWORD


@pytest.fixture
def alice(memory_store, hasher, clock):
    """Active account 'alice' with password TEST_PASSWORD."""
    account = memory_store.create_account("alice", "alice@example.com")
    pwd_hash, salt = hasher.hash_password(TEST_PASSWORD)
    memory_store.save_credential(account.id, pwd_hash, salt, now=clock.now())
    return account


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
