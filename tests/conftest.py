import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="genesis_auth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault(
    "JWT_ACCESS_SECRET", "access-secret-for-automated-tests-only-0123456789"
)
os.environ.setdefault(
    "JWT_REFRESH_SECRET", "refresh-secret-for-automated-tests-only-9876543210"
)
# In-process rate limits and revocation markers; a shared Redis would leak state between tests
os.environ["REDIS_URL"] = ""
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_COST", "8192")
os.environ.setdefault("PASSWORD_HASH_PARALLELISM", "1")
for _limit in (
    "LOGIN_RATE_LIMIT",
    "REGISTER_RATE_LIMIT",
    "REFRESH_RATE_LIMIT",
    "TOKEN_ACTION_RATE_LIMIT",
    "EMAIL_RATE_LIMIT",
):
    os.environ.setdefault(_limit, "1000")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from genesis_auth.config import Settings  # noqa: E402
from genesis_auth.service.auth import AuthService  # noqa: E402
from genesis_auth.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402
from genesis_auth.storage.memory import MemoryStore  # noqa: E402


class FakeClock:
    """Settable UTC clock injected into the auth core and token codec."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime.now(timezone.utc).replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeMailer:
    """Records outgoing mail instead of talking to SMTP."""

    def __init__(self):
        self.verifications: list[tuple[str, str]] = []
        self.resets: list[tuple[str, str]] = []
        self.password_changes: list[str] = []
        self.fail = False

    def send_verification_email(self, to_address: str, raw_token: str) -> bool:
        self.verifications.append((to_address, raw_token))
        return not self.fail

    def send_password_reset_email(self, to_address: str, raw_token: str) -> bool:
        self.resets.append((to_address, raw_token))
        return not self.fail

    def send_password_changed_email(self, to_address: str) -> bool:
        self.password_changes.append(to_address)
        return not self.fail


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # each test gets its own memory store state file
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_access_secret="unit-access-secret-0123456789-abcdefghij",
        jwt_refresh_secret="unit-refresh-secret-0123456789-abcdefghij",
        password_hash_time_cost=1,
        password_hash_memory_cost=8192,
        password_hash_parallelism=1,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path / "store"))


@pytest.fixture
def auth_service(memory_store, settings, mailer, clock):
    return AuthService(memory_store, None, settings, mailer=mailer, clock=clock)


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


@pytest.fixture
def outbox():
    """Swap the runtime mailer for a recorder so HTTP tests can read raw tokens."""
    mailer = FakeMailer()
    get_runtime().auth.mailer = mailer
    return mailer
