import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Tuple

# Configure the runtime before any imports that might initialize it
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_CACHE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from credgate.config import Settings  # noqa: E402
from credgate.service.auth import CredentialGate  # noqa: E402
from credgate.service.backup_codes import BackupCodeVault  # noqa: E402
from credgate.service.mfa import MfaOrchestrator  # noqa: E402
from credgate.service.passwords import Argon2PasswordHasher  # noqa: E402
from credgate.service.runtime import reset_runtime_for_tests  # noqa: E402
from credgate.service.tokens import TokenIssuer  # noqa: E402
from credgate.storage.memory import MemoryAuditSink, MemoryCache, MemoryUserStore  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"
TEST_PASSWORD = "CorrectHorse42!"

# 2024-01-01T12:00:00Z sits exactly on a 30 second TOTP step boundary
START = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Deterministic clock shared by the services and the memory cache."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class RecordingSmsGateway:
    def __init__(self, succeed: bool = True) -> None:
        self.succeed = succeed
        self.sent: List[Tuple[str, str]] = []

    async def send(self, destination: str, message: str) -> bool:
        self.sent.append((destination, message))
        return self.succeed


class RecordingEmailGateway:
    def __init__(self, succeed: bool = True) -> None:
        self.succeed = succeed
        self.sent: List[Tuple[str, str, str]] = []

    async def send(self, destination: str, message: str, *, subject: str = "Verification Code") -> bool:
        self.sent.append((destination, subject, message))
        return self.succeed


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=TEST_SECRET,
        max_login_attempts=5,
        lockout_duration_minutes=30,
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24,
        mfa_code_expiration_minutes=5,
        mfa_max_challenge_attempts=3,
        backup_code_count=8,
        test_mode=True,
    )


@pytest.fixture
def hasher():
    # Cheap parameters keep the suite fast
    return Argon2PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1)


@pytest.fixture
def users(hasher):
    return MemoryUserStore(hasher)


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def audit_sink():
    return MemoryAuditSink()


@pytest.fixture
def sms():
    return RecordingSmsGateway()


@pytest.fixture
def email():
    return RecordingEmailGateway()


@pytest.fixture
def vault(users, cache, hasher, audit_sink):
    return BackupCodeVault(users, cache, hasher, audit_sink)


@pytest.fixture
def tokens(settings, users, cache, audit_sink, clock):
    return TokenIssuer(settings, users, cache, audit_sink, clock=clock)


@pytest.fixture
def mfa(settings, users, cache, vault, tokens, sms, email, audit_sink, clock):
    return MfaOrchestrator(
        settings, users, cache, vault, tokens, sms, email, audit_sink, clock=clock
    )


@pytest.fixture
def gate(settings, users, cache, tokens, mfa, audit_sink, clock):
    return CredentialGate(settings, users, cache, tokens, mfa, audit_sink, clock=clock)


@pytest.fixture
def suspend_calls(monkeypatch):
    """Make coroutine methods yield to the event loop before running.

    The memory cache never awaits anything, so concurrent flows built on it
    would otherwise run one after another.
    """

    def apply(target, *names):
        for name in names:
            original = getattr(target, name)

            async def suspended(*args, _original=original, **kwargs):
                await asyncio.sleep(0)
                return await _original(*args, **kwargs)

            monkeypatch.setattr(target, name, suspended)

    return apply


@pytest.fixture
def password():
    return TEST_PASSWORD


@pytest.fixture
def alice(users):
    return users.create_user(
        "alice",
        TEST_PASSWORD,
        email="alice@example.com",
        display_name="Alice",
        roles=["user"],
        permissions=["profile:read"],
    )


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
