import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Environment must be in place before anything reads settings
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_COST", "1024")
os.environ.setdefault("PASSWORD_HASH_PARALLELISM", "1")
os.environ.setdefault("COOKIE_SECURE", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from quickauth.config import get_settings  # noqa: E402
from quickauth.service.auth import AuthService  # noqa: E402
from quickauth.service.email import DispatchResult  # noqa: E402
from quickauth.service.passwords import CredentialHasher  # noqa: E402
from quickauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from quickauth.storage.memory import MemoryStore  # noqa: E402
from quickauth.storage.redis_cache import MemoryCache  # noqa: E402

STRONG_PASSWORD = "Secr3t!@#"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeMailer:
    """Captures outgoing tokens instead of sending mail."""

    is_configured = True

    def __init__(self):
        self.sent: list[tuple[str, str, str | None]] = []
        self.fail = False

    def _record(self, kind: str, to_email: str, token: str | None = None) -> DispatchResult:
        if self.fail:
            return DispatchResult(success=False, error="smtp_down")
        self.sent.append((kind, to_email, token))
        return DispatchResult(success=True)

    def send_email_verification(self, to_email, display_name, token):
        return self._record("verification", to_email, token)

    def send_password_reset(self, to_email, display_name, token):
        return self._record("reset", to_email, token)

    def send_password_changed(self, to_email, display_name):
        return self._record("password_changed", to_email)

    def last_token(self, kind: str) -> str | None:
        for sent_kind, _, token in reversed(self.sent):
            if sent_kind == kind:
                return token
        return None


class FakeSms:
    is_configured = True

    def __init__(self):
        self.otps: list[tuple[str, str]] = []
        self.welcomed: list[str] = []
        self.fail = False

    async def send_otp(self, phone, code, display_name):
        if self.fail:
            return DispatchResult(success=False, error="gateway_status_502")
        self.otps.append((phone, code))
        return DispatchResult(success=True)

    async def send_welcome(self, phone, display_name):
        self.welcomed.append(phone)
        return DispatchResult(success=True)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def sms():
    return FakeSms()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def hasher():
    return CredentialHasher(time_cost=1, memory_cost=1024, parallelism=1)


@pytest.fixture
def auth_service(store, cache, hasher, mailer, sms, clock):
    return AuthService(
        store,
        cache,
        get_settings(),
        hasher=hasher,
        email=mailer,
        sms=sms,
        clock=clock,
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
