import asyncio
import inspect
import os
import sys
from pathlib import Path

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from authcore.config import PasswordOptions, Settings, reset_settings_cache  # noqa: E402
from authcore.service.auth import AuthService  # noqa: E402
from authcore.service.email import EmailNotifier  # noqa: E402
from authcore.service.passwords import PasswordHasher  # noqa: E402
from authcore.service.tokens import TokenService  # noqa: E402
from authcore.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


class FakeClock:
    """Settable clock injected into TokenService."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class Outbox:
    """Collects messages handed to the send_email collaborator."""

    def __init__(self):
        self.messages = []

    def __call__(self, message):
        self.messages.append(message)

    def last_token_for(self, address: str) -> str:
        for message in reversed(self.messages):
            if message.to == address:
                return message.text.rsplit(" ", 1)[-1]
        raise AssertionError(f"no email sent to {address}")


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def settings():
    """Test settings with cheap argon2 parameters and generous rate limits."""
    return Settings(
        jwt_secret=TEST_SECRET,
        password_options=PasswordOptions(),
        password_time_cost=1,
        password_memory_cost=8,
        password_parallelism=1,
        login_rate_limit_per_minute=1000,
        register_rate_limit_per_minute=1000,
        reset_rate_limit_per_minute=1000,
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def token_service(memory_store, settings, clock):
    return TokenService(memory_store, settings, clock=clock)


@pytest.fixture
def hasher(settings):
    return PasswordHasher.from_settings(settings)


@pytest.fixture
def outbox():
    return Outbox()


@pytest.fixture
def auth_service(memory_store, settings, token_service, hasher, outbox):
    return AuthService(
        memory_store,
        settings,
        tokens=token_service,
        hasher=hasher,
        notifier=EmailNotifier(settings.email_options, outbox),
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
