import asyncio
import inspect
import os
import sys
from pathlib import Path

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("ANTI_ENUMERATION_FLOOR_MS", "0")
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from portalauth.config import Settings, reset_settings_cache  # noqa: E402
from portalauth.service.email import EmailService  # noqa: E402
from portalauth.service.passwords import PasswordHasher  # noqa: E402
from portalauth.service.runtime import Runtime  # noqa: E402
from portalauth.storage.memory import MemoryStore  # noqa: E402
from portalauth.storage.memory_cache import MemoryCache  # noqa: E402

TEST_SECRET = "unit-test-signing-secret-0123456789abcdef"


class RecordingEmailService(EmailService):
    """Captures outgoing codes and reset tokens instead of sending them."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.codes = {}
        self.reset_tokens = {}
        self.fail = False

    def send_verification_code(self, to_email: str, name: str, code: str) -> bool:
        if self.fail:
            raise RuntimeError("smtp down")
        self.codes[to_email] = code
        return True

    def send_password_reset(self, to_email: str, token: str) -> bool:
        if self.fail:
            raise RuntimeError("smtp down")
        self.reset_tokens[to_email] = token
        return True


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=TEST_SECRET,
        test_mode=True,
        use_memory_store=True,
        redis_url=None,
        anti_enumeration_floor_ms=0,
        password_hash_time_cost=1,
        password_hash_memory_cost=8,
        password_hash_parallelism=1,
    )


@pytest.fixture
def hasher():
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1)


@pytest.fixture
def email_service():
    return RecordingEmailService()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def runtime(settings, store, cache, email_service, hasher):
    return Runtime(settings, store=store, cache=cache, email=email_service, hasher=hasher)


@pytest.fixture
def auth(runtime):
    return runtime.auth


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
