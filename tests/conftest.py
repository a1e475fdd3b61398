import asyncio
import inspect
import os
import sys
from pathlib import Path

# Environment must be in place before any import that builds settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("APP_ENV", "development")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("SITE_PIN", "482916")
os.environ.setdefault("ADMIN_PASSWORD", "Admin-Test-Password-1!")
os.environ.setdefault("REQUIRE_ACCESS_KEY", "false")
os.environ.setdefault("REQUIRE_EMAIL_VERIFICATION", "false")
# empty REDIS_URL keeps tests on the in-memory cache
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from docprescrip.config import Settings  # noqa: E402
from docprescrip.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


class FakeClock:
    """Manually advanced clock shared by caches and token issuers in tests."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="unit-test-signing-secret",
        site_pin="482916",
        admin_password="Admin-Test-Password-1!",
        require_access_key=False,
        test_mode=True,
        use_memory_store=True,
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
