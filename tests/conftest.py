import asyncio
import inspect
import os
import sys
from pathlib import Path

# Environment must be in place before anything builds Settings from it
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("EVENT_PUBLISHER_TYPE", "memory")
os.environ.setdefault("JWT_SECRET", "test-access-secret-for-automation-only-0123456789")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-automation-only-9876543210")
os.environ.setdefault("MFA_SECRET_KEY", "test-mfa-encryption-key-for-automation-only")
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "1024")
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault("SESSION_SWEEP_INTERVAL_SECONDS", "0")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from storeauth.config import Settings  # noqa: E402
from storeauth.service.audit import ClientContext  # noqa: E402
from storeauth.service.runtime import Runtime, reset_runtime_for_tests  # noqa: E402

PASSWORD = "Correct-Horse-9"


def build_settings(**overrides) -> Settings:
    values = dict(
        jwt_secret=os.environ["JWT_SECRET"],
        jwt_refresh_secret=os.environ["JWT_REFRESH_SECRET"],
        use_memory_store=True,
        test_mode=True,
        argon2_time_cost=1,
        argon2_memory_cost=1024,
        mfa_encryption_key=os.environ["MFA_SECRET_KEY"],
        max_login_attempts=5,
        lockout_duration_minutes=30,
        session_sweep_interval_seconds=0,
        cookie_secure=False,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings():
    return build_settings()


@pytest.fixture
def runtime(settings):
    return Runtime(settings)


@pytest.fixture
def store(runtime):
    return runtime.store


@pytest.fixture
def auth(runtime):
    return runtime.auth


@pytest.fixture
def security(runtime):
    return runtime.security


@pytest.fixture
def client_ctx():
    return ClientContext(
        ip_address="203.0.113.10",
        user_agent="pytest-agent/1.0",
        device_id="device-fingerprint-1",
        device_type="desktop",
        device_name="Test Laptop",
        os="Linux",
        browser="Firefox",
    )


@pytest.fixture
def account(runtime):
    """A registered, active account whose password is ``PASSWORD``."""
    password_hash = runtime.hasher.hash_sync(PASSWORD)
    return runtime.store.create_account(
        "shopper@example.com", password_hash, roles=["user"]
    )


@pytest.fixture
def api_runtime():
    """Process-wide runtime used by the HTTP app, rebuilt for each test."""
    return reset_runtime_for_tests(build_settings())


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
def settings_factory():
    return build_settings
