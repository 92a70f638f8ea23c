import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might load settings
_test_tmp_dir = tempfile.mkdtemp(prefix="authcore_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("EXPOSE_TOKENS", "true")
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault("ENABLE_TOKEN_SWEEP", "false")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from fastapi.testclient import TestClient  # noqa: E402

from authcore.app import create_app  # noqa: E402
from authcore.config import Settings  # noqa: E402
from authcore.service.runtime import Runtime  # noqa: E402
from authcore.storage.memory import MemoryStore  # noqa: E402

TEST_PASSWORD = "correct-horse-battery"


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2030, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    """Captures verification and reset tokens instead of sending mail."""

    def __init__(self):
        self.verifications = []
        self.resets = []

    def send_email_verification(self, to_email: str, token: str) -> bool:
        self.verifications.append((to_email, token))
        return True

    def send_password_reset(self, to_email: str, token: str) -> bool:
        self.resets.append((to_email, token))
        return True


def make_settings(tmp_path, **overrides) -> Settings:
    values = dict(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        shared_fs_root=str(tmp_path),
        use_memory_store=True,
        redis_url=None,
        test_mode=True,
        expose_tokens=True,
        cookie_secure=False,
        enable_token_sweep=False,
        password_hash_time_cost=1,
        password_hash_memory_cost=8,
        password_hash_parallelism=1,
        ops_basic_auth_username="ops",
        ops_basic_auth_password="ops-secret",
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def runtime(settings, memory_store, notifier, clock):
    rt = Runtime(settings, store=memory_store, notifier=notifier, clock=clock)
    yield rt
    rt.auth.close()


@pytest.fixture
def client(runtime):
    app = create_app(runtime=runtime)
    return TestClient(app, raise_server_exceptions=False)


@pytest.fixture
def register_user(client):
    """Factory that registers an account over HTTP and returns the response data."""

    def _register(email="user@example.com", username="someuser", password=TEST_PASSWORD):
        resp = client.post(
            "/v1/auth/register",
            json={"email": email, "username": username, "password": password},
        )
        assert resp.status_code == 201, resp.text
        return resp.json()["data"]

    return _register


@pytest.fixture
def password():
    return TEST_PASSWORD


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
