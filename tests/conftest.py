import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Environment must be in place before anything initializes the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="taskdesk_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault(
    "JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-do-not-use-in-production"
)
# Empty URL keeps rate limits and OAuth state in process memory
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("REMINDER_ENABLED", "false")
os.environ.setdefault("REFRESH_SWEEP_INTERVAL_SECONDS", "0")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from taskdesk.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # Fresh state directory per test so the memory store starts empty
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def sent_emails(monkeypatch):
    """Capture outgoing mail as ``(to, subject, body)`` tuples."""
    outbox = []

    def _send(to_email, subject, body, html_body=None):
        outbox.append((to_email, subject, body))
        return True

    monkeypatch.setattr(get_runtime().email, "send", _send)
    return outbox


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
def client():
    """Test client for the API (lifespan not started, so no background tasks)."""
    from fastapi.testclient import TestClient

    from taskdesk import app as app_module

    return TestClient(app_module.app)


@pytest.fixture
def make_user(client):
    """Register and sign in a user; ``role="admin"`` promotes through the store first."""
    created = []

    def _make(name="User", role="user", password="Password123"):
        email = f"{name.lower().replace(' ', '.')}.{len(created)}@example.com"
        response = client.post(
            "/v1/auth/register", json={"name": name, "email": email, "password": password}
        )
        assert response.status_code == 201, response.text
        user_id = response.json()["data"]["id"]
        if role == "admin":
            get_runtime().store.update_user_role(user_id, "admin")
        login = client.post("/v1/auth/login", json={"email": email, "password": password})
        assert login.status_code == 200, login.text
        data = login.json()["data"]
        account = {
            "id": user_id,
            "name": name,
            "email": email,
            "password": password,
            "access_token": data["access_token"],
            "refresh_token": data["refresh_token"],
            "headers": {"Authorization": f"Bearer {data['access_token']}"},
        }
        created.append(account)
        return account

    return _make
