import asyncio
import inspect
import os
import re
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="gatehouse_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("APP_BASE_URL", "http://testserver")
os.environ.pop("REDIS_URL", None)

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from gatehouse.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402

TEST_PASSWORD = "correct-horse-battery"
_TOKEN_IN_LINK = re.compile(r"token=([0-9a-f]{64})")


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # MemoryStore reloads its JSON snapshot, so every test gets its own root
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def client():
    from gatehouse.app import app

    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def sent_emails(monkeypatch):
    """Record outgoing emails instead of delivering them."""
    outbox = []
    runtime = get_runtime()

    def _recorder(kind):
        def _send(to_email, name, token):
            outbox.append({"kind": kind, "to": to_email, "name": name, "token": token})
            return True

        return _send

    monkeypatch.setattr(runtime.email, "send_verification_email", _recorder("verification"))
    monkeypatch.setattr(runtime.email, "send_password_reset_email", _recorder("password_reset"))
    return outbox


def csrf_token(client) -> str:
    """Fetch a page so the CSRF cookie is set, then return its value."""
    policy = get_runtime().policy
    if not client.cookies.get(policy.csrf_name):
        client.get("/login")
    return client.cookies.get(policy.csrf_name)


def post_form(client, url, data=None, **kwargs):
    policy = get_runtime().policy
    payload = dict(data or {})
    payload.setdefault(policy.csrf_field, csrf_token(client))
    kwargs.setdefault("follow_redirects", False)
    return client.post(url, data=payload, **kwargs)


def register_form(email="ada@example.com", **overrides):
    form = {
        "name": "Ada Lovelace",
        "email": email,
        "password": TEST_PASSWORD,
        "password_confirm": TEST_PASSWORD,
        "terms": "on",
    }
    form.update(overrides)
    return form


def create_user(email="ada@example.com", *, verified=True, password=TEST_PASSWORD, name="Ada Lovelace"):
    """Create a user directly through the service layer."""
    runtime = get_runtime()
    user = asyncio.run(runtime.users.register(email, password, name))
    if verified:
        user = runtime.store.mark_email_verified(user.id)
    return user


def login(client, email="ada@example.com", password=TEST_PASSWORD):
    response = post_form(client, "/login", {"email": email, "password": password})
    assert response.status_code == 303, response.text
    return response


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
