import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="coopapp_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("COOKIE_SECURE", "false")
# Rate limits and 2FA counters use the in-process fallback
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from coopapp import app as app_module  # noqa: E402
from coopapp.service.passwords import set_password  # noqa: E402
from coopapp.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402
from coopapp.storage.models import User, new_id  # noqa: E402

PASSWORD = "Passw0rd!coop"


class RecordingNotifier:
    """Captures outgoing messages instead of sending email."""

    def __init__(self):
        self.codes = []
        self.verification_links = []
        self.registrations = []

    def send_two_factor_code(self, user, organization, code, expires_at):
        self.codes.append({"user_id": user.id, "code": code, "expires_at": expires_at})
        return True

    def send_account_verification(self, user, organization, link):
        self.verification_links.append({"user_id": user.id, "link": link})
        return True

    def send_registration_received(self, user, organization):
        self.registrations.append(user.id)
        return True

    def last_code(self, user_id):
        for entry in reversed(self.codes):
            if entry["user_id"] == user_id:
                return entry["code"]
        return None


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # Fresh state directory per test so the memory store starts empty
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    reset_runtime_for_tests(notifier=RecordingNotifier())
    yield
    reset_runtime_for_tests(notifier=RecordingNotifier())


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def notifier(runtime):
    return runtime.notifier


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def make_org(runtime):
    def _make(name, **kwargs):
        return runtime.store.create_organization(name, **kwargs)

    return _make


@pytest.fixture
def make_user(runtime):
    def _make(org, *, role="user", password=PASSWORD, is_active=True, is_verified=True, **fields):
        if not any(fields.get(k) for k in ("email", "user_name", "phone_number")):
            fields["email"] = f"{new_id()[:8]}@example.com"
        record = User(
            id=new_id(),
            tenant_id=org.id if org is not None else None,
            role=role,
            is_active=is_active,
            is_verified=is_verified,
            **fields,
        )
        if password:
            record = set_password(record, password, runtime.passwords)
        return runtime.store.create_user(record)

    return _make


def _login_paths(tenant):
    if tenant is None:
        return "/v1/users/login-2fa", "/v1/users/login-2fa/verify"
    base = f"/v1/organizations/{tenant}/users/login-2fa"
    return base, f"{base}/verify"


@pytest.fixture
def login(client, runtime):
    """Run both login steps and return the issued token.

    Cookies are cleared afterwards so each call states its credentials explicitly.
    """

    def _login(tenant, user, identifier=None, password=PASSWORD):
        identifier = identifier or user.email or user.user_name or user.phone_number
        submit_path, verify_path = _login_paths(tenant)
        resp = client.post(submit_path, json={"identifier": identifier, "password": password})
        assert resp.status_code == 200, resp.text
        code = runtime.notifier.last_code(user.id)
        resp = client.post(verify_path, json={"identifier": identifier, "code": code})
        assert resp.status_code == 200, resp.text
        client.cookies.clear()
        return resp.json()["data"]["token"]

    return _login


def auth_header(token):
    return {"Authorization": f"Bearer {token}"}


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
