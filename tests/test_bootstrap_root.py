import importlib.util
from pathlib import Path

import pytest
from conftest import auth_header

_SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_root.py"


@pytest.fixture
def bootstrap():
    spec = importlib.util.spec_from_file_location("bootstrap_root", _SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_rejects_weak_password_and_bad_email(bootstrap):
    problems = bootstrap.validate_credentials("not-an-email", "weak")
    assert len(problems) == 2


def test_accepts_valid_credentials(bootstrap):
    assert bootstrap.validate_credentials("root@coop.test", "Str0ng!Passw0rd") == []


def test_creates_root_once(bootstrap, runtime):
    first = bootstrap.bootstrap_root("Root@Coop.test", "Str0ng!Passw0rd")
    assert first["status"] == "created"
    user = runtime.store.get_user(first["user_id"])
    assert user.role == "root"
    assert user.tenant_id is None
    assert user.is_active and user.is_verified

    second = bootstrap.bootstrap_root("root@coop.test", "Str0ng!Passw0rd")
    assert second == {"user_id": first["user_id"], "email": "root@coop.test", "status": "exists"}


def test_dry_run_writes_nothing(bootstrap, runtime):
    result = bootstrap.bootstrap_root("root@coop.test", "Str0ng!Passw0rd", dry_run=True)
    assert result["status"] == "dry_run"
    assert runtime.store.find_user_by_identifier(None, "root@coop.test") is None


def test_bootstrapped_root_can_log_in(bootstrap, client, login, runtime):
    result = bootstrap.bootstrap_root("root@coop.test", "Str0ng!Passw0rd")
    root = runtime.store.get_user(result["user_id"])
    token = login(None, root, password="Str0ng!Passw0rd")
    resp = client.get("/v1/users/me", headers=auth_header(token))
    assert resp.status_code == 200
    assert resp.json()["data"]["capabilities"]["isRoot"] is True
