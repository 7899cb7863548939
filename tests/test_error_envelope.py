"""Error envelope format and the exception handlers behind it.

Every failure renders as:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<text>", "details": <object|array|null>},
    "request_id": "<X-Request-ID or generated>"
}
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel, ValidationError

from coopapp.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from coopapp.api.schemas import Envelope, ErrorBody
from coopapp.service.errors import ConflictError, SelfActionError
from coopapp.storage.errors import ConstraintViolation, InvariantViolation


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.details is None

    def test_details_accept_dict_and_list(self):
        assert ErrorBody(code="validation_error", message="x", details={"field": "email"}).details == {
            "field": "email"
        }
        assert len(ErrorBody(code="validation_error", message="x", details=[{}, {}]).details) == 2

    def test_self_action_code_is_stable(self):
        assert ErrorBody(code="self_action_forbidden", message="no").code == "self_action_forbidden"

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    def test_missing_message_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")


class TestEnvelope:
    def test_ok_envelope(self):
        envelope = Envelope(status="ok", data={"id": "123"})
        assert envelope.error is None
        assert envelope.request_id

    def test_custom_request_id(self):
        assert Envelope(status="ok", request_id="req-1").request_id == "req-1"

    def test_invalid_status(self):
        with pytest.raises(ValidationError):
            Envelope(status="success")


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status_code,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (429, "rate_limited"),
            (500, "server_error"),
        ],
    )
    def test_known_status(self, status_code, code):
        assert _error_code_for_status(status_code) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"
        assert _error_code_for_status(503) == "server_error"

    def test_mapping_covers_every_generic_code(self):
        assert set(_STATUS_TO_CODE.values()) == {
            "unauthorized",
            "forbidden",
            "not_found",
            "rate_limited",
            "validation_error",
            "conflict",
            "server_error",
        }

    def test_error_response_drops_empty_details(self):
        body = json.loads(_error_response(404, "User not found", {}).body)
        assert body["status"] == "error"
        assert body["error"] == {"code": "not_found", "message": "User not found", "details": None}


class _Payload(BaseModel):
    value: int


@pytest.fixture
def handler_client():
    """A bare app with the production handlers and routes that raise on purpose."""
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/self")
    async def _self():
        raise SelfActionError("delete")

    @app.get("/conflict")
    async def _conflict():
        raise ConflictError("duplicate")

    @app.get("/constraint")
    async def _constraint():
        raise ConstraintViolation("email already in use", {"field": "email"})

    @app.get("/invariant")
    async def _invariant():
        raise InvariantViolation("root users cannot belong to an organization")

    @app.get("/boom")
    async def _boom():
        raise RuntimeError("database exploded with secret=hunter2")

    @app.post("/payload")
    async def _payload(body: _Payload):
        return {"value": body.value}

    return TestClient(app, raise_server_exceptions=False)


class TestHandlers:
    def test_self_action_keeps_its_code(self, handler_client):
        resp = handler_client.get("/self")
        assert resp.status_code == 403
        assert resp.json()["error"] == {
            "code": "self_action_forbidden",
            "message": "You cannot delete your own account",
            "details": {"action": "delete"},
        }

    def test_service_error(self, handler_client):
        resp = handler_client.get("/conflict")
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    def test_storage_constraint_is_conflict(self, handler_client):
        resp = handler_client.get("/constraint")
        assert resp.status_code == 409
        assert resp.json()["error"]["details"] == {"field": "email"}

    def test_storage_invariant_is_bad_request(self, handler_client):
        resp = handler_client.get("/invariant")
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

    def test_unexpected_exception_is_opaque(self, handler_client):
        resp = handler_client.get("/boom")
        assert resp.status_code == 500
        body = resp.json()
        assert body["error"] == {
            "code": "server_error",
            "message": "internal server error",
            "details": None,
        }
        assert "hunter2" not in resp.text

    def test_validation_details_are_json_safe(self, handler_client):
        resp = handler_client.post("/payload", json={"value": "not-a-number"})
        assert resp.status_code == 400
        details = resp.json()["error"]["details"]
        assert isinstance(details, list) and details
        assert all("input" not in d and "ctx" not in d for d in details)

    def test_unknown_route_is_enveloped(self, handler_client):
        resp = handler_client.get("/nowhere")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"


class TestApplicationEnvelope:
    def test_request_id_echoed(self, client):
        resp = client.get("/v1/organizations/missing", headers={"X-Request-ID": "req-abc"})
        assert resp.status_code == 404
        assert resp.headers["X-Request-ID"] == "req-abc"
        assert resp.json()["request_id"] == "req-abc"
        assert resp.json()["error"]["message"] == "Organization not found"

    def test_missing_token_is_401_envelope(self, client, make_org):
        make_org("acme")
        resp = client.get("/v1/organizations/acme/users/me")
        assert resp.status_code == 401
        assert resp.json()["status"] == "error"
        assert resp.json()["error"]["code"] == "unauthorized"
        assert "request_id" not in resp.json()
        assert resp.headers["X-Request-ID"]

    def test_method_not_allowed_is_enveloped(self, client):
        resp = client.delete("/v1/users/login-2fa")
        assert resp.status_code == 405
        assert resp.json()["status"] == "error"

    def test_security_headers(self, client):
        resp = client.get("/v1/organizations/missing")
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert resp.headers["Cache-Control"].startswith("no-store")
        assert resp.headers["API-Version"]

    def test_healthz(self, client):
        resp = client.get("/healthz")
        assert resp.status_code == 200
        body = resp.json()
        assert body["checks"]["database"]["type"] == "memory"
        assert body["checks"]["redis"]["status"] == "not_configured"
