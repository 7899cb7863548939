"""Session token issue, verification failure kinds and HTTP transport."""

import base64
import json

from fastapi import Response
from starlette.requests import Request

from coopapp.config import get_settings
from coopapp.service.tokens import (
    TOKEN_COOKIE_NAME,
    SessionTokenService,
    TokenClaims,
    TokenFailure,
    token_reference,
)


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


def _request(headers=None, cookies=None):
    raw_headers = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    if cookies:
        cookie = "; ".join(f"{k}={v}" for k, v in cookies.items())
        raw_headers.append((b"cookie", cookie.encode()))
    return Request({"type": "http", "method": "GET", "path": "/", "headers": raw_headers})


class TestIssueAndVerify:
    def test_round_trip_claims(self):
        service = SessionTokenService(get_settings())
        token = service.issue("user-1", "admin", "tenant-1")
        claims = service.verify(token)
        assert isinstance(claims, TokenClaims)
        assert claims.subject_id == "user-1"
        assert claims.role == "admin"
        assert claims.tenant_id == "tenant-1"
        assert claims.expires_at - claims.issued_at == service.session_ttl_seconds

    def test_root_token_has_null_tenant(self):
        service = SessionTokenService(get_settings())
        claims = service.verify(service.issue("root-1", "root", None))
        assert claims.tenant_id is None

    def test_each_issue_gets_unique_jti(self):
        service = SessionTokenService(get_settings())
        a = service.verify(service.issue("u", "user", "t"))
        b = service.verify(service.issue("u", "user", "t"))
        assert a.jti != b.jti


class TestVerifyFailures:
    def test_expired_token(self):
        clock = FakeClock()
        service = SessionTokenService(get_settings(), clock=clock)
        token = service.issue("user-1", "user", "tenant-1")
        clock.now += service.session_ttl_seconds
        assert service.verify(token) is TokenFailure.EXPIRED

    def test_tampered_payload_is_malformed(self):
        service = SessionTokenService(get_settings())
        header, _payload, sig = service.issue("user-1", "user", "tenant-1").split(".")
        forged = _b64({"sub": "user-1", "role": "root", "tenant_id": None})
        assert service.verify(f"{header}.{forged}.{sig}") is TokenFailure.MALFORMED

    def test_alg_none_is_rejected_before_signature(self):
        service = SessionTokenService(get_settings())
        _header, payload, _sig = service.issue("user-1", "user", "tenant-1").split(".")
        header = _b64({"alg": "none", "typ": "JWT"})
        assert service.verify(f"{header}.{payload}.") is TokenFailure.BAD_ALGORITHM

    def test_garbage_is_malformed(self):
        service = SessionTokenService(get_settings())
        assert service.verify("not-a-token") is TokenFailure.MALFORMED
        assert service.verify("") is TokenFailure.MALFORMED

    def test_non_ascii_signature_is_malformed(self):
        service = SessionTokenService(get_settings())
        token = service.issue("u", "user", "t")
        assert service.verify(token + "é") is TokenFailure.MALFORMED
        assert service.verify(token[:-1] + "\udcff") is TokenFailure.MALFORMED

    def test_other_secret_is_rejected(self):
        service = SessionTokenService(get_settings())
        other = SessionTokenService(
            get_settings().model_copy(update={"jwt_secret": "another-secret-entirely-for-tests"})
        )
        assert service.verify(other.issue("u", "user", "t")) is TokenFailure.MALFORMED

    def test_verification_token_is_not_a_session(self):
        service = SessionTokenService(get_settings())
        verification = service.issue_verification("user-1", "tenant-1")
        assert service.verify(verification) is TokenFailure.MALFORMED
        assert isinstance(service.verify_verification(verification), TokenClaims)
        assert service.verify_verification(service.issue("u", "user", "t")) is TokenFailure.MALFORMED


class TestTransport:
    def test_header_takes_precedence_over_cookie(self):
        service = SessionTokenService(get_settings())
        request = _request(
            headers={"Authorization": "Bearer from-header"},
            cookies={TOKEN_COOKIE_NAME: "from-cookie"},
        )
        assert service.extract_from_transport(request) == "from-header"

    def test_cookie_used_without_header(self):
        service = SessionTokenService(get_settings())
        request = _request(cookies={TOKEN_COOKIE_NAME: "from-cookie"})
        assert service.extract_from_transport(request) == "from-cookie"

    def test_non_bearer_header_ignored(self):
        service = SessionTokenService(get_settings())
        assert service.extract_from_transport(_request(headers={"Authorization": "Basic abc"})) is None
        assert service.extract_from_transport(_request()) is None

    def test_attach_sets_cookie_and_header(self):
        service = SessionTokenService(get_settings())
        response = Response()
        service.attach_to_transport(response, "tok")
        cookie = response.headers["set-cookie"]
        assert cookie.startswith(f"{TOKEN_COOKIE_NAME}=tok")
        assert "httponly" in cookie.lower()
        assert "samesite=lax" in cookie.lower()
        assert response.headers["authorization"] == "Bearer tok"

    def test_revoke_expires_cookie_and_blanks_header(self):
        service = SessionTokenService(get_settings())
        response = Response()
        service.revoke(response)
        cookie = response.headers["set-cookie"].lower()
        assert "max-age=0" in cookie
        assert response.headers["authorization"] == ""

    def test_reference_is_a_digest(self):
        ref = token_reference("abc")
        assert ref != "abc"
        assert len(ref) == 64
        assert ref == token_reference("abc")
