from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Union

from fastapi import Request, Response

from coopapp.config import Settings
from coopapp.logging import get_logger

logger = get_logger(__name__)

TOKEN_COOKIE_NAME = "token"
SESSION_TOKEN_TYPE = "session"
VERIFICATION_TOKEN_TYPE = "account_verification"


class TokenFailure(str, Enum):
    """Why a token was rejected. Callers treat every member the same way."""

    MALFORMED = "malformed"
    EXPIRED = "expired"
    BAD_ALGORITHM = "bad_algorithm"


@dataclass(frozen=True)
class TokenClaims:
    subject_id: str
    role: Optional[str]
    tenant_id: Optional[str]
    issued_at: int
    expires_at: int
    jti: str
    token_type: str


class SessionTokenService:
    """HS256 session and verification tokens plus their HTTP transport."""

    def __init__(
        self, settings: Settings, *, clock: Callable[[], float] = time.time
    ) -> None:
        self.settings = settings
        self._clock = clock
        self._secret = settings.jwt_secret.encode()

    @property
    def session_ttl_seconds(self) -> int:
        return self.settings.session_token_ttl_minutes * 60

    def issue(self, subject_id: str, role: str, tenant_id: Optional[str]) -> str:
        return self._issue(
            {"sub": subject_id, "role": role, "tenant_id": tenant_id},
            SESSION_TOKEN_TYPE,
            self.session_ttl_seconds,
        )

    def issue_verification(self, user_id: str, tenant_id: Optional[str]) -> str:
        return self._issue(
            {"sub": user_id, "tenant_id": tenant_id},
            VERIFICATION_TOKEN_TYPE,
            self.settings.account_verification_ttl_hours * 3600,
        )

    def verify(self, token: str) -> Union[TokenClaims, TokenFailure]:
        return self._verify(token, SESSION_TOKEN_TYPE)

    def verify_verification(self, token: str) -> Union[TokenClaims, TokenFailure]:
        return self._verify(token, VERIFICATION_TOKEN_TYPE)

    def extract_from_transport(self, request: Request) -> Optional[str]:
        """Bearer header first, then the ``token`` cookie."""
        header = request.headers.get("authorization")
        if header:
            scheme, _, value = header.partition(" ")
            if scheme.lower() == "bearer" and value.strip():
                return value.strip()
        cookie = request.cookies.get(TOKEN_COOKIE_NAME)
        return cookie or None

    def attach_to_transport(self, response: Response, token: str) -> None:
        response.set_cookie(
            TOKEN_COOKIE_NAME,
            token,
            max_age=self.session_ttl_seconds,
            httponly=True,
            secure=self.settings.cookie_secure,
            samesite="lax",
            path="/",
        )
        response.headers["Authorization"] = f"Bearer {token}"

    def revoke(self, response: Response) -> None:
        response.delete_cookie(
            TOKEN_COOKIE_NAME,
            path="/",
            httponly=True,
            secure=self.settings.cookie_secure,
            samesite="lax",
        )
        response.headers["Authorization"] = ""

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _issue(self, claims: dict[str, Any], token_type: str, ttl_seconds: int) -> str:
        now = int(self._clock())
        payload = {
            **claims,
            "iss": self.settings.jwt_issuer,
            "iat": now,
            "exp": now + ttl_seconds,
            "jti": str(uuid.uuid4()),
            "typ": token_type,
        }
        header_enc = self._encode_segment(
            json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _verify(
        self, token: Optional[str], expected_type: str
    ) -> Union[TokenClaims, TokenFailure]:
        if not token or not isinstance(token, str):
            return TokenFailure.MALFORMED
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            logger.info("token_malformed", reason="segments")
            return TokenFailure.MALFORMED

        # Reject anything but HS256 before touching the signature
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.info("token_malformed", reason="header")
            return TokenFailure.MALFORMED
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            alg = header.get("alg") if isinstance(header, dict) else None
            logger.warning("token_invalid_algorithm", alg=alg)
            return TokenFailure.BAD_ALGORITHM

        expected = self._sign(f"{header_b64}.{payload_b64}").encode()
        if not hmac.compare_digest(expected, sig_b64.encode("utf-8", "surrogatepass")):
            logger.warning("token_signature_mismatch")
            return TokenFailure.MALFORMED
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("token_payload_decode_failed", error=str(exc))
            return TokenFailure.MALFORMED
        if (
            not isinstance(payload, dict)
            or payload.get("iss") != self.settings.jwt_issuer
            or payload.get("typ") != expected_type
            or not payload.get("sub")
            or not payload.get("jti")
        ):
            logger.info("token_malformed", reason="claims")
            return TokenFailure.MALFORMED
        try:
            exp = int(payload["exp"])
            iat = int(payload.get("iat", 0))
        except (KeyError, TypeError, ValueError):
            logger.info("token_malformed", reason="exp")
            return TokenFailure.MALFORMED
        if exp <= self._clock():
            logger.info("token_expired", sub=payload.get("sub"))
            return TokenFailure.EXPIRED
        return TokenClaims(
            subject_id=str(payload["sub"]),
            role=payload.get("role"),
            tenant_id=payload.get("tenant_id"),
            issued_at=iat,
            expires_at=exp,
            jti=str(payload["jti"]),
            token_type=expected_type,
        )


def token_reference(token: str) -> str:
    """Digest stored on the credential record in place of the raw token."""
    return hashlib.sha256(token.encode()).hexdigest()
