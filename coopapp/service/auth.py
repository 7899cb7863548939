from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, NoReturn, Optional, Protocol, Tuple

from fastapi import Request

from coopapp.config import Settings
from coopapp.logging import get_logger
from coopapp.service.errors import AuthenticationError, NotFoundError
from coopapp.service.passwords import PasswordService
from coopapp.service.roles import Role, is_root
from coopapp.service.tokens import (
    SessionTokenService,
    TokenFailure,
    token_reference,
)
from coopapp.service.two_factor import TwoFactorChallengeManager
from coopapp.storage.models import Organization, Transaction, User

logger = get_logger(__name__)

NO_TOKEN_MESSAGE = "Access denied. No token provided."
INVALID_TOKEN_MESSAGE = "Invalid token."
INVALID_CREDENTIALS_MESSAGE = "Invalid credentials"
INVALID_CODE_MESSAGE = "Invalid or expired code"
ORGANIZATION_NOT_FOUND_MESSAGE = "Organization not found"


class CredentialStore(Protocol):
    def create_organization(
        self,
        name: str,
        *,
        label: Optional[str] = None,
        description: Optional[str] = None,
        logo_url: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> Organization: ...

    def get_organization(self, org_id: Optional[str]) -> Optional[Organization]: ...

    def get_organization_by_name(
        self, name: str, *, include_inactive: bool = False
    ) -> Optional[Organization]: ...

    def list_organizations(
        self, *, include_inactive: bool = True, limit: int = 100
    ) -> List[Organization]: ...

    def update_organization(self, org_id: str, **changes) -> Optional[Organization]: ...

    def create_user(self, user: User) -> User: ...

    def get_user(self, user_id: Optional[str]) -> Optional[User]: ...

    def find_user_by_identifier(
        self, tenant_id: Optional[str], identifier: str
    ) -> Optional[User]: ...

    def list_users(
        self,
        tenant_id: Optional[str],
        *,
        role: Optional[str] = None,
        is_active: Optional[bool] = None,
        q: Optional[str] = None,
        limit: int = 100,
    ) -> List[User]: ...

    def update_user(self, user_id: str, **changes) -> Optional[User]: ...

    def set_two_factor_code(
        self, user_id: str, code: str, expires_at: datetime
    ) -> Optional[User]: ...

    def clear_two_factor_code(self, user_id: str) -> None: ...

    def consume_two_factor_code(
        self,
        user_id: str,
        code: str,
        *,
        now: datetime,
        session_token: str,
        last_login_at: Optional[datetime] = None,
    ) -> Optional[User]: ...

    def create_transaction(self, txn: Transaction) -> Transaction: ...

    def get_transaction(self, txn_id: str) -> Optional[Transaction]: ...

    def list_transactions(
        self,
        tenant_id: str,
        *,
        user_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 100,
    ) -> List[Transaction]: ...

    def update_transaction(self, txn_id: str, **changes) -> Optional[Transaction]: ...


@dataclass
class AuthContext:
    user_id: str
    role: str
    tenant_id: Optional[str]
    token_id: Optional[str] = None


@dataclass
class ChallengeIssued:
    user_id: str
    expires_in_seconds: int
    delivery: str = "email"


class AuthService:
    """Credential checks, the 2FA login flow and per-request token authentication."""

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        passwords: PasswordService,
        tokens: SessionTokenService,
        two_factor: TwoFactorChallengeManager,
    ) -> None:
        self.store = store
        self.settings = settings
        self.passwords = passwords
        self.tokens = tokens
        self.two_factor = two_factor
        self.logger = logger

    def resolve_organization(self, organization_name: Optional[str]) -> Optional[Organization]:
        """Active, non-deleted tenant by name; ``None`` name means the root realm."""
        if organization_name is None:
            return None
        org = self.store.get_organization_by_name(organization_name)
        if org is None or not org.is_available:
            raise NotFoundError(ORGANIZATION_NOT_FOUND_MESSAGE)
        return org

    async def submit_credentials(
        self, organization_name: Optional[str], identifier: str, password: str
    ) -> ChallengeIssued:
        org = self.resolve_organization(organization_name)
        tenant_id = org.id if org else None
        user = self.store.find_user_by_identifier(tenant_id, identifier)
        if user is None:
            self._login_failed("unknown_identifier", tenant_id)
        elif not user.can_authenticate:
            self._login_failed("inactive", tenant_id, user.id)
        elif org is None and user.role != Role.ROOT.value:
            self._login_failed("not_root", tenant_id, user.id)
        elif not self.passwords.verify(password, user.password_hash):
            self._login_failed("bad_password", tenant_id, user.id)
        await self.two_factor.issue_challenge(user, org)
        return ChallengeIssued(
            user_id=user.id,
            expires_in_seconds=self.settings.two_factor_code_ttl_minutes * 60,
        )

    async def verify_two_factor(
        self, organization_name: Optional[str], identifier: str, code: str
    ) -> Tuple[User, str]:
        org = self.resolve_organization(organization_name)
        tenant_id = org.id if org else None
        user = self.store.find_user_by_identifier(tenant_id, identifier)
        if user is None or not user.can_authenticate:
            self.logger.info("two_factor_rejected", reason="no_eligible_user", tenant_id=tenant_id)
            raise AuthenticationError(INVALID_CODE_MESSAGE)
        token = self.tokens.issue(user.id, user.role, user.tenant_id)
        consumed = await self.two_factor.verify_and_consume(
            user, code, session_token=token_reference(token)
        )
        if consumed is None:
            raise AuthenticationError(INVALID_CODE_MESSAGE)
        self.logger.info("login_succeeded", user_id=user.id, tenant_id=tenant_id, role=user.role)
        return consumed, token

    def authenticate_request(self, request: Request) -> AuthContext:
        """Token extraction, verification and live-record checks for one request."""
        token = self.tokens.extract_from_transport(request)
        if not token:
            raise AuthenticationError(NO_TOKEN_MESSAGE)
        claims = self.tokens.verify(token)
        if isinstance(claims, TokenFailure):
            raise AuthenticationError(INVALID_TOKEN_MESSAGE)
        user = self.store.get_user(claims.subject_id)
        if user is None or not user.can_authenticate:
            self._reject_token("record_unavailable", claims.subject_id)
        if claims.tenant_id != user.tenant_id:
            self._reject_token("tenant_claim_mismatch", user.id)
        if not is_root(user.role):
            org = self.store.get_organization(user.tenant_id)
            if org is None or not org.is_available:
                self._reject_token("organization_unavailable", user.id)
        if (
            self.settings.enforce_single_session
            and user.session_token != token_reference(token)
        ):
            self._reject_token("session_superseded", user.id)
        # Live role, not the role baked into the token
        return AuthContext(
            user_id=user.id, role=user.role, tenant_id=user.tenant_id, token_id=claims.jti
        )

    def logout(self, identity: Optional[AuthContext]) -> None:
        """Drop the stored token reference. Safe to call repeatedly."""
        if identity is None:
            return
        user = self.store.get_user(identity.user_id)
        if user is None or user.session_token is None:
            return
        self.store.update_user(identity.user_id, session_token=None)
        self.logger.info("logout", user_id=identity.user_id)

    def _login_failed(
        self, reason: str, tenant_id: Optional[str], user_id: Optional[str] = None
    ) -> NoReturn:
        self.logger.warning("login_failed", reason=reason, tenant_id=tenant_id, user_id=user_id)
        raise AuthenticationError(INVALID_CREDENTIALS_MESSAGE)

    def _reject_token(self, reason: str, user_id: Optional[str]) -> NoReturn:
        self.logger.info("token_rejected", reason=reason, user_id=user_id)
        raise AuthenticationError(INVALID_TOKEN_MESSAGE)
