from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, List, Optional
from urllib.parse import quote

from coopapp.config import Settings
from coopapp.logging import get_logger
from coopapp.service.errors import BadRequestError, ForbiddenError, NotFoundError
from coopapp.service.notifications import Notifier
from coopapp.service.organizations import organization_for_request
from coopapp.service.passwords import PasswordService, set_password
from coopapp.service.permissions import (
    can_act_on_member,
    can_assign_role,
    can_manage_org_users,
    can_view_tenant_users,
    ensure_not_self,
    require,
)
from coopapp.service.roles import Role, parse_role
from coopapp.service.tenancy import ensure_same_tenant, load_scoped
from coopapp.service.tokens import SessionTokenService, TokenFailure
from coopapp.storage.models import Organization, User, new_id

if TYPE_CHECKING:
    from coopapp.service.auth import AuthContext, AuthService, CredentialStore

logger = get_logger(__name__)

ADMINS_ONLY_MESSAGE = "Forbidden: Admins only."
INVALID_VERIFICATION_MESSAGE = "Invalid or expired verification link"


class MemberService:
    """Member lifecycle inside one organization.

    Guards run in a fixed order: self-action, role and tenant permission on the
    path organization, load of the target (404), tenant match against the
    target, then the rank check.
    """

    def __init__(
        self,
        store: "CredentialStore",
        settings: Settings,
        *,
        auth: "AuthService",
        passwords: PasswordService,
        tokens: SessionTokenService,
        notifier: Notifier,
    ) -> None:
        self.store = store
        self.settings = settings
        self.auth = auth
        self.passwords = passwords
        self.tokens = tokens
        self.notifier = notifier

    # self-service
    async def register(
        self,
        organization_name: str,
        *,
        password: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        email: Optional[str] = None,
        user_name: Optional[str] = None,
        phone_number: Optional[str] = None,
    ) -> User:
        """Guest sign-up: role user, inactive until an admin activates it."""
        org = self.auth.resolve_organization(organization_name)
        record = User(
            id=new_id(),
            tenant_id=org.id,
            role=Role.USER.value,
            first_name=first_name,
            last_name=last_name,
            email=email,
            user_name=user_name,
            phone_number=phone_number,
            is_active=False,
            is_verified=False,
        )
        user = self.store.create_user(set_password(record, password, self.passwords))
        logger.info("member_registered", user_id=user.id, tenant_id=org.id)
        await asyncio.to_thread(self.notifier.send_registration_received, user, org)
        return user

    async def verify_account(
        self, organization_name: str, token: str, password: str
    ) -> User:
        """First password set for an admin-created account; single use."""
        org = self.auth.resolve_organization(organization_name)
        claims = self.tokens.verify_verification(token)
        if isinstance(claims, TokenFailure):
            raise BadRequestError(INVALID_VERIFICATION_MESSAGE)
        user = self.store.get_user(claims.subject_id)
        if user is None or user.tenant_id != org.id or user.is_verified:
            logger.info("account_verification_rejected", user_id=claims.subject_id)
            raise BadRequestError(INVALID_VERIFICATION_MESSAGE)
        hashed = set_password(user, password, self.passwords)
        updated = self.store.update_user(
            user.id,
            password_hash=hashed.password_hash,
            is_verified=True,
            updated_by=user.id,
        )
        logger.info("account_verified", user_id=user.id, tenant_id=org.id)
        return updated

    def get_me(self, identity: "AuthContext", organization_name: Optional[str] = None) -> User:
        if organization_name is not None:
            org = organization_for_request(self.store, identity, organization_name)
            ensure_same_tenant(identity, org.id, resource="organization")
        user = self.store.get_user(identity.user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    def update_profile(
        self,
        identity: "AuthContext",
        target_user_id: str,
        *,
        organization_name: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> User:
        if identity.user_id != target_user_id:
            raise ForbiddenError("You can only update your own profile")
        self.get_me(identity, organization_name)
        changes = {
            k: v
            for k, v in (("first_name", first_name), ("last_name", last_name))
            if v is not None
        }
        updated = self.store.update_user(
            identity.user_id, updated_by=identity.user_id, **changes
        )
        if updated is None:
            raise NotFoundError("User not found")
        return updated

    def change_password(
        self,
        identity: "AuthContext",
        current_password: str,
        new_password: str,
        *,
        organization_name: Optional[str] = None,
    ) -> User:
        user = self.get_me(identity, organization_name)
        if not self.passwords.verify(current_password, user.password_hash):
            logger.warning("password_change_rejected", user_id=user.id)
            raise BadRequestError("Current password is incorrect")
        hashed = set_password(user, new_password, self.passwords)
        updated = self.store.update_user(
            user.id, password_hash=hashed.password_hash, updated_by=user.id
        )
        logger.info("password_changed", user_id=user.id)
        return updated

    # administration
    async def admin_create(
        self,
        identity: "AuthContext",
        organization_name: str,
        *,
        role: str = Role.USER.value,
        password: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        email: Optional[str] = None,
        user_name: Optional[str] = None,
        phone_number: Optional[str] = None,
    ) -> User:
        """Admin-created accounts start active but unverified."""
        org = organization_for_request(self.store, identity, organization_name)
        require(can_manage_org_users(identity, org.id), ADMINS_ONLY_MESSAGE)
        new_role = parse_role(role)
        require(
            can_assign_role(identity, new_role),
            f"Forbidden: you cannot assign the {new_role.value} role",
        )
        record = User(
            id=new_id(),
            tenant_id=org.id,
            role=new_role.value,
            first_name=first_name,
            last_name=last_name,
            email=email,
            user_name=user_name,
            phone_number=phone_number,
            is_active=True,
            is_verified=False,
            created_by=identity.user_id,
            updated_by=identity.user_id,
        )
        if password:
            record = set_password(record, password, self.passwords)
        user = self.store.create_user(record)
        logger.info(
            "member_created",
            user_id=user.id,
            tenant_id=org.id,
            role=user.role,
            actor_id=identity.user_id,
        )
        await self._send_verification(user, org)
        return user

    def get_member(
        self, identity: "AuthContext", organization_name: str, user_id: str
    ) -> User:
        org = organization_for_request(self.store, identity, organization_name)
        require(can_view_tenant_users(identity, org.id), ADMINS_ONLY_MESSAGE)
        return self._load_target(identity, org, user_id)

    def list_members(
        self,
        identity: "AuthContext",
        organization_name: str,
        *,
        role: Optional[str] = None,
        is_active: Optional[bool] = None,
        q: Optional[str] = None,
        limit: int = 100,
    ) -> List[User]:
        org = organization_for_request(self.store, identity, organization_name)
        require(can_view_tenant_users(identity, org.id), ADMINS_ONLY_MESSAGE)
        return self.store.list_users(
            org.id, role=role, is_active=is_active, q=q, limit=limit
        )

    def deactivate(
        self, identity: "AuthContext", organization_name: str, user_id: str
    ) -> User:
        ensure_not_self(identity, user_id, "deactivate")
        target = self._managed_target(identity, organization_name, user_id)
        updated = self.store.update_user(
            target.id, is_active=False, session_token=None, updated_by=identity.user_id
        )
        logger.info("member_deactivated", user_id=target.id, actor_id=identity.user_id)
        return updated

    def activate(
        self, identity: "AuthContext", organization_name: str, user_id: str
    ) -> User:
        target = self._managed_target(identity, organization_name, user_id)
        updated = self.store.update_user(
            target.id, is_active=True, updated_by=identity.user_id
        )
        logger.info("member_activated", user_id=target.id, actor_id=identity.user_id)
        return updated

    def change_role(
        self,
        identity: "AuthContext",
        organization_name: str,
        user_id: str,
        role: str,
    ) -> User:
        ensure_not_self(identity, user_id, "change the role of")
        target = self._managed_target(identity, organization_name, user_id)
        new_role = parse_role(role)
        require(
            can_assign_role(identity, new_role),
            f"Forbidden: you cannot assign the {new_role.value} role",
        )
        # Outstanding tokens carry the old role; force a fresh login
        updated = self.store.update_user(
            target.id,
            role=new_role.value,
            session_token=None,
            updated_by=identity.user_id,
        )
        logger.info(
            "member_role_changed",
            user_id=target.id,
            old_role=target.role,
            new_role=new_role.value,
            actor_id=identity.user_id,
        )
        return updated

    def delete(self, identity: "AuthContext", organization_name: str, user_id: str) -> None:
        ensure_not_self(identity, user_id, "delete")
        target = self._managed_target(identity, organization_name, user_id)
        self.store.update_user(
            target.id,
            deleted=True,
            is_active=False,
            session_token=None,
            updated_by=identity.user_id,
        )
        logger.info("member_deleted", user_id=target.id, actor_id=identity.user_id)

    def _managed_target(
        self, identity: "AuthContext", organization_name: str, user_id: str
    ) -> User:
        org = organization_for_request(self.store, identity, organization_name)
        require(can_manage_org_users(identity, org.id), ADMINS_ONLY_MESSAGE)
        target = self._load_target(identity, org, user_id)
        require(
            can_act_on_member(identity, target.role),
            "Forbidden: you cannot manage a member with a higher role",
        )
        return target

    def _load_target(self, identity: "AuthContext", org: Organization, user_id: str) -> User:
        target = load_scoped(identity, self.store.get_user, user_id, resource="user")
        if target.tenant_id != org.id:
            # Only root gets here: the record lives under another organization
            raise NotFoundError("User not found")
        return target

    async def _send_verification(self, user: User, org: Organization) -> None:
        token = self.tokens.issue_verification(user.id, user.tenant_id)
        link = (
            f"{self.settings.frontend_base_url}/organizations/{quote(org.name)}"
            f"/verify-account?token={quote(token)}"
        )
        await asyncio.to_thread(self.notifier.send_account_verification, user, org, link)
