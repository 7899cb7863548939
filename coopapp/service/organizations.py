from __future__ import annotations

from typing import TYPE_CHECKING, Any, List, Optional

from coopapp.logging import get_logger
from coopapp.service.errors import NotFoundError
from coopapp.service.permissions import (
    can_create_organization,
    can_delete_organization,
    can_update_organization,
    require,
)
from coopapp.service.roles import is_root
from coopapp.storage.models import Organization

if TYPE_CHECKING:
    from coopapp.service.auth import AuthContext, CredentialStore

logger = get_logger(__name__)

_UPDATABLE_FIELDS = frozenset({"label", "description", "logo_url"})


def organization_for_request(
    store: "CredentialStore", identity: "AuthContext", name: str
) -> Organization:
    """Resolve the ``{tenant}`` path segment for an authenticated caller.

    Root can still reach deactivated tenants; everyone else only sees active
    ones. Deleted tenants are never found.
    """
    org = store.get_organization_by_name(name, include_inactive=is_root(identity.role))
    if org is None:
        raise NotFoundError("Organization not found")
    return org


class OrganizationService:
    def __init__(self, store: "CredentialStore") -> None:
        self.store = store

    def create(
        self,
        identity: "AuthContext",
        name: str,
        *,
        label: Optional[str] = None,
        description: Optional[str] = None,
        logo_url: Optional[str] = None,
    ) -> Organization:
        require(can_create_organization(identity), "Forbidden: Root access required.")
        org = self.store.create_organization(
            name,
            label=label,
            description=description,
            logo_url=logo_url,
            created_by=identity.user_id,
        )
        logger.info("organization_created", organization_id=org.id, name=name)
        return org

    def list(self, identity: "AuthContext", *, limit: int = 100) -> List[Organization]:
        require(is_root(identity.role), "Forbidden: Root access required.")
        return self.store.list_organizations(limit=limit)

    def get_public(self, name: str) -> Organization:
        org = self.store.get_organization_by_name(name)
        if org is None:
            raise NotFoundError("Organization not found")
        return org

    def get_mine(self, identity: "AuthContext") -> Organization:
        org = self.store.get_organization(identity.tenant_id)
        if org is None:
            raise NotFoundError("Organization not found")
        return org

    def update(self, identity: "AuthContext", name: str, **changes: Any) -> Organization:
        org = organization_for_request(self.store, identity, name)
        require(
            can_update_organization(identity, org.id),
            "Forbidden: you cannot update this organization",
        )
        filtered = {k: v for k, v in changes.items() if k in _UPDATABLE_FIELDS and v is not None}
        updated = self.store.update_organization(org.id, **filtered)
        if updated is None:
            raise NotFoundError("Organization not found")
        logger.info("organization_updated", organization_id=org.id, fields=sorted(filtered))
        return updated

    def set_active(self, identity: "AuthContext", name: str, active: bool) -> Organization:
        require(can_delete_organization(identity), "Forbidden: Root access required.")
        org = organization_for_request(self.store, identity, name)
        updated = self.store.update_organization(org.id, is_active=active)
        if updated is None:
            raise NotFoundError("Organization not found")
        logger.info(
            "organization_reactivated" if active else "organization_deactivated",
            organization_id=org.id,
        )
        return updated

    def delete(self, identity: "AuthContext", name: str) -> None:
        require(can_delete_organization(identity), "Forbidden: Root access required.")
        org = organization_for_request(self.store, identity, name)
        self.store.update_organization(org.id, deleted=True, is_active=False)
        logger.info("organization_deleted", organization_id=org.id)
