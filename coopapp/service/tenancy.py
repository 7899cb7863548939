from __future__ import annotations

from typing import TYPE_CHECKING, Callable, Optional, TypeVar

from coopapp.logging import get_logger
from coopapp.service.errors import ForbiddenError, NotFoundError
from coopapp.service.roles import is_root

if TYPE_CHECKING:
    from coopapp.service.auth import AuthContext

logger = get_logger(__name__)

T = TypeVar("T")


def ensure_same_tenant(
    identity: "AuthContext", resource_tenant_id: Optional[str], *, resource: str
) -> None:
    """Raise 403 unless the identity is root or owns the resource's tenant.

    Call only after the resource has been loaded and before it is mutated or
    returned.
    """
    if is_root(identity.role):
        return
    if identity.tenant_id is None or identity.tenant_id != resource_tenant_id:
        logger.warning(
            "tenant_mismatch",
            resource=resource,
            actor_id=identity.user_id,
            actor_tenant_id=identity.tenant_id,
            resource_tenant_id=resource_tenant_id,
        )
        raise ForbiddenError(
            "Access denied: resource belongs to another organization",
            detail={"resource": resource},
        )


def load_scoped(
    identity: "AuthContext",
    loader: Callable[[str], Optional[T]],
    resource_id: str,
    *,
    resource: str,
    tenant_of: Callable[[T], Optional[str]] = lambda r: getattr(r, "tenant_id", None),
) -> T:
    """Fetch a resource (404 when missing or soft-deleted) and apply the tenant guard."""
    record = loader(resource_id)
    if record is None:
        raise NotFoundError(f"{resource.capitalize()} not found")
    ensure_same_tenant(identity, tenant_of(record), resource=resource)
    return record
