"""Fine-grained permission rules.

Every rule takes the acting identity and the tenant of the resource it wants
to touch. Root passes the tenant comparison everywhere but still has to meet
the role threshold.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from coopapp.service.errors import ForbiddenError, SelfActionError
from coopapp.service.roles import Role, at_least, is_admin, is_root, is_user, rank

if TYPE_CHECKING:
    from coopapp.service.auth import AuthContext


def _same_tenant_or_root(actor: "AuthContext", target_tenant_id: Optional[str]) -> bool:
    if is_root(actor.role):
        return True
    return actor.tenant_id is not None and actor.tenant_id == target_tenant_id


def can_create_organization(actor: "AuthContext") -> bool:
    return is_root(actor.role)


def can_delete_organization(actor: "AuthContext") -> bool:
    return is_root(actor.role)


def can_manage_org_users(actor: "AuthContext", target_tenant_id: Optional[str]) -> bool:
    return is_admin(actor.role) and _same_tenant_or_root(actor, target_tenant_id)


def can_view_tenant_users(actor: "AuthContext", target_tenant_id: Optional[str]) -> bool:
    return is_admin(actor.role) and _same_tenant_or_root(actor, target_tenant_id)


def can_update_organization(actor: "AuthContext", target_tenant_id: Optional[str]) -> bool:
    return is_admin(actor.role) and _same_tenant_or_root(actor, target_tenant_id)


def can_create_transaction(actor: "AuthContext", target_tenant_id: Optional[str]) -> bool:
    return is_user(actor.role) and _same_tenant_or_root(actor, target_tenant_id)


def can_update_transaction_status(
    actor: "AuthContext", target_tenant_id: Optional[str]
) -> bool:
    return is_admin(actor.role) and _same_tenant_or_root(actor, target_tenant_id)


can_approve_or_reject_transaction = can_update_transaction_status


def can_delete_transaction(actor: "AuthContext", target_tenant_id: Optional[str]) -> bool:
    return is_admin(actor.role) and _same_tenant_or_root(actor, target_tenant_id)


def can_act_on_member(actor: "AuthContext", target_role: str) -> bool:
    """Members who outrank the actor are off limits."""
    return is_root(actor.role) or rank(target_role) <= rank(actor.role)


def can_assign_role(actor: "AuthContext", new_role: Role) -> bool:
    if new_role is Role.ROOT:
        return False
    return at_least(actor.role, new_role)


def require(allowed: bool, message: str = "Forbidden") -> None:
    if not allowed:
        raise ForbiddenError(message)


def ensure_not_self(actor: "AuthContext", target_user_id: str, action: str) -> None:
    """Reject deactivate/delete/role-change aimed at the actor's own record.

    Runs before any role or tenant check so the caller sees this reason.
    """
    if actor.user_id == target_user_id:
        raise SelfActionError(action)
