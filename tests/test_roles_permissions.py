"""Role ordering, capability map and the permission rules built on them."""

import pytest

from coopapp.service.auth import AuthContext
from coopapp.service.errors import ForbiddenError, SelfActionError
from coopapp.service.permissions import (
    can_act_on_member,
    can_approve_or_reject_transaction,
    can_assign_role,
    can_create_organization,
    can_create_transaction,
    can_delete_organization,
    can_delete_transaction,
    can_manage_org_users,
    can_update_organization,
    can_view_tenant_users,
    ensure_not_self,
    require,
)
from coopapp.service.roles import (
    Role,
    at_least,
    capabilities,
    is_admin,
    is_root,
    is_super_admin,
    is_user,
    parse_role,
    rank,
)
from coopapp.service.tenancy import ensure_same_tenant, load_scoped

ALL_ROLES = list(Role)


def _ctx(role, tenant_id="acme-id", user_id="actor"):
    return AuthContext(user_id=user_id, role=role.value if isinstance(role, Role) else role, tenant_id=tenant_id)


class TestRoleOrdering:
    """The single ordering user < admin < superadmin < root."""

    @pytest.mark.parametrize("role", ALL_ROLES)
    def test_admin_implies_user(self, role):
        if is_admin(role):
            assert is_user(role)

    @pytest.mark.parametrize("role", ALL_ROLES)
    def test_root_implies_every_lower_predicate(self, role):
        if is_root(role):
            assert is_super_admin(role) and is_admin(role) and is_user(role)

    @pytest.mark.parametrize("role", ALL_ROLES)
    def test_at_least_is_reflexive(self, role):
        assert at_least(role, role)

    def test_at_least_is_transitive(self):
        for a in ALL_ROLES:
            for b in ALL_ROLES:
                for c in ALL_ROLES:
                    if at_least(a, b) and at_least(b, c):
                        assert at_least(a, c)

    def test_ranks_are_strictly_increasing(self):
        assert rank(Role.USER) < rank(Role.ADMIN) < rank(Role.SUPERADMIN) < rank(Role.ROOT)

    def test_unknown_role_has_no_capabilities(self):
        assert at_least("janitor", Role.USER) is False
        assert capabilities("janitor") == {
            "isUser": False,
            "isAdmin": False,
            "isSuperAdmin": False,
            "isRoot": False,
        }

    def test_parse_role_rejects_unknown_strings(self):
        with pytest.raises(ValueError):
            parse_role("owner")
        assert parse_role("admin") is Role.ADMIN

    def test_capability_map_for_superadmin(self):
        assert capabilities("superadmin") == {
            "isUser": True,
            "isAdmin": True,
            "isSuperAdmin": True,
            "isRoot": False,
        }


class TestPermissionMatrix:
    """Role threshold and tenant comparison for each rule."""

    def test_only_root_creates_and_deletes_organizations(self):
        for role in ALL_ROLES:
            expected = role is Role.ROOT
            assert can_create_organization(_ctx(role)) is expected
            assert can_delete_organization(_ctx(role)) is expected

    @pytest.mark.parametrize(
        "rule",
        [
            can_manage_org_users,
            can_view_tenant_users,
            can_update_organization,
            can_approve_or_reject_transaction,
            can_delete_transaction,
        ],
    )
    def test_admin_rules_need_role_and_tenant(self, rule):
        assert rule(_ctx(Role.ADMIN), "acme-id")
        assert rule(_ctx(Role.SUPERADMIN), "acme-id")
        assert not rule(_ctx(Role.USER), "acme-id")
        assert not rule(_ctx(Role.ADMIN), "beta-id")
        assert not rule(_ctx(Role.SUPERADMIN), "beta-id")

    def test_root_bypasses_tenant_comparison(self):
        root = _ctx(Role.ROOT, tenant_id=None)
        assert can_manage_org_users(root, "beta-id")
        assert can_create_transaction(root, "beta-id")

    def test_tenantless_non_root_never_matches(self):
        orphan = _ctx(Role.ADMIN, tenant_id=None)
        assert not can_manage_org_users(orphan, None)

    def test_users_create_transactions_in_own_tenant_only(self):
        assert can_create_transaction(_ctx(Role.USER), "acme-id")
        assert not can_create_transaction(_ctx(Role.USER), "beta-id")

    def test_admin_cannot_act_on_higher_rank(self):
        admin = _ctx(Role.ADMIN)
        assert can_act_on_member(admin, "user")
        assert can_act_on_member(admin, "admin")
        assert not can_act_on_member(admin, "superadmin")
        assert can_act_on_member(_ctx(Role.ROOT, tenant_id=None), "superadmin")

    def test_role_assignment_never_grants_root(self):
        root = _ctx(Role.ROOT, tenant_id=None)
        assert not can_assign_role(root, Role.ROOT)
        assert can_assign_role(root, Role.SUPERADMIN)
        assert not can_assign_role(_ctx(Role.ADMIN), Role.SUPERADMIN)
        assert can_assign_role(_ctx(Role.ADMIN), Role.ADMIN)

    def test_require_raises_forbidden(self):
        require(True, "unused")
        with pytest.raises(ForbiddenError) as excinfo:
            require(False, "Forbidden: Admins only.")
        assert excinfo.value.status_code == 403
        assert excinfo.value.message == "Forbidden: Admins only."


class TestSelfActionGuard:
    def test_rejects_own_id_with_distinct_code(self):
        admin = _ctx(Role.ADMIN, user_id="a1")
        with pytest.raises(SelfActionError) as excinfo:
            ensure_not_self(admin, "a1", "deactivate")
        assert excinfo.value.status_code == 403
        assert excinfo.value.error_code == "self_action_forbidden"
        assert "own account" in excinfo.value.message

    def test_allows_other_ids(self):
        ensure_not_self(_ctx(Role.ADMIN, user_id="a1"), "u2", "deactivate")


class TestTenantGuard:
    def test_mismatch_is_forbidden(self):
        with pytest.raises(ForbiddenError):
            ensure_same_tenant(_ctx(Role.SUPERADMIN), "beta-id", resource="user")

    def test_root_passes_any_tenant(self):
        ensure_same_tenant(_ctx(Role.ROOT, tenant_id=None), "beta-id", resource="user")

    def test_load_scoped_reports_missing_as_not_found(self):
        from coopapp.service.errors import NotFoundError

        with pytest.raises(NotFoundError) as excinfo:
            load_scoped(_ctx(Role.ADMIN), lambda _id: None, "missing", resource="user")
        assert excinfo.value.message == "User not found"
