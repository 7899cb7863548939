"""Memory store invariants, identifier lookup and JSON persistence."""

from datetime import timedelta

import pytest

from coopapp.storage.errors import ConstraintViolation, InvariantViolation
from coopapp.storage.memory import MemoryStore
from coopapp.storage.models import Transaction, User, new_id, utcnow


@pytest.fixture
def store():
    return MemoryStore(persist=False)


@pytest.fixture
def acme(store):
    return store.create_organization("acme", label="Acme Cooperative")


def _user(org, **fields):
    fields.setdefault("role", "user")
    return User(id=new_id(), tenant_id=org.id if org else None, **fields)


class TestUserShape:
    def test_identifier_required(self, store, acme):
        with pytest.raises(ConstraintViolation):
            store.create_user(_user(acme, first_name="Nobody"))

    def test_root_cannot_have_tenant(self, store, acme):
        with pytest.raises(InvariantViolation):
            store.create_user(_user(acme, role="root", email="root@x.test"))

    def test_member_requires_tenant(self, store):
        with pytest.raises(InvariantViolation):
            store.create_user(_user(None, email="lost@x.test"))

    def test_unknown_tenant_rejected(self, store):
        with pytest.raises(InvariantViolation):
            store.create_user(User(id=new_id(), tenant_id="ghost", email="a@x.test"))

    def test_challenge_fields_not_directly_updatable(self, store, acme):
        user = store.create_user(_user(acme, email="a@x.test"))
        with pytest.raises(InvariantViolation):
            store.update_user(user.id, code="123456")

    def test_immutable_fields_rejected(self, store, acme):
        user = store.create_user(_user(acme, email="a@x.test"))
        with pytest.raises(InvariantViolation):
            store.update_user(user.id, tenant_id="other")
        with pytest.raises(InvariantViolation):
            store.update_user(user.id, created_at=utcnow())

    def test_set_two_factor_code_requires_pair(self, store, acme):
        user = store.create_user(_user(acme, email="a@x.test"))
        with pytest.raises(InvariantViolation):
            store.set_two_factor_code(user.id, "", utcnow())


class TestUniqueness:
    def test_email_unique_per_tenant_case_insensitive(self, store, acme):
        store.create_user(_user(acme, email="Ada@X.test"))
        with pytest.raises(ConstraintViolation) as excinfo:
            store.create_user(_user(acme, email="ada@x.test"))
        assert excinfo.value.detail == {"field": "email"}

    def test_same_email_allowed_in_other_tenant(self, store, acme):
        beta = store.create_organization("beta")
        store.create_user(_user(acme, email="ada@x.test"))
        store.create_user(_user(beta, email="ada@x.test"))

    def test_user_name_and_phone_unique(self, store, acme):
        store.create_user(_user(acme, user_name="ada", phone_number="+2348000000001"))
        with pytest.raises(ConstraintViolation):
            store.create_user(_user(acme, user_name="ada"))
        with pytest.raises(ConstraintViolation):
            store.create_user(_user(acme, phone_number="+2348000000001"))

    def test_identifiers_share_one_namespace(self, store, acme):
        store.create_user(_user(acme, phone_number="5551234567"))
        with pytest.raises(ConstraintViolation) as excinfo:
            store.create_user(_user(acme, user_name="5551234567"))
        assert excinfo.value.detail == {"field": "user_name"}
        other = store.create_user(_user(acme, user_name="bob"))
        with pytest.raises(ConstraintViolation):
            store.update_user(other.id, phone_number="bob")

    def test_own_identifiers_may_repeat(self, store, acme):
        user = store.create_user(_user(acme, user_name="5551234567", phone_number="5551234567"))
        assert store.find_user_by_identifier(acme.id, "5551234567").id == user.id

    def test_soft_deleted_user_frees_identifier(self, store, acme):
        first = store.create_user(_user(acme, email="ada@x.test"))
        store.update_user(first.id, deleted=True)
        store.create_user(_user(acme, email="ada@x.test"))

    def test_update_cannot_steal_identifier(self, store, acme):
        store.create_user(_user(acme, email="ada@x.test"))
        other = store.create_user(_user(acme, email="bob@x.test"))
        with pytest.raises(ConstraintViolation):
            store.update_user(other.id, email="ada@x.test")

    def test_organization_name_unique(self, store, acme):
        with pytest.raises(ConstraintViolation):
            store.create_organization("acme")


class TestLookup:
    def test_any_identifier_resolves_same_record(self, store, acme):
        user = store.create_user(
            _user(acme, email="ada@x.test", user_name="ada", phone_number="+2348000000001")
        )
        for identifier in ("ADA@x.test", "ada", "+2348000000001"):
            assert store.find_user_by_identifier(acme.id, identifier).id == user.id

    def test_lookup_is_scoped_to_tenant(self, store, acme):
        beta = store.create_organization("beta")
        store.create_user(_user(acme, email="ada@x.test"))
        assert store.find_user_by_identifier(beta.id, "ada@x.test") is None

    def test_null_tenant_matches_root_only(self, store, acme):
        root = store.create_user(_user(None, role="root", email="root@x.test"))
        store.create_user(_user(acme, email="member@x.test"))
        assert store.find_user_by_identifier(None, "root@x.test").id == root.id
        assert store.find_user_by_identifier(None, "member@x.test") is None

    def test_deleted_records_are_invisible(self, store, acme):
        user = store.create_user(_user(acme, email="ada@x.test"))
        store.update_user(user.id, deleted=True)
        assert store.get_user(user.id) is None
        assert store.find_user_by_identifier(acme.id, "ada@x.test") is None

    def test_reads_return_copies(self, store, acme):
        user = store.create_user(_user(acme, email="ada@x.test"))
        fetched = store.get_user(user.id)
        fetched.role = "root"
        assert store.get_user(user.id).role == "user"

    def test_list_users_filters(self, store, acme):
        store.create_user(_user(acme, email="ada@x.test", first_name="Ada"))
        store.create_user(_user(acme, email="bob@x.test", role="admin", is_active=False))
        assert [u.email for u in store.list_users(acme.id, role="admin")] == ["bob@x.test"]
        assert [u.email for u in store.list_users(acme.id, is_active=True)] == ["ada@x.test"]
        assert [u.email for u in store.list_users(acme.id, q="ada")] == ["ada@x.test"]

    def test_inactive_organization_hidden_by_default(self, store, acme):
        store.update_organization(acme.id, is_active=False)
        assert store.get_organization_by_name("acme") is None
        assert store.get_organization_by_name("acme", include_inactive=True).id == acme.id


class TestTransactions:
    def test_owner_must_belong_to_tenant(self, store, acme):
        beta = store.create_organization("beta")
        outsider = store.create_user(_user(beta, email="out@x.test"))
        with pytest.raises(InvariantViolation):
            store.create_transaction(
                Transaction(id=new_id(), tenant_id=acme.id, user_id=outsider.id, amount="10", type="shares")
            )

    def test_list_newest_first_and_skip_deleted(self, store, acme):
        owner = store.create_user(_user(acme, email="ada@x.test"))
        now = utcnow()
        older = store.create_transaction(
            Transaction(
                id=new_id(),
                tenant_id=acme.id,
                user_id=owner.id,
                amount="10",
                type="shares",
                created_at=now - timedelta(minutes=1),
            )
        )
        newer = store.create_transaction(
            Transaction(id=new_id(), tenant_id=acme.id, user_id=owner.id, amount="20", type="shares", created_at=now)
        )
        assert [t.id for t in store.list_transactions(acme.id)] == [newer.id, older.id]
        store.update_transaction(older.id, deleted=True)
        assert [t.id for t in store.list_transactions(acme.id)] == [newer.id]

    def test_transaction_tenant_immutable(self, store, acme):
        owner = store.create_user(_user(acme, email="ada@x.test"))
        txn = store.create_transaction(
            Transaction(id=new_id(), tenant_id=acme.id, user_id=owner.id, amount="10", type="shares")
        )
        with pytest.raises(InvariantViolation):
            store.update_transaction(txn.id, tenant_id="other")


class TestPersistence:
    def test_state_survives_restart(self, tmp_path):
        first = MemoryStore(fs_root=str(tmp_path))
        org = first.create_organization("acme")
        user = first.create_user(_user(org, email="ada@x.test", role="admin"))
        first.set_two_factor_code(user.id, "123456", utcnow() + timedelta(minutes=5))

        second = MemoryStore(fs_root=str(tmp_path))
        loaded = second.get_user(user.id)
        assert loaded.role == "admin"
        assert loaded.code == "123456"
        assert loaded.code_expires_at.tzinfo is not None
        assert second.get_organization_by_name("acme").id == org.id

    def test_corrupt_state_starts_empty(self, tmp_path):
        root = tmp_path / "corrupt"
        state = root / "state"
        state.mkdir(parents=True)
        (state / "coop_store.json").write_text("{not json")
        store = MemoryStore(fs_root=str(root))
        assert store.list_organizations() == []
