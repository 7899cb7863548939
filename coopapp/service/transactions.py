from __future__ import annotations

from typing import TYPE_CHECKING, List, Optional

from coopapp.logging import get_logger
from coopapp.service.errors import ForbiddenError, NotFoundError
from coopapp.service.organizations import organization_for_request
from coopapp.service.permissions import (
    can_create_transaction,
    can_delete_transaction,
    can_update_transaction_status,
    can_view_tenant_users,
    require,
)
from coopapp.service.roles import is_admin
from coopapp.service.tenancy import load_scoped
from coopapp.storage.models import Transaction, new_id

if TYPE_CHECKING:
    from coopapp.service.auth import AuthContext, CredentialStore

logger = get_logger(__name__)

TRANSACTION_TYPES = (
    "contributions",
    "withdrawal",
    "dividend",
    "expense",
    "interest_income",
    "loan_disbursement",
    "loan_repayment",
    "shares",
    "membership_fee",
)
CURRENCIES = ("naira", "dollar", "euro")
METHODS = ("cash", "transfer", "paystack")
STATUSES = ("pending", "approved", "rejected")


class TransactionService:
    """Ledger rows behind the identity gate; no accounting logic lives here."""

    def __init__(self, store: "CredentialStore") -> None:
        self.store = store

    def create(
        self,
        identity: "AuthContext",
        organization_name: str,
        *,
        amount: str,
        type: str,
        currency: str = "naira",
        method: str = "cash",
        description: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Transaction:
        org = organization_for_request(self.store, identity, organization_name)
        require(
            can_create_transaction(identity, org.id),
            "Forbidden: you cannot record transactions for this organization",
        )
        owner_id = user_id or identity.user_id
        if owner_id != identity.user_id:
            if not is_admin(identity.role):
                raise ForbiddenError("You can only record your own transactions")
            owner = load_scoped(identity, self.store.get_user, owner_id, resource="user")
            if owner.tenant_id != org.id:
                raise NotFoundError("User not found")
        elif identity.tenant_id != org.id:
            # Root has no membership to book against
            raise ForbiddenError("A member must own the transaction")
        txn = self.store.create_transaction(
            Transaction(
                id=new_id(),
                tenant_id=org.id,
                user_id=owner_id,
                amount=amount,
                type=type,
                currency=currency,
                method=method,
                description=description,
                created_by=identity.user_id,
            )
        )
        logger.info(
            "transaction_created",
            transaction_id=txn.id,
            tenant_id=org.id,
            actor_id=identity.user_id,
        )
        return txn

    def list(
        self,
        identity: "AuthContext",
        organization_name: str,
        *,
        status: Optional[str] = None,
        limit: int = 100,
    ) -> List[Transaction]:
        org = organization_for_request(self.store, identity, organization_name)
        require(
            can_create_transaction(identity, org.id),
            "Forbidden: you cannot view transactions for this organization",
        )
        owner = None if is_admin(identity.role) else identity.user_id
        return self.store.list_transactions(org.id, user_id=owner, status=status, limit=limit)

    def list_own(
        self,
        identity: "AuthContext",
        organization_name: str,
        *,
        status: Optional[str] = None,
        limit: int = 100,
    ) -> List[Transaction]:
        """The caller's own rows, whatever their role."""
        org = organization_for_request(self.store, identity, organization_name)
        require(
            can_create_transaction(identity, org.id),
            "Forbidden: you cannot view transactions for this organization",
        )
        return self.store.list_transactions(
            org.id, user_id=identity.user_id, status=status, limit=limit
        )

    def list_for_member(
        self,
        identity: "AuthContext",
        organization_name: str,
        member_id: str,
        *,
        status: Optional[str] = None,
        limit: int = 100,
    ) -> List[Transaction]:
        org = organization_for_request(self.store, identity, organization_name)
        require(can_view_tenant_users(identity, org.id), "Forbidden: Admins only.")
        member = load_scoped(identity, self.store.get_user, member_id, resource="user")
        if member.tenant_id != org.id:
            raise NotFoundError("User not found")
        return self.store.list_transactions(
            org.id, user_id=member.id, status=status, limit=limit
        )

    def get(
        self, identity: "AuthContext", organization_name: str, transaction_id: str
    ) -> Transaction:
        org = organization_for_request(self.store, identity, organization_name)
        txn = self._load(identity, org.id, transaction_id)
        if not is_admin(identity.role) and txn.user_id != identity.user_id:
            raise ForbiddenError("You can only view your own transactions")
        return txn

    def update_status(
        self,
        identity: "AuthContext",
        organization_name: str,
        transaction_id: str,
        status: str,
    ) -> Transaction:
        org = organization_for_request(self.store, identity, organization_name)
        require(can_update_transaction_status(identity, org.id), "Forbidden: Admins only.")
        txn = self._load(identity, org.id, transaction_id)
        updated = self.store.update_transaction(
            txn.id, status=status, status_updated_by=identity.user_id
        )
        logger.info(
            "transaction_status_updated",
            transaction_id=txn.id,
            status=status,
            actor_id=identity.user_id,
        )
        return updated

    def delete(
        self, identity: "AuthContext", organization_name: str, transaction_id: str
    ) -> None:
        org = organization_for_request(self.store, identity, organization_name)
        require(can_delete_transaction(identity, org.id), "Forbidden: Admins only.")
        txn = self._load(identity, org.id, transaction_id)
        self.store.update_transaction(txn.id, deleted=True)
        logger.info("transaction_deleted", transaction_id=txn.id, actor_id=identity.user_id)

    def _load(self, identity: "AuthContext", org_id: str, transaction_id: str) -> Transaction:
        txn = load_scoped(
            identity, self.store.get_transaction, transaction_id, resource="transaction"
        )
        if txn.tenant_id != org_id:
            raise NotFoundError("Transaction not found")
        return txn
