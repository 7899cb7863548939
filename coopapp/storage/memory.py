from __future__ import annotations

import hmac
import json
import threading
from dataclasses import asdict, fields, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Type, TypeVar

from coopapp.logging import get_logger
from coopapp.storage.common import (
    IDENTIFIER_FIELDS,
    IMMUTABLE_ORGANIZATION_FIELDS,
    IMMUTABLE_TRANSACTION_FIELDS,
    ORGANIZATION_FIELDS,
    TRANSACTION_FIELDS,
    ROOT_ROLE,
    check_immutable,
    check_unique_identifiers,
    check_user_changes,
    check_user_shape,
    identifier_matches,
)
from coopapp.storage.errors import ConstraintViolation, InvariantViolation
from coopapp.storage.models import Organization, Transaction, User, new_id, utcnow

_Record = TypeVar("_Record", Organization, User, Transaction)


class MemoryStore:
    """In-process backing store with JSON snapshots under ``fs_root/state``.

    Every read hands back a copy so callers cannot change stored records
    without going through the write methods (and their invariant checks).
    """

    def __init__(self, fs_root: str = "/tmp/coopapp", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.organizations: Dict[str, Organization] = {}
        self.users: Dict[str, User] = {}
        self.transactions: Dict[str, Transaction] = {}
        # RLock for all data operations; nested acquisitions happen when a
        # write method calls a read helper
        self._data_lock = threading.RLock()
        self.persist = persist
        self.fs_root = Path(fs_root)
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            if not self._load_state():
                self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "coop_store.json"

    # organizations
    def create_organization(
        self,
        name: str,
        *,
        label: Optional[str] = None,
        description: Optional[str] = None,
        logo_url: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> Organization:
        with self._data_lock:
            if any(
                org.name == name and not org.deleted
                for org in self.organizations.values()
            ):
                raise ConstraintViolation(
                    "Organization name already exists", {"field": "name"}
                )
            org = Organization(
                id=new_id(),
                name=name,
                label=label,
                description=description,
                logo_url=logo_url,
                created_by=created_by,
            )
            self.organizations[org.id] = org
            self._persist_state()
            return replace(org)

    def get_organization(self, org_id: Optional[str]) -> Optional[Organization]:
        with self._data_lock:
            org = self.organizations.get(org_id) if org_id else None
            if org is None or org.deleted:
                return None
            return replace(org)

    def get_organization_by_name(
        self, name: str, *, include_inactive: bool = False
    ) -> Optional[Organization]:
        with self._data_lock:
            for org in self.organizations.values():
                if org.name != name or org.deleted:
                    continue
                if not org.is_active and not include_inactive:
                    return None
                return replace(org)
            return None

    def list_organizations(
        self, *, include_inactive: bool = True, limit: int = 100
    ) -> List[Organization]:
        with self._data_lock:
            results = [
                replace(org)
                for org in self.organizations.values()
                if not org.deleted and (include_inactive or org.is_active)
            ]
            return sorted(results, key=lambda o: o.created_at)[:limit]

    def update_organization(self, org_id: str, **changes: Any) -> Optional[Organization]:
        check_immutable(changes, IMMUTABLE_ORGANIZATION_FIELDS, ORGANIZATION_FIELDS)
        with self._data_lock:
            org = self.organizations.get(org_id)
            if org is None or org.deleted:
                return None
            updated = replace(org, **changes)
            updated.updated_at = changes.get("updated_at") or utcnow()
            self.organizations[org_id] = updated
            self._persist_state()
            return replace(updated)

    # users
    def create_user(self, user: User) -> User:
        with self._data_lock:
            if user.id in self.users:
                raise ConstraintViolation("user id already exists", {"field": "id"})
            check_user_shape(user)
            if user.tenant_id is not None and self.get_organization(user.tenant_id) is None:
                raise InvariantViolation("tenant does not exist")
            check_unique_identifiers(user, self.users.values())
            stored = replace(user)
            self.users[stored.id] = stored
            self._persist_state()
            return replace(stored)

    def get_user(self, user_id: Optional[str]) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id) if user_id else None
            if user is None or user.deleted:
                return None
            return replace(user)

    def find_user_by_identifier(
        self, tenant_id: Optional[str], identifier: str
    ) -> Optional[User]:
        """Resolve a login identifier inside one tenant.

        Email is tried first, then user name, then phone number. A ``None``
        tenant only matches the root user.
        """

        if not identifier or not identifier.strip():
            return None
        with self._data_lock:
            candidates = [
                u
                for u in self.users.values()
                if not u.deleted
                and u.tenant_id == tenant_id
                and (tenant_id is not None or u.role == ROOT_ROLE)
            ]
            for field_name in IDENTIFIER_FIELDS:
                for user in candidates:
                    if identifier_matches(user, field_name, identifier):
                        return replace(user)
            return None

    def list_users(
        self,
        tenant_id: Optional[str],
        *,
        role: Optional[str] = None,
        is_active: Optional[bool] = None,
        q: Optional[str] = None,
        limit: int = 100,
    ) -> List[User]:
        needle = q.strip().lower() if q else None
        with self._data_lock:
            results = []
            for user in self.users.values():
                if user.deleted or user.tenant_id != tenant_id:
                    continue
                if role is not None and user.role != role:
                    continue
                if is_active is not None and user.is_active != is_active:
                    continue
                if needle:
                    haystack = " ".join(
                        v
                        for v in (
                            user.first_name,
                            user.last_name,
                            user.email,
                            user.user_name,
                            user.phone_number,
                        )
                        if v
                    ).lower()
                    if needle not in haystack:
                        continue
                results.append(replace(user))
            return sorted(results, key=lambda u: u.created_at)[:limit]

    def update_user(self, user_id: str, **changes: Any) -> Optional[User]:
        check_user_changes(changes)
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None or user.deleted:
                return None
            updated = replace(user, **changes)
            updated.updated_at = changes.get("updated_at") or utcnow()
            check_user_shape(updated)
            check_unique_identifiers(updated, self.users.values())
            self.users[user_id] = updated
            self._persist_state()
            return replace(updated)

    # two-factor challenge state
    def set_two_factor_code(
        self, user_id: str, code: str, expires_at: datetime
    ) -> Optional[User]:
        if not code or expires_at is None:
            raise InvariantViolation("code and code_expires_at must be set together")
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None or user.deleted:
                return None
            user.code = code
            user.code_expires_at = expires_at
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    def clear_two_factor_code(self, user_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None or (user.code is None and user.code_expires_at is None):
                return
            user.code = None
            user.code_expires_at = None
            user.updated_at = utcnow()
            self._persist_state()

    def consume_two_factor_code(
        self,
        user_id: str,
        code: str,
        *,
        now: datetime,
        session_token: str,
        last_login_at: Optional[datetime] = None,
    ) -> Optional[User]:
        """Atomically swap a live challenge for a session token.

        Returns ``None`` (and changes nothing) unless the stored code matches
        and has not expired. Of two concurrent callers presenting the same
        code, at most one gets a record back.
        """

        with self._data_lock:
            user = self.users.get(user_id)
            if (
                user is None
                or user.deleted
                or user.code is None
                or user.code_expires_at is None
                or not hmac.compare_digest(user.code, code)
                or user.code_expires_at <= now
            ):
                return None
            user.code = None
            user.code_expires_at = None
            user.session_token = session_token
            user.last_login_at = last_login_at or now
            user.updated_at = now
            self._persist_state()
            return replace(user)

    # transactions
    def create_transaction(self, txn: Transaction) -> Transaction:
        with self._data_lock:
            if self.get_organization(txn.tenant_id) is None:
                raise InvariantViolation("tenant does not exist")
            member = self.get_user(txn.user_id)
            if member is None or member.tenant_id != txn.tenant_id:
                raise InvariantViolation("transaction owner must belong to the tenant")
            stored = replace(txn)
            self.transactions[stored.id] = stored
            self._persist_state()
            return replace(stored)

    def get_transaction(self, txn_id: str) -> Optional[Transaction]:
        with self._data_lock:
            txn = self.transactions.get(txn_id)
            if txn is None or txn.deleted:
                return None
            return replace(txn)

    def list_transactions(
        self,
        tenant_id: str,
        *,
        user_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 100,
    ) -> List[Transaction]:
        with self._data_lock:
            results = [
                replace(t)
                for t in self.transactions.values()
                if not t.deleted
                and t.tenant_id == tenant_id
                and (user_id is None or t.user_id == user_id)
                and (status is None or t.status == status)
            ]
            return sorted(results, key=lambda t: t.created_at, reverse=True)[:limit]

    def update_transaction(self, txn_id: str, **changes: Any) -> Optional[Transaction]:
        check_immutable(changes, IMMUTABLE_TRANSACTION_FIELDS, TRANSACTION_FIELDS)
        with self._data_lock:
            txn = self.transactions.get(txn_id)
            if txn is None or txn.deleted:
                return None
            updated = replace(txn, **changes)
            updated.updated_at = changes.get("updated_at") or utcnow()
            self.transactions[txn_id] = updated
            self._persist_state()
            return replace(updated)

    # persistence
    @staticmethod
    def _serialize_record(record: Any) -> Dict[str, Any]:
        data = asdict(record)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
        return data

    @staticmethod
    def _deserialize_record(cls: Type[_Record], raw: Dict[str, Any]) -> _Record:
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in raw.items() if k in known}
        for key in ("created_at", "updated_at", "code_expires_at", "last_login_at"):
            if isinstance(values.get(key), str):
                values[key] = datetime.fromisoformat(values[key])
        return cls(**values)

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "organizations": [
                self._serialize_record(o) for o in self.organizations.values()
            ],
            "users": [self._serialize_record(u) for u in self.users.values()],
            "transactions": [
                self._serialize_record(t) for t in self.transactions.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.warning("memory_store_state_corrupt", path=str(path), error=str(exc))
            return False
        self.organizations = {
            o["id"]: self._deserialize_record(Organization, o)
            for o in data.get("organizations", [])
        }
        self.users = {
            u["id"]: self._deserialize_record(User, u) for u in data.get("users", [])
        }
        self.transactions = {
            t["id"]: self._deserialize_record(Transaction, t)
            for t in data.get("transactions", [])
        }
        self.logger.info(
            "memory_store_state_loaded",
            organizations=len(self.organizations),
            users=len(self.users),
        )
        return True
