from __future__ import annotations

from dataclasses import fields, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from coopapp.logging import get_logger
from coopapp.storage.common import (
    IDENTIFIER_FIELDS,
    IMMUTABLE_ORGANIZATION_FIELDS,
    IMMUTABLE_TRANSACTION_FIELDS,
    ORGANIZATION_FIELDS,
    TRANSACTION_FIELDS,
    check_immutable,
    check_unique_identifiers,
    check_user_changes,
    check_user_shape,
)
from coopapp.storage.errors import ConstraintViolation, InvariantViolation
from coopapp.storage.models import Organization, Transaction, User, new_id

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS organization (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        label TEXT,
        description TEXT,
        logo_url TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        deleted BOOLEAN NOT NULL DEFAULT FALSE,
        created_by TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS organization_name_live
        ON organization (name) WHERE NOT deleted
    """,
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        tenant_id TEXT REFERENCES organization (id),
        role TEXT NOT NULL DEFAULT 'user',
        first_name TEXT,
        last_name TEXT,
        email TEXT,
        user_name TEXT,
        phone_number TEXT,
        password_hash TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        is_verified BOOLEAN NOT NULL DEFAULT FALSE,
        deleted BOOLEAN NOT NULL DEFAULT FALSE,
        code TEXT,
        code_expires_at TIMESTAMPTZ,
        session_token TEXT,
        last_login_at TIMESTAMPTZ,
        created_by TEXT,
        updated_by TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT app_user_identifier_present
            CHECK (email IS NOT NULL OR user_name IS NOT NULL OR phone_number IS NOT NULL),
        CONSTRAINT app_user_root_tenant
            CHECK ((role = 'root') = (tenant_id IS NULL)),
        CONSTRAINT app_user_code_pair
            CHECK ((code IS NULL) = (code_expires_at IS NULL))
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS app_user_email_per_tenant
        ON app_user (COALESCE(tenant_id, ''), lower(email))
        WHERE email IS NOT NULL AND NOT deleted
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS app_user_user_name_per_tenant
        ON app_user (COALESCE(tenant_id, ''), user_name)
        WHERE user_name IS NOT NULL AND NOT deleted
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS app_user_phone_number_per_tenant
        ON app_user (COALESCE(tenant_id, ''), phone_number)
        WHERE phone_number IS NOT NULL AND NOT deleted
    """,
    """
    CREATE TABLE IF NOT EXISTS ledger_transaction (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL REFERENCES organization (id),
        user_id TEXT NOT NULL REFERENCES app_user (id),
        amount NUMERIC(18, 2) NOT NULL,
        type TEXT NOT NULL,
        currency TEXT NOT NULL DEFAULT 'naira',
        method TEXT NOT NULL DEFAULT 'cash',
        status TEXT NOT NULL DEFAULT 'pending',
        description TEXT,
        deleted BOOLEAN NOT NULL DEFAULT FALSE,
        created_by TEXT,
        status_updated_by TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)

_DUPLICATE_BY_INDEX = {
    "app_user_email_per_tenant": ("email", "Email already exists in this organization"),
    "app_user_user_name_per_tenant": (
        "user_name",
        "Username already exists in this organization",
    ),
    "app_user_phone_number_per_tenant": (
        "phone_number",
        "Phone number already exists in this organization",
    ),
    "organization_name_live": ("name", "Organization name already exists"),
}

_USER_COLUMNS = [f.name for f in fields(User)]
_TRANSACTION_COLUMNS = [f.name for f in fields(Transaction)]


def _constraint_violation(exc: errors.UniqueViolation) -> ConstraintViolation:
    name = getattr(exc.diag, "constraint_name", None) or ""
    field_name, message = _DUPLICATE_BY_INDEX.get(name, ("id", "record already exists"))
    return ConstraintViolation(message, {"field": field_name})


class PostgresStore:
    """Postgres-backed store for organizations, credential records and ledger rows."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create tables and partial unique indexes if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready")

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_organization(row: Dict[str, Any]) -> Organization:
        return Organization(
            id=str(row["id"]),
            name=row["name"],
            label=row.get("label"),
            description=row.get("description"),
            logo_url=row.get("logo_url"),
            is_active=row.get("is_active", True),
            deleted=row.get("deleted", False),
            created_by=row.get("created_by"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        return User(**{name: row.get(name) for name in _USER_COLUMNS if name in row})

    @staticmethod
    def _row_to_transaction(row: Dict[str, Any]) -> Transaction:
        values = {name: row.get(name) for name in _TRANSACTION_COLUMNS if name in row}
        values["amount"] = format(row["amount"], "f")
        return Transaction(**values)

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO organization (id, name, label, description, logo_url, created_by)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (new_id(), name, label, description, logo_url, created_by),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _constraint_violation(exc) from exc
        return self._row_to_organization(row)

    def get_organization(self, org_id: Optional[str]) -> Optional[Organization]:
        if not org_id:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM organization WHERE id = %s AND NOT deleted", (org_id,)
            ).fetchone()
        return self._row_to_organization(row) if row else None

    def get_organization_by_name(
        self, name: str, *, include_inactive: bool = False
    ) -> Optional[Organization]:
        query = "SELECT * FROM organization WHERE name = %s AND NOT deleted"
        if not include_inactive:
            query += " AND is_active"
        with self._connect() as conn:
            row = conn.execute(query, (name,)).fetchone()
        return self._row_to_organization(row) if row else None

    def list_organizations(
        self, *, include_inactive: bool = True, limit: int = 100
    ) -> List[Organization]:
        query = "SELECT * FROM organization WHERE NOT deleted"
        if not include_inactive:
            query += " AND is_active"
        query += " ORDER BY created_at LIMIT %s"
        with self._connect() as conn:
            rows = conn.execute(query, (limit,)).fetchall()
        return [self._row_to_organization(row) for row in rows]

    def update_organization(self, org_id: str, **changes: Any) -> Optional[Organization]:
        check_immutable(changes, IMMUTABLE_ORGANIZATION_FIELDS, ORGANIZATION_FIELDS)
        changes.pop("updated_at", None)
        assignments = ", ".join(f"{column} = %s" for column in changes)
        set_clause = f"{assignments}, updated_at = now()" if assignments else "updated_at = now()"
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE organization SET {set_clause} WHERE id = %s AND NOT deleted RETURNING *",
                    (*changes.values(), org_id),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _constraint_violation(exc) from exc
        return self._row_to_organization(row) if row else None

    # users
    def _check_identifier_namespace(self, conn, user: User) -> None:
        """Reject identifiers already used in any identifier column of the tenant.

        The partial unique indexes only cover one column each; the advisory lock
        serializes identifier writes per tenant until the transaction commits.
        """

        values = [v.strip() for v in (user.email, user.user_name, user.phone_number) if v]
        scope = user.tenant_id or ""
        conn.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", ("app_user:" + scope,))
        rows = conn.execute(
            """
            SELECT * FROM app_user
            WHERE COALESCE(tenant_id, '') = %s AND id <> %s AND NOT deleted
              AND (lower(email) = ANY(%s) OR user_name = ANY(%s) OR phone_number = ANY(%s))
            """,
            (scope, user.id, [v.lower() for v in values], values, values),
        ).fetchall()
        check_unique_identifiers(user, (self._row_to_user(row) for row in rows))

    def create_user(self, user: User) -> User:
        check_user_shape(user)
        columns = ", ".join(_USER_COLUMNS)
        placeholders = ", ".join(["%s"] * len(_USER_COLUMNS))
        try:
            with self._connect() as conn:
                self._check_identifier_namespace(conn, user)
                row = conn.execute(
                    f"INSERT INTO app_user ({columns}) VALUES ({placeholders}) RETURNING *",
                    tuple(getattr(user, name) for name in _USER_COLUMNS),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _constraint_violation(exc) from exc
        except errors.ForeignKeyViolation as exc:
            raise InvariantViolation("tenant does not exist") from exc
        return self._row_to_user(row)

    def get_user(self, user_id: Optional[str]) -> Optional[User]:
        if not user_id:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s AND NOT deleted", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def find_user_by_identifier(
        self, tenant_id: Optional[str], identifier: str
    ) -> Optional[User]:
        if not identifier or not identifier.strip():
            return None
        value = identifier.strip()
        if tenant_id is None:
            scope = "tenant_id IS NULL AND role = 'root'"
            params: tuple = ()
        else:
            scope = "tenant_id = %s"
            params = (tenant_id,)
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT * FROM app_user
                WHERE {scope} AND NOT deleted
                  AND (lower(email) = lower(%s) OR user_name = %s OR phone_number = %s)
                ORDER BY CASE
                    WHEN lower(email) = lower(%s) THEN 0
                    WHEN user_name = %s THEN 1
                    ELSE 2
                END
                LIMIT 1
                """,
                (*params, value, value, value, value, value),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def list_users(
        self,
        tenant_id: Optional[str],
        *,
        role: Optional[str] = None,
        is_active: Optional[bool] = None,
        q: Optional[str] = None,
        limit: int = 100,
    ) -> List[User]:
        clauses = ["NOT deleted"]
        params: list[Any] = []
        if tenant_id is None:
            clauses.append("tenant_id IS NULL")
        else:
            clauses.append("tenant_id = %s")
            params.append(tenant_id)
        if role is not None:
            clauses.append("role = %s")
            params.append(role)
        if is_active is not None:
            clauses.append("is_active = %s")
            params.append(is_active)
        if q:
            clauses.append(
                "concat_ws(' ', first_name, last_name, email, user_name, phone_number) ILIKE %s"
            )
            params.append(f"%{q.strip()}%")
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM app_user WHERE {' AND '.join(clauses)} ORDER BY created_at LIMIT %s",
                tuple(params),
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def update_user(self, user_id: str, **changes: Any) -> Optional[User]:
        check_user_changes(changes)
        changes.pop("updated_at", None)
        try:
            with self._connect() as conn:
                current = conn.execute(
                    "SELECT * FROM app_user WHERE id = %s AND NOT deleted FOR UPDATE",
                    (user_id,),
                ).fetchone()
                if not current:
                    return None
                updated = replace(self._row_to_user(current), **changes)
                check_user_shape(updated)
                if set(changes) & set(IDENTIFIER_FIELDS):
                    self._check_identifier_namespace(conn, updated)
                assignments = ", ".join(f"{column} = %s" for column in changes)
                set_clause = (
                    f"{assignments}, updated_at = now()" if assignments else "updated_at = now()"
                )
                row = conn.execute(
                    f"UPDATE app_user SET {set_clause} WHERE id = %s RETURNING *",
                    (*changes.values(), user_id),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _constraint_violation(exc) from exc
        return self._row_to_user(row) if row else None

    # two-factor challenge state
    def set_two_factor_code(
        self, user_id: str, code: str, expires_at: datetime
    ) -> Optional[User]:
        if not code or expires_at is None:
            raise InvariantViolation("code and code_expires_at must be set together")
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user SET code = %s, code_expires_at = %s, updated_at = now()
                WHERE id = %s AND NOT deleted RETURNING *
                """,
                (code, expires_at, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def clear_two_factor_code(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE app_user SET code = NULL, code_expires_at = NULL, updated_at = now()
                WHERE id = %s AND code IS NOT NULL
                """,
                (user_id,),
            )

    def consume_two_factor_code(
        self,
        user_id: str,
        code: str,
        *,
        now: datetime,
        session_token: str,
        last_login_at: Optional[datetime] = None,
    ) -> Optional[User]:
        """Single conditional UPDATE; the row lock makes concurrent consumers race safely."""

        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET code = NULL,
                    code_expires_at = NULL,
                    session_token = %s,
                    last_login_at = %s,
                    updated_at = %s
                WHERE id = %s
                  AND NOT deleted
                  AND code = %s
                  AND code_expires_at > %s
                RETURNING *
                """,
                (session_token, last_login_at or now, now, user_id, code, now),
            ).fetchone()
        return self._row_to_user(row) if row else None

    # transactions
    def create_transaction(self, txn: Transaction) -> Transaction:
        columns = ", ".join(_TRANSACTION_COLUMNS)
        placeholders = ", ".join(["%s"] * len(_TRANSACTION_COLUMNS))
        with self._connect() as conn:
            owner = conn.execute(
                "SELECT tenant_id FROM app_user WHERE id = %s AND NOT deleted",
                (txn.user_id,),
            ).fetchone()
            if not owner or owner["tenant_id"] != txn.tenant_id:
                raise InvariantViolation("transaction owner must belong to the tenant")
            row = conn.execute(
                f"INSERT INTO ledger_transaction ({columns}) VALUES ({placeholders}) RETURNING *",
                tuple(getattr(txn, name) for name in _TRANSACTION_COLUMNS),
            ).fetchone()
        return self._row_to_transaction(row)

    def get_transaction(self, txn_id: str) -> Optional[Transaction]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM ledger_transaction WHERE id = %s AND NOT deleted",
                (txn_id,),
            ).fetchone()
        return self._row_to_transaction(row) if row else None

    def list_transactions(
        self,
        tenant_id: str,
        *,
        user_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 100,
    ) -> List[Transaction]:
        clauses = ["tenant_id = %s", "NOT deleted"]
        params: list[Any] = [tenant_id]
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        if status is not None:
            clauses.append("status = %s")
            params.append(status)
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM ledger_transaction WHERE {' AND '.join(clauses)} "
                "ORDER BY created_at DESC LIMIT %s",
                tuple(params),
            ).fetchall()
        return [self._row_to_transaction(row) for row in rows]

    def update_transaction(self, txn_id: str, **changes: Any) -> Optional[Transaction]:
        check_immutable(changes, IMMUTABLE_TRANSACTION_FIELDS, TRANSACTION_FIELDS)
        changes.pop("updated_at", None)
        assignments = ", ".join(f"{column} = %s" for column in changes)
        set_clause = f"{assignments}, updated_at = now()" if assignments else "updated_at = now()"
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE ledger_transaction SET {set_clause} WHERE id = %s AND NOT deleted RETURNING *",
                (*changes.values(), txn_id),
            ).fetchone()
        return self._row_to_transaction(row) if row else None
