"""Invariant checks shared between the memory and postgres stores.

Both backends call into these helpers on every write so that the credential
record rules live in exactly one place.
"""

from __future__ import annotations

from dataclasses import fields
from typing import Any, Dict, Iterable, Optional

from coopapp.storage.errors import ConstraintViolation, InvariantViolation
from coopapp.storage.models import Organization, Transaction, User

ROOT_ROLE = "root"

# Fields that may never change after a record is created
IMMUTABLE_USER_FIELDS = frozenset({"id", "tenant_id", "created_at", "created_by"})
# 2FA state only moves through set/clear/consume so the pair stays consistent
CHALLENGE_FIELDS = frozenset({"code", "code_expires_at"})
UPDATABLE_USER_FIELDS = frozenset(
    {
        "role",
        "first_name",
        "last_name",
        "email",
        "user_name",
        "phone_number",
        "password_hash",
        "is_active",
        "is_verified",
        "deleted",
        "session_token",
        "last_login_at",
        "updated_by",
        "updated_at",
    }
)
IMMUTABLE_ORGANIZATION_FIELDS = frozenset({"id", "name", "created_at", "created_by"})
IMMUTABLE_TRANSACTION_FIELDS = frozenset(
    {"id", "tenant_id", "user_id", "created_at", "created_by"}
)
ORGANIZATION_FIELDS = frozenset(f.name for f in fields(Organization))
TRANSACTION_FIELDS = frozenset(f.name for f in fields(Transaction))

# Login identifiers share one namespace per tenant
IDENTIFIER_FIELDS = ("email", "user_name", "phone_number")

_DUPLICATE_MESSAGES = {
    "email": "Email already exists in this organization",
    "user_name": "Username already exists in this organization",
    "phone_number": "Phone number already exists in this organization",
}


def normalize_email(value: Optional[str]) -> Optional[str]:
    return value.strip().lower() if value else value


def identifier_matches(user: User, field_name: str, identifier: str) -> bool:
    value = getattr(user, field_name)
    if not value:
        return False
    if field_name == "email":
        return value.lower() == identifier.strip().lower()
    return value == identifier.strip()


def check_user_shape(user: User) -> None:
    """Validate a credential record in isolation."""

    if not user.identifiers:
        raise ConstraintViolation(
            "at least one of email, userName or phoneNumber is required",
            {"field": "email"},
        )
    if user.role == ROOT_ROLE and user.tenant_id is not None:
        raise InvariantViolation("root users cannot belong to an organization")
    if user.role != ROOT_ROLE and not user.tenant_id:
        raise InvariantViolation("organization members require a tenant")
    if (user.code is None) != (user.code_expires_at is None):
        raise InvariantViolation("code and code_expires_at must be set together")


def check_unique_identifiers(user: User, others: Iterable[User]) -> None:
    """Raise ``ConstraintViolation`` when an identifier is taken in the same tenant.

    A value clashes with any identifier field of another member, so a user name
    can never shadow someone else's phone number at login. Soft-deleted records
    no longer reserve their identifiers.
    """

    for existing in others:
        if existing.id == user.id or existing.deleted:
            continue
        if existing.tenant_id != user.tenant_id:
            continue
        for field_name in IDENTIFIER_FIELDS:
            value = getattr(user, field_name)
            if value and any(
                identifier_matches(existing, other, value) for other in IDENTIFIER_FIELDS
            ):
                raise ConstraintViolation(
                    _DUPLICATE_MESSAGES[field_name], {"field": field_name}
                )


def check_user_changes(changes: Dict[str, Any]) -> None:
    blocked = set(changes) & (IMMUTABLE_USER_FIELDS | CHALLENGE_FIELDS)
    if blocked:
        raise InvariantViolation(f"fields cannot be updated directly: {sorted(blocked)}")
    unknown = set(changes) - UPDATABLE_USER_FIELDS
    if unknown:
        raise InvariantViolation(f"unknown user fields: {sorted(unknown)}")


def check_immutable(
    changes: Dict[str, Any], immutable: frozenset[str], known: Iterable[str]
) -> None:
    blocked = set(changes) & immutable
    if blocked:
        raise InvariantViolation(f"fields cannot be updated: {sorted(blocked)}")
    unknown = set(changes) - set(known)
    if unknown:
        raise InvariantViolation(f"unknown fields: {sorted(unknown)}")


__all__ = [
    "IDENTIFIER_FIELDS",
    "ROOT_ROLE",
    "check_immutable",
    "check_unique_identifiers",
    "check_user_changes",
    "check_user_shape",
    "identifier_matches",
    "normalize_email",
]
