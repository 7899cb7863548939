from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from coopapp.logging import get_correlation_id
from coopapp.service.roles import Role, capabilities
from coopapp.service.transactions import CURRENCIES, METHODS, STATUSES, TRANSACTION_TYPES
from coopapp.storage.models import Organization, Transaction, User

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "self_action_forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


def _request_id() -> str:
    # Echo the caller's X-Request-ID when it sent one
    return get_correlation_id() or str(uuid4())


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


_NAME_PATTERN = re.compile(r"^[a-zA-Z\s'-]+$")
_USER_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]+$")
_PHONE_PATTERN = re.compile(r"^\+?[0-9]{7,15}$")
_IDENTIFIER_PATTERN = re.compile(r"^[a-zA-Z0-9@_.\-+]+$")
_ORG_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]*$")
_CODE_PATTERN = re.compile(r"^[0-9]{6}$")
_AMOUNT_PATTERN = re.compile(r"^[0-9]+(\.[0-9]{1,2})?$")
_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    return unicodedata.normalize("NFKC", cleaned)


def _validate_email(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_person_name(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    if not 2 <= len(value) <= 50:
        raise ValueError("name must be between 2 and 50 characters")
    if not _NAME_PATTERN.match(value):
        raise ValueError("name may only contain letters, spaces, apostrophes and hyphens")
    return value


def _validate_user_name(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    if not 3 <= len(value) <= 30:
        raise ValueError("userName must be between 3 and 30 characters")
    if not _USER_NAME_PATTERN.match(value):
        raise ValueError("userName may only contain letters, digits, '_', '.' and '-'")
    return value


def _validate_phone(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    if not _PHONE_PATTERN.match(value):
        raise ValueError("phoneNumber must be 7 to 15 digits with an optional leading '+'")
    return value


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    if not (
        re.search(r"[a-z]", value)
        and re.search(r"[A-Z]", value)
        and re.search(r"[0-9]", value)
        and re.search(r"[^a-zA-Z0-9]", value)
    ):
        raise ValueError(
            "password must contain a lowercase letter, an uppercase letter, a digit and a special character"
        )
    return value


class _ApiModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class _IdentifierRequest(_ApiModel):
    identifier: str

    @field_validator("identifier")
    @classmethod
    def _validate_identifier(cls, value: str) -> str:
        value = value.strip()
        if not 3 <= len(value) <= 50 or not _IDENTIFIER_PATTERN.match(value):
            raise ValueError("identifier must be an email, userName or phoneNumber")
        return value


class LoginRequest(_IdentifierRequest):
    password: str = Field(..., min_length=1, max_length=128)


class VerifyCodeRequest(_IdentifierRequest):
    code: str

    @field_validator("code")
    @classmethod
    def _validate_code(cls, value: str) -> str:
        value = value.strip()
        if not _CODE_PATTERN.match(value):
            raise ValueError("code must be exactly 6 digits")
        return value


class _MemberFields(_ApiModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    user_name: Optional[str] = None
    phone_number: Optional[str] = None

    @field_validator("first_name", "last_name")
    @classmethod
    def _validate_names(cls, value: Optional[str]) -> Optional[str]:
        return _validate_person_name(value)

    @field_validator("email")
    @classmethod
    def _validate_member_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value)

    @field_validator("user_name")
    @classmethod
    def _validate_member_user_name(cls, value: Optional[str]) -> Optional[str]:
        return _validate_user_name(value)

    @field_validator("phone_number")
    @classmethod
    def _validate_member_phone(cls, value: Optional[str]) -> Optional[str]:
        return _validate_phone(value)

    @model_validator(mode="after")
    def _require_identifier(self):
        if not (self.email or self.user_name or self.phone_number):
            raise ValueError("at least one of email, userName or phoneNumber is required")
        return self


class RegisterRequest(_MemberFields):
    password: str

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class AdminCreateUserRequest(_MemberFields):
    role: Role = Role.USER
    password: Optional[str] = None

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _validate_password_strength(value)


class VerifyAccountRequest(_ApiModel):
    token: str = Field(..., min_length=1, max_length=4096)
    password: str

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class ProfileUpdateRequest(_ApiModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="forbid"
    )

    first_name: Optional[str] = None
    last_name: Optional[str] = None

    @field_validator("first_name", "last_name")
    @classmethod
    def _validate_names(cls, value: Optional[str]) -> Optional[str]:
        return _validate_person_name(value)

    @model_validator(mode="after")
    def _require_change(self):
        if self.first_name is None and self.last_name is None:
            raise ValueError("provide firstName and/or lastName")
        return self


class PasswordChangeRequest(_ApiModel):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class RoleChangeRequest(_ApiModel):
    role: Role


class OrganizationCreateRequest(_ApiModel):
    name: str
    label: Optional[str] = Field(default=None, max_length=120)
    description: Optional[str] = Field(default=None, max_length=2000)
    logo_url: Optional[str] = Field(default=None, max_length=2048)

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        value = value.strip().lower()
        if not 2 <= len(value) <= 64 or not _ORG_NAME_PATTERN.match(value):
            raise ValueError(
                "name must be 2 to 64 characters of lowercase letters, digits and hyphens"
            )
        return value


class OrganizationUpdateRequest(_ApiModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="forbid"
    )

    label: Optional[str] = Field(default=None, max_length=120)
    description: Optional[str] = Field(default=None, max_length=2000)
    logo_url: Optional[str] = Field(default=None, max_length=2048)


class TransactionCreateRequest(_ApiModel):
    amount: str
    type: Literal[TRANSACTION_TYPES]  # type: ignore[valid-type]
    currency: Literal[CURRENCIES] = "naira"  # type: ignore[valid-type]
    method: Literal[METHODS] = "cash"  # type: ignore[valid-type]
    description: Optional[str] = Field(default=None, max_length=500)
    user_id: Optional[str] = Field(default=None, max_length=64)

    @field_validator("amount", mode="before")
    @classmethod
    def _validate_amount(cls, value: Any) -> str:
        text = str(value).strip()
        if not _AMOUNT_PATTERN.match(text):
            raise ValueError("amount must be a positive number with at most 2 decimals")
        try:
            if Decimal(text) <= 0:
                raise ValueError("amount must be greater than zero")
        except InvalidOperation as exc:
            raise ValueError("amount must be numeric") from exc
        return text


class TransactionStatusRequest(_ApiModel):
    status: Literal[STATUSES]  # type: ignore[valid-type]


class UserPublic(_ApiModel):
    id: str
    tenant_id: Optional[str] = None
    role: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    user_name: Optional[str] = None
    phone_number: Optional[str] = None
    is_active: bool
    is_verified: bool
    last_login_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    capabilities: dict[str, bool]


def to_public_view(user: User) -> UserPublic:
    """Render a credential record without its hash, code or token reference."""
    return UserPublic(
        id=user.id,
        tenant_id=user.tenant_id,
        role=user.role,
        first_name=user.first_name,
        last_name=user.last_name,
        email=user.email,
        user_name=user.user_name,
        phone_number=user.phone_number,
        is_active=user.is_active,
        is_verified=user.is_verified,
        last_login_at=user.last_login_at,
        created_at=user.created_at,
        updated_at=user.updated_at,
        capabilities=capabilities(user.role),
    )


class UserListResponse(_ApiModel):
    items: list[UserPublic]


class LoginChallengeResponse(_ApiModel):
    message: str = "A verification code has been sent"
    delivery: str = "email"
    expires_in_seconds: int


class SessionResponse(_ApiModel):
    user: UserPublic
    token: str
    token_type: str = "Bearer"
    expires_in: int


class OrganizationResponse(_ApiModel):
    id: str
    name: str
    label: Optional[str] = None
    description: Optional[str] = None
    logo_url: Optional[str] = None
    is_active: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_record(cls, org: Organization) -> "OrganizationResponse":
        return cls(
            id=org.id,
            name=org.name,
            label=org.label,
            description=org.description,
            logo_url=org.logo_url,
            is_active=org.is_active,
            created_at=org.created_at,
            updated_at=org.updated_at,
        )


class OrganizationListResponse(_ApiModel):
    items: list[OrganizationResponse]


class TransactionResponse(_ApiModel):
    id: str
    tenant_id: str
    user_id: str
    amount: str
    type: str
    currency: str
    method: str
    status: str
    description: Optional[str] = None
    created_by: Optional[str] = None
    status_updated_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_record(cls, txn: Transaction) -> "TransactionResponse":
        return cls(
            id=txn.id,
            tenant_id=txn.tenant_id,
            user_id=txn.user_id,
            amount=txn.amount,
            type=txn.type,
            currency=txn.currency,
            method=txn.method,
            status=txn.status,
            description=txn.description,
            created_by=txn.created_by,
            status_updated_by=txn.status_updated_by,
            created_at=txn.created_at,
            updated_at=txn.updated_at,
        )


class TransactionListResponse(_ApiModel):
    items: list[TransactionResponse]
