from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Organization:
    id: str
    name: str
    label: Optional[str] = None
    description: Optional[str] = None
    logo_url: Optional[str] = None
    is_active: bool = True
    deleted: bool = False
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_available(self) -> bool:
        """Members may only authenticate against active, non-deleted tenants."""
        return self.is_active and not self.deleted


@dataclass
class User:
    """Credential record for a member (or the tenant-less root user).

    ``password_hash`` and the 2FA ``code`` never leave the service layer; the
    API renders records through ``to_public_view``.
    """

    id: str
    tenant_id: Optional[str]
    role: str = "user"
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    user_name: Optional[str] = None
    phone_number: Optional[str] = None
    password_hash: Optional[str] = None
    is_active: bool = True
    is_verified: bool = False
    deleted: bool = False
    code: Optional[str] = None
    code_expires_at: Optional[datetime] = None
    session_token: Optional[str] = None
    last_login_at: Optional[datetime] = None
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def identifiers(self) -> list[str]:
        return [v for v in (self.email, self.user_name, self.phone_number) if v]

    @property
    def can_authenticate(self) -> bool:
        return self.is_active and not self.deleted


@dataclass
class Transaction:
    id: str
    tenant_id: str
    user_id: str
    amount: str
    type: str
    currency: str = "naira"
    method: str = "cash"
    status: str = "pending"
    description: Optional[str] = None
    deleted: bool = False
    created_by: Optional[str] = None
    status_updated_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
