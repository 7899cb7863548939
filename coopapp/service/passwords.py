from __future__ import annotations

from dataclasses import replace
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from coopapp.logging import get_logger
from coopapp.storage.models import User, utcnow

logger = get_logger(__name__)


class PasswordService:
    """argon2id hashing for credential records."""

    def __init__(self) -> None:
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    def hash(self, plaintext: str) -> str:
        return self._pwd_hasher.hash(plaintext)

    def verify(self, plaintext: str, hashed: Optional[str]) -> bool:
        """Return False on mismatch or unusable hash; never raises."""
        if not hashed or plaintext is None:
            return False
        try:
            return self._pwd_hasher.verify(hashed, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unusable")
            return False


def set_password(record: User, plaintext: str, hasher: PasswordService) -> User:
    """Return a copy of ``record`` carrying a fresh hash of ``plaintext``.

    This is the only place a password hash is produced.
    """
    return replace(record, password_hash=hasher.hash(plaintext), updated_at=utcnow())
