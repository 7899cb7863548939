from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a store invariant (uniqueness, identifier presence) is violated.

    ``detail`` names the offending field so the API layer can report it without
    parsing the message.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class InvariantViolation(ValueError):
    """Raised when a write would leave a record in a state the store forbids."""


__all__ = ["ConstraintViolation", "InvariantViolation"]
