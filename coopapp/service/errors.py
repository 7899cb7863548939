from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Domain failure that the API layer renders as an error envelope.

    ``status_code`` and ``error_code`` are class defaults; a raise site may
    override either. ``detail`` ends up in ``error.details`` verbatim, so it
    must never carry credentials or the reason a login failed.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code or type(self).status_code
        self.error_code = error_code or type(self).error_code
        self.detail = detail or {}


class BadRequestError(ServiceError):
    """Well-formed request that cannot be applied, e.g. a stale verification link."""


class AuthenticationError(ServiceError):
    """401. Messages stay generic; the real reason only goes to the log."""

    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """403: role too low or resource owned by another organization."""

    status_code = 403
    error_code = "forbidden"


class SelfActionError(ForbiddenError):
    """An actor aimed deactivate, delete or a role change at their own record."""

    error_code = "self_action_forbidden"

    def __init__(self, action: str) -> None:
        super().__init__(f"You cannot {action} your own account", detail={"action": action})
        self.action = action


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    status_code = 409
    error_code = "conflict"


__all__ = [
    "AuthenticationError",
    "BadRequestError",
    "ConflictError",
    "ForbiddenError",
    "NotFoundError",
    "SelfActionError",
    "ServiceError",
]
