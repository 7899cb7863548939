from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from coopapp.api.schemas import Envelope, ErrorBody
from coopapp.logging import get_logger
from coopapp.service.errors import ServiceError
from coopapp.storage.errors import ConstraintViolation, InvariantViolation

logger = get_logger(__name__)

# Generic code per HTTP status, used when the raise site did not pick one
_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    429: "rate_limited",
    500: "server_error",
}

# Keys pydantic puts on each error that may hold raw input or live objects
_UNSAFE_VALIDATION_KEYS = frozenset({"ctx", "url", "input"})


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: Any = None,
    code: Optional[str] = None,
) -> JSONResponse:
    body = ErrorBody(
        code=code or _error_code_for_status(status_code),
        message=message,
        details=details or None,
    )
    # 401 bodies are identical for every caller; the id stays in the X-Request-ID header
    exclude = {"request_id"} if status_code == 401 else None
    return JSONResponse(
        status_code=status_code,
        content=Envelope(status="error", error=body).model_dump(exclude=exclude),
    )


def _validation_details(exc: RequestValidationError) -> list:
    return jsonable_encoder(
        [
            {k: v for k, v in err.items() if k not in _UNSAFE_VALIDATION_KEYS}
            for err in exc.errors()
        ]
    )


def _log_failure(request: Request, event: str, status_code: int, **fields: Any) -> None:
    log = logger.error if status_code >= 500 else logger.warning
    log(event, path=request.url.path, method=request.method, status_code=status_code, **fields)


def register_exception_handlers(app: FastAPI) -> None:
    """Render every failure, including router 404/405s, as an error envelope."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        _log_failure(
            request,
            "service_error",
            exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        return _error_response(exc.status_code, exc.message, exc.detail, code=exc.error_code)

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        # Duplicate identifiers within a tenant, duplicate organization names
        _log_failure(request, "constraint_violation", 409, detail=exc.detail)
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(InvariantViolation)
    async def handle_invariant_violation(request: Request, exc: InvariantViolation):
        _log_failure(request, "invariant_violation", 400, error=str(exc))
        return _error_response(400, str(exc), code="validation_error")

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = _validation_details(exc)
        _log_failure(request, "request_validation_error", 400, error_count=len(details))
        return _error_response(400, "invalid request", details, code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        detail = exc.detail
        error = detail.get("error") if isinstance(detail, dict) else None
        if isinstance(error, dict):
            # Raised through routes._http_error with the envelope already shaped
            code = error.get("code")
            message = error.get("message", "http error")
            details = error.get("details")
        else:
            # Router-level 404/405 and other plain HTTPExceptions
            code = _STATUS_TO_CODE.get(
                exc.status_code,
                "validation_error" if exc.status_code < 500 else "server_error",
            )
            message = detail if isinstance(detail, str) else "http error"
            details = None
        _log_failure(request, "http_error", exc.status_code, error_code=code)
        return _error_response(exc.status_code, message, details, code=code)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, "internal server error", code="server_error")
