from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, List, Optional

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_MAX_CORRELATION_ID_LENGTH = 128

# Substring matches: anything that looks like a credential or contact detail
_SENSITIVE_KEY_PARTS = ("password", "secret", "token", "authorization", "email", "phone")
# Exact matches only, so error_code and status_code stay readable
_SENSITIVE_EXACT_KEYS = frozenset({"code", "submitted_code"})

_TRUTHY = {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Adopt the caller's request ID (trimmed, length-capped) or mint a UUID."""
    cid = (correlation_id or "").strip()[:_MAX_CORRELATION_ID_LENGTH] or str(uuid.uuid4())
    correlation_id_var.set(cid)
    structlog.contextvars.clear_contextvars()
    return cid


def bind_identity(user_id: str, tenant_id: Optional[str], role: str) -> None:
    """Attach the authenticated actor to every log line for the rest of the request."""
    structlog.contextvars.bind_contextvars(
        actor_id=user_id, actor_tenant_id=tenant_id, actor_role=role
    )


def _stamp_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _mask(value: str) -> str:
    if len(value) > 4:
        return f"{value[:2]}***{value[-2:]}"
    return "***"


def _scrub_sensitive(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credentials, one-time codes and contact details before rendering."""
    for key, value in list(event_dict.items()):
        if not isinstance(value, str) or not value:
            continue
        lowered = key.lower()
        if lowered in _SENSITIVE_EXACT_KEYS or any(
            part in lowered for part in _SENSITIVE_KEY_PARTS
        ):
            event_dict[key] = _mask(value)
    return event_dict


def _processors(json_output: bool) -> List[Any]:
    chain: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _stamp_correlation_id,
        _scrub_sensitive,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if json_output:
        chain += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        chain.append(structlog.dev.ConsoleRenderer(colors=True))
    return chain


def configure_logging(level: str = "INFO", *, json_output: bool = True) -> None:
    """Install the structlog pipeline.

    JSON lines in production; ``LOG_JSON=false`` or ``LOG_DEV_MODE=true``
    switches to the coloured console renderer.
    """
    structlog.configure(
        processors=_processors(json_output),
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=(
        os.getenv("LOG_JSON", "true").lower() in _TRUTHY
        and os.getenv("LOG_DEV_MODE", "false").lower() not in _TRUTHY
    ),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def redact_email(email: Optional[str]) -> str:
    """Shorten an email address for logs: ``jo***@example.com``."""
    if not email or "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"
