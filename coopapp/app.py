from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from coopapp.api.error_handling import register_exception_handlers
from coopapp.api.routes import router
from coopapp.config import get_settings
from coopapp.logging import get_logger, set_correlation_id
from coopapp.storage.postgres import PostgresStore

logger = get_logger(__name__)

_settings = get_settings()

__version__ = "0.1.0"
__build__ = _settings.build_sha


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup so configuration errors abort the process."""
    from coopapp.service.runtime import get_runtime

    get_runtime()
    logger.info("app_started", version=__version__, build=__build__)

    yield

    try:
        runtime = get_runtime()
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Coop App", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Avoid wildcard when credentials are enabled
    return [_settings.frontend_base_url, "http://localhost:3000", "http://127.0.0.1:5173"]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=_settings.cors_allow_credentials,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    # Clients read the refreshed token from the Authorization response header
    expose_headers=["X-Request-ID", "Authorization", "API-Version"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Take the correlation ID from X-Request-ID or generate one, and echo it back."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    response.headers.setdefault("API-Version", __version__)
    if request.url.scheme == "https" and _settings.enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


def _health_probes(runtime) -> Dict[str, Optional[Callable[[], None]]]:
    """Blocking probe per dependency; ``None`` marks a dependency that is not in use."""
    probes: Dict[str, Optional[Callable[[], None]]] = {"database": None, "redis": None}

    if isinstance(runtime.store, PostgresStore):
        def _database() -> None:
            with runtime.store._connect() as conn:
                conn.execute("SELECT 1").fetchone()

        probes["database"] = _database

    if runtime.cache is not None:
        probes["redis"] = runtime.cache.verify_connection

    fs_root = Path(runtime.store.fs_root)

    def _filesystem() -> None:
        marker = fs_root / ".health_check"
        marker.write_text(datetime.now(timezone.utc).isoformat())
        marker.read_text()
        marker.unlink(missing_ok=True)

    probes["filesystem"] = _filesystem
    return probes


async def _probe(label: str, func: Callable[[], None]) -> bool:
    try:
        await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        return False
    except Exception as exc:
        logger.error("health_check_failed", component=label, error=str(exc))
        return False
    return True


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    from coopapp.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}
    for label, func in _health_probes(runtime).items():
        if func is None:
            checks[label] = {"status": "not_configured"}
            continue
        checks[label] = {"status": "healthy" if await _probe(label, func) else "unhealthy"}
    if not isinstance(runtime.store, PostgresStore):
        checks["database"] = {"status": "healthy", "type": "memory"}

    healthy = all(c["status"] != "unhealthy" for c in checks.values())
    return {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "build": __build__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


if __name__ == "__main__":
    import os

    import uvicorn

    uvicorn.run(
        "coopapp.app:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
    )
