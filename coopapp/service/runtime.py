from __future__ import annotations

import threading
import time
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from coopapp.config import get_settings, reset_settings_cache
from coopapp.logging import get_logger
from coopapp.service.auth import AuthService
from coopapp.service.members import MemberService
from coopapp.service.notifications import EmailNotifier, Notifier
from coopapp.service.organizations import OrganizationService
from coopapp.service.passwords import PasswordService
from coopapp.service.tokens import SessionTokenService
from coopapp.service.transactions import TransactionService
from coopapp.service.two_factor import TwoFactorChallengeManager
from coopapp.storage.memory import MemoryStore
from coopapp.storage.postgres import PostgresStore
from coopapp.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

# Sweep refilled in-process buckets once this many keys are tracked
_LOCAL_RATE_LIMIT_SWEEP_AT = 4096


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, *, notifier: Optional[Notifier] = None):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url, fs_root=self.settings.shared_fs_root
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[Union[RedisCache, SyncRedisCache]] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Use sync Redis client in test mode to avoid event loop issues
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if (
                not self.settings.test_mode
                and not self.settings.allow_redis_fallback_dev
            ):
                raise RuntimeError(
                    "Redis is required for rate limits and 2FA lockouts; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error

            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; rate limits and 2FA "
                    "attempt counters are in-memory only."
                ),
                mode=fallback_mode,
            )

        self.notifier: Notifier = notifier or EmailNotifier(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.passwords = PasswordService()
        self.tokens = SessionTokenService(self.settings)
        self.two_factor = TwoFactorChallengeManager(
            self.store, self.notifier, self.cache, self.settings
        )
        self.auth = AuthService(
            self.store,
            self.settings,
            passwords=self.passwords,
            tokens=self.tokens,
            two_factor=self.two_factor,
        )
        self.organizations = OrganizationService(self.store)
        self.members = MemberService(
            self.store,
            self.settings,
            auth=self.auth,
            passwords=self.passwords,
            tokens=self.tokens,
            notifier=self.notifier,
        )
        self.transactions = TransactionService(self.store)
        self._local_rate_limits: Dict[str, Tuple[float, float, float]] = {}
        self._local_rate_limit_lock = threading.Lock()

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            email_configured=getattr(self.notifier, "is_configured", None),
            enforce_single_session=self.settings.enforce_single_session,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: check without the lock first, then again under it
    before constructing.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(*, notifier: Optional[Notifier] = None) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        # SyncRedisCache wraps a sync client, so it can be closed without a loop
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            runtime.cache.close_sync()

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(notifier=notifier)
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket rate limit in Redis, or in-process when Redis is off.

    Returns ``allowed`` or, with ``return_remaining``, the tuple
    ``(allowed, remaining, reset_seconds)``.
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = time.monotonic()
    refill_rate = float(limit) / float(window_seconds)
    with runtime._local_rate_limit_lock:
        buckets = runtime._local_rate_limits
        if key not in buckets and len(buckets) >= _LOCAL_RATE_LIMIT_SWEEP_AT:
            # A refilled bucket behaves exactly like a missing one
            for stale in [k for k, entry in buckets.items() if entry[2] <= now]:
                del buckets[stale]
        tokens, last_ts, _ = buckets.get(key, (float(limit), now, now))
        tokens = min(float(limit), tokens + max(0.0, now - last_ts) * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        buckets[key] = (tokens, now, now + (float(limit) - tokens) / refill_rate)
        reset_seconds = 0 if allowed else int((cost - tokens) / refill_rate) + 1
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed
