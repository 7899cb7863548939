from __future__ import annotations

import asyncio
import secrets
import threading
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, Optional, Union

from coopapp.config import Settings
from coopapp.logging import get_logger
from coopapp.service.notifications import Notifier
from coopapp.storage.models import Organization, User, utcnow
from coopapp.storage.redis_cache import RedisCache, SyncRedisCache

if TYPE_CHECKING:
    from coopapp.service.auth import CredentialStore

logger = get_logger(__name__)

CODE_DIGITS = 6


class TwoFactorChallengeManager:
    """Issues and consumes the emailed one-time login codes.

    Code state lives on the credential record; failed-attempt counters live in
    Redis when available and in a lock-guarded dict otherwise.
    """

    def __init__(
        self,
        store: "CredentialStore",
        notifier: Notifier,
        cache: Optional[Union[RedisCache, SyncRedisCache]],
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.cache = cache
        self.settings = settings
        self._clock = clock
        self._state_lock = threading.Lock()
        self._attempts: dict[str, int] = {}
        self._lockouts: dict[str, datetime] = {}

    @staticmethod
    def generate_code() -> str:
        return f"{secrets.randbelow(10 ** CODE_DIGITS):0{CODE_DIGITS}d}"

    async def issue_challenge(
        self, user: User, organization: Optional[Organization]
    ) -> str:
        """Overwrite any outstanding code with a fresh one and deliver it."""
        code = self.generate_code()
        expires_at = self._clock() + timedelta(
            minutes=self.settings.two_factor_code_ttl_minutes
        )
        self.store.set_two_factor_code(user.id, code, expires_at)
        await self._reset_attempts(user.id, include_lockout=True)
        logger.info("two_factor_challenge_issued", user_id=user.id, tenant_id=user.tenant_id)
        await asyncio.to_thread(
            self.notifier.send_two_factor_code, user, organization, code, expires_at
        )
        return code

    async def verify_and_consume(
        self, user: User, code: str, *, session_token: str
    ) -> Optional[User]:
        """Swap a live code for ``session_token``; ``None`` on any failure.

        Clearing the code, storing the token reference and stamping the login
        time happen in one store call, so a racing duplicate gets ``None``.
        """
        if await self._is_locked_out(user.id):
            logger.warning("two_factor_locked_out", user_id=user.id)
            return None
        now = self._clock()
        consumed = self.store.consume_two_factor_code(
            user.id, code, now=now, session_token=session_token, last_login_at=now
        )
        if consumed is None:
            await self._record_failure(user.id)
            return None
        await self._reset_attempts(user.id)
        logger.info("two_factor_challenge_consumed", user_id=user.id)
        return consumed

    async def _is_locked_out(self, user_id: str) -> bool:
        if self.cache:
            return await self.cache.check_two_factor_lockout(user_id)
        now = self._clock()
        with self._state_lock:
            locked_until = self._lockouts.get(user_id)
            if locked_until and locked_until > now:
                return True
            if locked_until:
                self._lockouts.pop(user_id, None)
            return False

    async def _record_failure(self, user_id: str) -> None:
        max_attempts = self.settings.two_factor_max_attempts
        lockout_seconds = self.settings.two_factor_lockout_seconds
        if self.cache:
            locked, attempts = await self.cache.record_two_factor_failure(
                user_id, max_attempts=max_attempts, lockout_seconds=lockout_seconds
            )
            just_locked = locked and attempts >= 0
        else:
            with self._state_lock:
                attempts = self._attempts.get(user_id, 0) + 1
                just_locked = attempts >= max_attempts
                if just_locked:
                    self._lockouts[user_id] = self._clock() + timedelta(
                        seconds=lockout_seconds
                    )
                    self._attempts.pop(user_id, None)
                else:
                    self._attempts[user_id] = attempts
        logger.info("two_factor_verification_failed", user_id=user_id, attempts=attempts)
        if just_locked:
            # The outstanding code is unusable from here on
            self.store.clear_two_factor_code(user_id)
            logger.warning("two_factor_lockout_triggered", user_id=user_id, attempts=attempts)

    async def _reset_attempts(self, user_id: str, *, include_lockout: bool = False) -> None:
        if self.cache:
            await self.cache.clear_two_factor_attempts(
                user_id, include_lockout=include_lockout
            )
            return
        with self._state_lock:
            self._attempts.pop(user_id, None)
            if include_lockout:
                self._lockouts.pop(user_id, None)
