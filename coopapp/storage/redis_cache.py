from __future__ import annotations

import hashlib
import inspect
import time
from typing import Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

# Lua token bucket: atomic refill + consume
_TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

# Failed 2FA attempt counter; trips a lockout key once max attempts is reached
_TWO_FACTOR_ATTEMPT_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return {1, -1}
end
local attempts = redis.call('INCR', KEYS[2])
redis.call('EXPIRE', KEYS[2], ARGV[2])
local max_attempts = tonumber(ARGV[1])
if attempts >= max_attempts then
    redis.call('SET', KEYS[1], '1', 'EX', ARGV[2])
    redis.call('DEL', KEYS[2])
    return {1, attempts}
end
return {0, attempts}
"""


def _normalize_rate_key(key: str) -> str:
    """Hash rate-limit subjects so identifiers never leak into key names."""

    return f"rate:{hashlib.sha256(key.encode()).hexdigest()}"


def _lockout_key(user_id: str) -> str:
    return f"two_factor:lockout:{user_id}"


def _attempts_key(user_id: str) -> str:
    return f"two_factor:attempts:{user_id}"


def _rate_result(
    allowed: int, tokens: float, reset_after: int, return_remaining: bool
) -> Union[bool, Tuple[bool, int, int]]:
    allowed_bool = bool(int(allowed))
    if return_remaining:
        return (allowed_bool, max(0, int(float(tokens))), int(reset_after or 0))
    return allowed_bool


async def _settle(result):
    # Script and command calls return coroutines on the asyncio client only
    if inspect.isawaitable(result):
        return await result
    return result


class RedisCache:
    """Rate-limit buckets and 2FA attempt counters on top of redis.asyncio."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = self._connect(redis_url, socket_timeout)
        self._token_bucket = self.client.register_script(_TOKEN_BUCKET_SCRIPT)
        self._two_factor_attempt = self.client.register_script(_TWO_FACTOR_ATTEMPT_SCRIPT)

    @staticmethod
    def _connect(redis_url: str, socket_timeout: float):
        return aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Ping Redis once at startup; raises when it is unreachable."""
        # Short-lived sync client so the async pool is not bound to a startup loop
        probe = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            probe.ping()
        finally:
            probe.close()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await _settle(
            self._token_bucket(
                keys=[_normalize_rate_key(key)],
                args=[time.time(), refill_rate, limit, max(1, cost)],
            )
        )
        return _rate_result(allowed, tokens, reset_after, return_remaining)

    async def check_two_factor_lockout(self, user_id: str) -> bool:
        return bool(await _settle(self.client.exists(_lockout_key(user_id))))

    async def record_two_factor_failure(
        self, user_id: str, max_attempts: int = 5, lockout_seconds: int = 300
    ) -> tuple[bool, int]:
        """Atomically count a failed code and trip the lockout.

        Returns ``(is_locked_out, attempts)``; attempts is -1 when the user
        was already locked out.
        """
        locked, attempts = await _settle(
            self._two_factor_attempt(
                keys=[_lockout_key(user_id), _attempts_key(user_id)],
                args=[max_attempts, lockout_seconds],
            )
        )
        return (bool(int(locked)), int(attempts))

    async def clear_two_factor_attempts(
        self, user_id: str, *, include_lockout: bool = False
    ) -> None:
        keys = [_attempts_key(user_id)]
        if include_lockout:
            keys.append(_lockout_key(user_id))
        await _settle(self.client.delete(*keys))

    async def close(self) -> None:
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


class SyncRedisCache(RedisCache):
    """Same surface, backed by the blocking client.

    Used under TEST_MODE where each TestClient request may run on a fresh
    event loop and an asyncio pool would end up bound to a dead one.
    """

    @staticmethod
    def _connect(redis_url: str, socket_timeout: float):
        return Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self.client.ping()

    def close_sync(self) -> None:
        self.client.close()

    async def close(self) -> None:
        self.close_sync()
