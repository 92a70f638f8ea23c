from __future__ import annotations

import hashlib
import time
from typing import Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

# How long a lockout level is remembered after the last lock expires
LOCKOUT_LEVEL_TTL_SECONDS = 24 * 60 * 60


class RedisCache:
    """Thin Redis wrapper for rate limits and login lockout counters."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic refill + consume
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

    # KEYS: lock, attempts, level
    # ARGV: threshold, window, base, cap, level_ttl
    # Returns {locked, retry_after, attempts}
    _LOGIN_FAILURE_SCRIPT = """
local ttl = redis.call('TTL', KEYS[1])
if ttl > 0 then
  return {1, ttl, -1}
end

local attempts = redis.call('INCR', KEYS[2])
if attempts == 1 then
  redis.call('EXPIRE', KEYS[2], ARGV[2])
end

if attempts >= tonumber(ARGV[1]) then
  local level = redis.call('INCR', KEYS[3])
  local duration = math.min(math.floor(tonumber(ARGV[3]) * 2 ^ (level - 1)), tonumber(ARGV[4]))
  redis.call('EXPIRE', KEYS[3], duration + tonumber(ARGV[5]))
  redis.call('SET', KEYS[1], level, 'EX', duration)
  redis.call('DEL', KEYS[2])
  return {1, duration, attempts}
end

return {0, 0, attempts}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)
        self._login_failure = self.client.register_script(self._LOGIN_FAILURE_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client keeps the async pool off the startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate keys so client-supplied parts cannot collide on delimiters."""

        return f"rate:{hashlib.sha256(key.encode()).hexdigest()}"

    @staticmethod
    def _lockout_keys(identifier: str) -> Tuple[str, str, str]:
        digest = hashlib.sha256(identifier.encode()).hexdigest()
        return (
            f"login:lock:{digest}",
            f"login:attempts:{digest}",
            f"login:level:{digest}",
        )

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Check rate limit using a Redis-backed token bucket."""

        safe_key = self._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[safe_key],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        allowed_bool = bool(int(allowed))
        remaining = max(0, int(float(tokens)))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    async def login_lockout_remaining(self, identifier: str) -> int:
        """Seconds left on an active lockout, or 0."""
        lock_key, _, _ = self._lockout_keys(identifier)
        ttl = await self.client.ttl(lock_key)
        return max(0, int(ttl or 0))

    async def record_login_failure(
        self,
        identifier: str,
        *,
        threshold: int,
        window_seconds: int,
        base_seconds: int,
        max_seconds: int,
    ) -> Tuple[bool, int, int]:
        """Atomically count a failed login and lock the identifier at the threshold.

        Returns:
            Tuple of (locked, retry_after_seconds, attempts); attempts is -1 when
            the identifier was already locked.
        """
        keys = list(self._lockout_keys(identifier))
        locked, retry_after, attempts = await self._login_failure(
            keys=keys,
            args=[threshold, window_seconds, base_seconds, max_seconds, LOCKOUT_LEVEL_TTL_SECONDS],
        )
        return (bool(int(locked)), int(retry_after), int(attempts))

    async def clear_login_failures(self, identifier: str) -> None:
        await self.client.delete(*self._lockout_keys(identifier))

    async def close(self) -> None:
        """Close the Redis connection pool."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues in
    pytest, but exposes the same awaitable API as ``RedisCache``.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self._sync_client.register_script(
            RedisCache._TOKEN_BUCKET_SCRIPT
        )
        self._login_failure = self._sync_client.register_script(
            RedisCache._LOGIN_FAILURE_SCRIPT
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        safe_key = RedisCache._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = self._token_bucket(
            keys=[safe_key],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        allowed_bool = bool(int(allowed))
        remaining = max(0, int(float(tokens)))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    async def login_lockout_remaining(self, identifier: str) -> int:
        lock_key, _, _ = RedisCache._lockout_keys(identifier)
        ttl: Optional[int] = self._sync_client.ttl(lock_key)
        return max(0, int(ttl or 0))

    async def record_login_failure(
        self,
        identifier: str,
        *,
        threshold: int,
        window_seconds: int,
        base_seconds: int,
        max_seconds: int,
    ) -> Tuple[bool, int, int]:
        keys = list(RedisCache._lockout_keys(identifier))
        locked, retry_after, attempts = self._login_failure(
            keys=keys,
            args=[threshold, window_seconds, base_seconds, max_seconds, LOCKOUT_LEVEL_TTL_SECONDS],
        )
        return (bool(int(locked)), int(retry_after), int(attempts))

    async def clear_login_failures(self, identifier: str) -> None:
        self._sync_client.delete(*RedisCache._lockout_keys(identifier))

    async def close(self) -> None:
        """Close Redis connection."""
        self._sync_client.close()
