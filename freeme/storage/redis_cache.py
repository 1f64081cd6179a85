from __future__ import annotations

import hashlib
import math
import time

import redis.asyncio as aioredis

from freeme.service.rate_limit import DEFAULT_WINDOW_SECONDS, RateLimitResult


class RedisCache:
    """Thin Redis wrapper backing the shared fixed-window rate limiter."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic open-or-increment; mirrors InMemoryRateLimiter.check_sync
    _FIXED_WINDOW_SCRIPT = """
local limit = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])
local current = tonumber(redis.call('GET', KEYS[1]))

if current == nil then
  redis.call('SET', KEYS[1], 1, 'PX', window_ms)
  return {1, 1, window_ms}
end

local ttl = redis.call('PTTL', KEYS[1])
if ttl < 0 then
  redis.call('PEXPIRE', KEYS[1], window_ms)
  ttl = window_ms
end

if current >= limit then
  return {0, current, ttl}
end

current = redis.call('INCR', KEYS[1])
return {1, current, ttl}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate keys so identifiers cannot inject delimiters."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def check(
        self, identifier: str, limit: int, window_seconds: int
    ) -> RateLimitResult:
        return await self.check_rate_limit(identifier, limit, window_seconds)

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int
    ) -> RateLimitResult:
        """Fixed-window check shared by every instance pointing at this Redis."""
        now_ms = time.time() * 1000.0
        if limit <= 0:
            return RateLimitResult(True, limit, limit, now_ms)
        if window_seconds <= 0:
            window_seconds = DEFAULT_WINDOW_SECONDS
        window_ms = window_seconds * 1000

        allowed, count, ttl_ms = await self._fixed_window(
            keys=[self._normalize_rate_key(key)],
            args=[limit, window_ms],
        )
        allowed_bool = bool(int(allowed))
        reset_at = now_ms + max(0, int(ttl_ms))
        if not allowed_bool:
            retry_after = max(1, math.ceil(int(ttl_ms) / 1000.0))
            return RateLimitResult(False, limit, 0, reset_at, retry_after)
        return RateLimitResult(True, limit, limit - int(count), reset_at)

    async def close(self) -> None:
        """Close the Redis connection pool."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
