"""Fixed-window rate limiting.

A window opens on the first request for an identifier and closes
``window_seconds`` later; the count resets only when a new window opens.
This allows up to ``2 * limit`` requests across a window boundary, which is
acceptable for abuse prevention but not for hard quotas.

The in-process limiter here is the single-instance implementation. Multi
instance deployments use ``RedisCache.check_rate_limit``, which honours the
same contract with an atomic Lua script.
"""

from __future__ import annotations

import asyncio
import math
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Protocol

from freeme.config import Settings
from freeme.logging import get_logger
from freeme.service.errors import RateLimitedError

logger = get_logger(__name__)

DEFAULT_WINDOW_SECONDS = 60


@dataclass(frozen=True)
class RateLimitRule:
    """Budget for one rate class; ``namespace`` keeps classes from sharing counters."""

    namespace: str
    limit: int
    window_seconds: int

    def key(self, identifier: str) -> str:
        return f"{self.namespace}:{identifier}"


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float  # epoch milliseconds
    retry_after: Optional[int] = None

    def headers(self) -> Dict[str, str]:
        """Rate limit telemetry headers for the response."""
        reset = datetime.fromtimestamp(self.reset_at / 1000, tz=timezone.utc)
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
            "X-RateLimit-Reset": reset.isoformat(),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after or DEFAULT_WINDOW_SECONDS)
        return headers


class RateLimiter(Protocol):
    async def check(
        self, identifier: str, limit: int, window_seconds: int
    ) -> RateLimitResult: ...


def build_rate_limits(settings: Settings) -> Dict[str, RateLimitRule]:
    """Rate classes keyed by name, each in its own identifier namespace."""
    return {
        "AI_REQUEST": RateLimitRule("ai", settings.ai_rate_limit_per_minute, 60),
        "EVENT_API": RateLimitRule("events", settings.event_api_rate_limit_per_minute, 60),
        "AUTH": RateLimitRule(
            "auth", settings.auth_rate_limit, settings.auth_rate_limit_window_seconds
        ),
    }


def _normalize_window(identifier: str, window_seconds: int) -> int:
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=identifier,
            window_seconds=window_seconds,
            message="Invalid rate limit window_seconds; defaulting to 60 seconds",
        )
        return DEFAULT_WINDOW_SECONDS
    return window_seconds


class InMemoryRateLimiter:
    """Process-local fixed-window counter guarded by a single lock.

    ``_windows`` maps identifier to ``(count, reset_at_ms)``. A record whose
    reset instant has passed is treated as absent and is replaced on the next
    check; ``sweep`` removes such records so memory stays bounded under many
    distinct identifiers.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._windows: Dict[str, tuple[int, float]] = {}
        self._lock = threading.Lock()

    def _now_ms(self) -> float:
        return self._clock() * 1000.0

    async def check(
        self, identifier: str, limit: int, window_seconds: int
    ) -> RateLimitResult:
        return self.check_sync(identifier, limit, window_seconds)

    def check_sync(
        self, identifier: str, limit: int, window_seconds: int
    ) -> RateLimitResult:
        if limit <= 0:
            return RateLimitResult(True, limit, limit, self._now_ms())
        window_ms = _normalize_window(identifier, window_seconds) * 1000.0

        with self._lock:
            now = self._now_ms()
            record = self._windows.get(identifier)
            if record is None or record[1] < now:
                reset_at = now + window_ms
                self._windows[identifier] = (1, reset_at)
                return RateLimitResult(True, limit, limit - 1, reset_at)

            count, reset_at = record
            if count >= limit:
                retry_after = max(1, math.ceil((reset_at - now) / 1000.0))
                return RateLimitResult(False, limit, 0, reset_at, retry_after)

            count += 1
            self._windows[identifier] = (count, reset_at)
            return RateLimitResult(True, limit, limit - count, reset_at)

    def sweep(self) -> int:
        """Drop expired windows; returns how many were removed."""
        with self._lock:
            now = self._now_ms()
            expired = [key for key, (_, reset_at) in self._windows.items() if reset_at < now]
            for key in expired:
                del self._windows[key]
        return len(expired)


async def enforce_rate_limit(
    limiter: RateLimiter, rule: RateLimitRule, identifier: str
) -> RateLimitResult:
    """Check ``identifier`` against ``rule``; raise ``RateLimitedError`` when denied."""
    key = rule.key(identifier)
    result = await limiter.check(key, rule.limit, rule.window_seconds)
    if not result.allowed:
        logger.info(
            "rate_limit_exceeded",
            key=key,
            limit=rule.limit,
            retry_after=result.retry_after,
        )
        raise RateLimitedError(result)
    return result


async def run_rate_limit_sweeper(limiter: InMemoryRateLimiter, interval_seconds: int) -> None:
    """Periodically purge expired windows on a schedule independent of any window."""
    interval = max(1, interval_seconds)
    while True:
        await asyncio.sleep(interval)
        try:
            removed = limiter.sweep()
        except Exception as exc:
            logger.error("rate_limit_sweep_failed", error=str(exc))
            continue
        if removed:
            logger.debug("rate_limit_swept", removed=removed)
