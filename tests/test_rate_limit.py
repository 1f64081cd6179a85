"""Fixed-window rate limiting, in-process and Redis-backed."""
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import AsyncMock, patch

import pytest

from freeme.config import Settings
from freeme.service.errors import RateLimitedError
from freeme.service.rate_limit import (
    InMemoryRateLimiter,
    RateLimitResult,
    RateLimitRule,
    build_rate_limits,
    enforce_rate_limit,
)
from freeme.storage.redis_cache import RedisCache


class FakeClock:
    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestInMemoryRateLimiter:
    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def limiter(self, clock):
        return InMemoryRateLimiter(clock=clock)

    def test_allows_limit_then_denies(self, limiter):
        for i in range(3):
            result = limiter.check_sync("ai:u1", 3, 60)
            assert result.allowed, f"call {i + 1} should pass"
            assert result.remaining == 3 - (i + 1)

        denied = limiter.check_sync("ai:u1", 3, 60)
        assert not denied.allowed
        assert denied.remaining == 0
        assert denied.retry_after is not None and denied.retry_after > 0

    def test_window_resets_after_expiry(self, limiter, clock):
        for _ in range(3):
            limiter.check_sync("ai:u1", 3, 60)
        assert not limiter.check_sync("ai:u1", 3, 60).allowed

        clock.advance(61)
        result = limiter.check_sync("ai:u1", 3, 60)
        assert result.allowed
        assert result.remaining == 2  # count restarted at 1

    def test_identifiers_are_independent(self, limiter):
        assert limiter.check_sync("ai:u1", 1, 60).allowed
        assert not limiter.check_sync("ai:u1", 1, 60).allowed
        assert limiter.check_sync("ai:u2", 1, 60).allowed

    def test_zero_limit_always_passes(self, limiter):
        for _ in range(5):
            assert limiter.check_sync("ai:u1", 0, 60).allowed

    def test_retry_after_counts_down(self, limiter, clock):
        limiter.check_sync("ai:u1", 1, 60)
        clock.advance(45)
        denied = limiter.check_sync("ai:u1", 1, 60)
        assert denied.retry_after == 15

    def test_invalid_window_logs_warning(self, limiter):
        with patch("freeme.service.rate_limit.logger") as mock_logger:
            result = limiter.check_sync("ai:u1", 5, 0)

        assert result.allowed
        mock_logger.warning.assert_called_once()
        call_args = mock_logger.warning.call_args
        assert call_args[0][0] == "rate_limit_invalid_window"
        assert call_args[1]["window_seconds"] == 0

    def test_sweep_removes_only_expired(self, limiter, clock):
        limiter.check_sync("ai:old", 5, 60)
        clock.advance(30)
        limiter.check_sync("ai:new", 5, 60)
        clock.advance(31)

        assert limiter.sweep() == 1
        assert "ai:old" not in limiter._windows
        assert "ai:new" in limiter._windows

    async def test_async_check_matches_sync(self, limiter):
        first = await limiter.check("auth:u1", 2, 300)
        second = await limiter.check("auth:u1", 2, 300)
        third = await limiter.check("auth:u1", 2, 300)
        assert [first.allowed, second.allowed, third.allowed] == [True, True, False]


class TestInMemoryConcurrency:
    def test_parallel_checks_never_exceed_limit(self):
        limiter = InMemoryRateLimiter(clock=FakeClock())
        with ThreadPoolExecutor(max_workers=16) as pool:
            results = list(pool.map(lambda _: limiter.check_sync("ai:u", 10, 60), range(50)))

        assert sum(r.allowed for r in results) == 10
        assert sorted(r.remaining for r in results if r.allowed) == list(range(10))

    def test_sweep_during_checks_keeps_live_counts(self):
        clock = FakeClock()
        limiter = InMemoryRateLimiter(clock=clock)
        for i in range(20):
            limiter._windows[f"ai:stale{i}"] = (3, clock.now * 1000.0 - 1)

        def work(i):
            if i % 5 == 0:
                limiter.sweep()
                return None
            return limiter.check_sync("ai:u", 10, 60)

        with ThreadPoolExecutor(max_workers=16) as pool:
            results = [r for r in pool.map(work, range(60)) if r is not None]

        assert len(results) == 48
        assert sum(r.allowed for r in results) == 10
        assert limiter._windows["ai:u"][0] == 10
        assert not any(key.startswith("ai:stale") for key in limiter._windows)


class TestRateLimitResultHeaders:
    def test_allowed_headers(self):
        result = RateLimitResult(True, 10, 7, 1_700_000_060_000.0)
        headers = result.headers()
        assert headers["X-RateLimit-Limit"] == "10"
        assert headers["X-RateLimit-Remaining"] == "7"
        assert headers["X-RateLimit-Reset"].startswith("2023-11-14T22:14:20")
        assert "Retry-After" not in headers

    def test_denied_headers_include_retry_after(self):
        result = RateLimitResult(False, 10, 0, 1_700_000_060_000.0, retry_after=42)
        headers = result.headers()
        assert headers["Retry-After"] == "42"
        assert headers["X-RateLimit-Remaining"] == "0"


class TestEnforceRateLimit:
    async def test_raises_with_result_when_denied(self):
        limiter = InMemoryRateLimiter(clock=FakeClock())
        rule = RateLimitRule("ai", 1, 60)

        await enforce_rate_limit(limiter, rule, "u1")
        with pytest.raises(RateLimitedError) as excinfo:
            await enforce_rate_limit(limiter, rule, "u1")

        assert excinfo.value.status_code == 429
        assert excinfo.value.result.retry_after == 60
        assert "ai:u1" in limiter._windows

    def test_rate_classes_use_separate_namespaces(self):
        rules = build_rate_limits(Settings())
        assert rules["AI_REQUEST"].key("u1") == "ai:u1"
        assert rules["EVENT_API"].key("u1") == "events:u1"
        assert rules["AUTH"].key("u1") == "auth:u1"
        assert (rules["AI_REQUEST"].limit, rules["AI_REQUEST"].window_seconds) == (10, 60)
        assert (rules["EVENT_API"].limit, rules["EVENT_API"].window_seconds) == (100, 60)
        assert (rules["AUTH"].limit, rules["AUTH"].window_seconds) == (5, 300)


class TestRedisRateLimit:
    @pytest.fixture
    def cache(self):
        cache = RedisCache("redis://localhost:6379/15")
        cache._fixed_window = AsyncMock()
        return cache

    async def test_allowed_result(self, cache):
        cache._fixed_window.return_value = [1, 3, 45_000]
        result = await cache.check_rate_limit("ai:u1", 10, 60)

        assert result.allowed
        assert result.remaining == 7
        kwargs = cache._fixed_window.call_args.kwargs
        assert kwargs["args"] == [10, 60_000]
        assert kwargs["keys"][0].startswith("rate:")
        assert "ai:u1" not in kwargs["keys"][0]

    async def test_denied_result(self, cache):
        cache._fixed_window.return_value = [0, 10, 12_500]
        result = await cache.check_rate_limit("ai:u1", 10, 60)

        assert not result.allowed
        assert result.retry_after == 13

    async def test_zero_limit_skips_redis(self, cache):
        result = await cache.check_rate_limit("ai:u1", 0, 60)
        assert result.allowed
        cache._fixed_window.assert_not_called()
