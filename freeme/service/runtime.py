from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from freeme.config import get_settings, reset_settings_cache
from freeme.logging import get_logger
from freeme.service.auth import AuthService
from freeme.service.completion import build_completion_backend
from freeme.service.dispatcher import CommandDispatcher
from freeme.service.orchestrator import AIEventOrchestrator
from freeme.service.rate_limit import InMemoryRateLimiter, RateLimiter, build_rate_limits
from freeme.storage.memory import MemoryStore
from freeme.storage.postgres import PostgresStore
from freeme.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL so it can be logged."""
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

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    statement_timeout_ms=self.settings.store_statement_timeout_ms,
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

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        self.local_rate_limiter: Optional[InMemoryRateLimiter] = None
        if self.cache:
            self.rate_limiter: RateLimiter = self.cache
        else:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for shared rate limits; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; rate limits are "
                    "per-process only."
                ),
                mode=fallback_mode,
            )
            self.local_rate_limiter = InMemoryRateLimiter()
            self.rate_limiter = self.local_rate_limiter

        self.rate_limits = build_rate_limits(self.settings)
        self.auth = AuthService(self.store)
        self.completion = build_completion_backend(self.settings)
        self.dispatcher = CommandDispatcher(self.store)
        self.orchestrator = AIEventOrchestrator(
            self.settings,
            store=self.store,
            auth=self.auth,
            rate_limiter=self.rate_limiter,
            rate_rule=self.rate_limits["AI_REQUEST"],
            completion=self.completion,
            dispatcher=self.dispatcher,
        )

        logger.info(
            "runtime_initialized",
            model_path=self.settings.model_path,
            redis_enabled=self.cache is not None,
            completion_backend=type(self.completion).__name__,
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the unlocked read is the fast path once the
    runtime exists.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
