from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from freeme.api.error_handling import error_response, register_exception_handlers
from freeme.api.routes import CSRF_COOKIE_NAME, router
from freeme.config import Settings, validate_api_key
from freeme.logging import get_logger, set_correlation_id
from freeme.service.rate_limit import run_rate_limit_sweeper

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"
__build__ = _settings.build_sha


_sweeper_task: asyncio.Task | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the in-process rate limit sweeper; close connections on shutdown."""
    global _sweeper_task
    from freeme.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        if runtime.local_rate_limiter is not None:
            _sweeper_task = asyncio.create_task(
                run_rate_limit_sweeper(
                    runtime.local_rate_limiter,
                    runtime.settings.rate_limit_sweep_interval_seconds,
                )
            )
            logger.info(
                "rate_limit_sweeper_started",
                interval_seconds=runtime.settings.rate_limit_sweep_interval_seconds,
            )
    except Exception as exc:
        logger.error("startup_failed", error=str(exc))

    yield

    try:
        runtime = get_runtime()
        if _sweeper_task:
            _sweeper_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _sweeper_task
            _sweeper_task = None
        if runtime.cache is not None:
            await runtime.cache.close()
        if hasattr(runtime.store, "close"):
            runtime.store.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Freeme Calendar", version=__version__, lifespan=lifespan)


_CSRF_SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}
# Token issuance cannot require the token it issues
_CSRF_EXEMPT_PATHS = {"/v1/auth/csrf"}


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Local dev hosts only; a wildcard is invalid with credentials
    return [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=_settings.cors_allow_credentials,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        "session_id",
        "X-CSRF-Token",
        "X-Request-ID",
    ],
    expose_headers=[
        "X-Request-ID",
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Reset",
        "Retry-After",
    ],
    max_age=3600,
)


@app.middleware("http")
async def enforce_csrf_token(request: Request, call_next):
    """Double-submit check for state-changing requests authenticated by cookie."""
    if request.method.upper() in _CSRF_SAFE_METHODS:
        return await call_next(request)
    if request.url.path in _CSRF_EXEMPT_PATHS:
        return await call_next(request)
    if request.headers.get("Authorization"):
        return await call_next(request)
    session_cookie = request.cookies.get("session_id")
    if not session_cookie:
        return await call_next(request)

    header_token = request.headers.get("X-CSRF-Token")
    cookie_token = request.cookies.get(CSRF_COOKIE_NAME)
    try:
        from freeme.service.runtime import get_runtime

        auth = get_runtime().auth
        ctx = await auth.authenticate(None, session_cookie=session_cookie)
        # Unknown or expired sessions fall through to the 401 path
        if ctx is None:
            return await call_next(request)
        valid = auth.verify_csrf(ctx.session_id, header_token, cookie_token)
    except Exception as exc:
        logger.warning("csrf_validation_failed", error=str(exc))
        valid = False
    if not valid:
        logger.warning("csrf_token_rejected", path=request.url.path, method=request.method)
        return error_response(
            403, "Forbidden", code="FORBIDDEN", message="missing or invalid CSRF token"
        )
    return await call_next(request)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    response.headers.setdefault(
        "Permissions-Policy", "camera=(), microphone=(), geolocation=(), payment=()"
    )
    if request.url.scheme == "https" and _settings.enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


# Registered last so it runs first and every response, including CSRF rejections, carries the id
@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Bind the request's correlation id for logging and echo it in X-Request-ID."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Dependency checks for the store and Redis, plus build info."""
    from freeme.service.runtime import get_runtime

    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    runtime = get_runtime()
    db_ok = await _run_bounded("database", runtime.store.verify_connection)
    checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
    overall_healthy = db_ok

    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
        overall_healthy = overall_healthy and redis_ok
    else:
        checks["redis"] = {"status": "not_configured"}

    checks["model"] = {
        "status": "configured" if validate_api_key(runtime.settings) else "not_configured"
    }

    return {
        "status": "healthy" if overall_healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "build": __build__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
