from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, Query, Request, Response
from fastapi.responses import JSONResponse

from freeme.api.schemas import (
    AIEventHealth,
    AIEventResult,
    CsrfTokenResponse,
    EventListResponse,
    EventOut,
)
from freeme.logging import get_correlation_id, get_logger
from freeme.service.auth import AuthContext
from freeme.service.dispatcher import call_store
from freeme.service.errors import UnauthorizedError
from freeme.service.orchestrator import AIEventRequest
from freeme.service.rate_limit import RateLimitResult, enforce_rate_limit
from freeme.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

AI_EVENT_VERSION = "2.0"
CSRF_COOKIE_NAME = "csrf_token"


async def _enforce_rate_limit(
    rate_class: str, identifier: str, *, response: Optional[Response] = None
) -> RateLimitResult:
    """Check the caller against a named rate class and copy telemetry headers."""
    runtime = get_runtime()
    rule = runtime.rate_limits[rate_class]
    result = await enforce_rate_limit(runtime.rate_limiter, rule, identifier)
    if response is not None:
        response.headers.update(result.headers())
    return result


async def get_user(
    authorization: Optional[str] = Header(None),
    session_id: Optional[str] = Header(None, convert_underscores=False),
    session_cookie: Optional[str] = Cookie(None, alias="session_id"),
) -> AuthContext:
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(authorization, session_id, session_cookie)
    if not ctx:
        raise UnauthorizedError()
    return ctx


@router.post("/ai-event")
async def create_ai_event(request: Request) -> JSONResponse:
    runtime = get_runtime()
    ai_request = AIEventRequest(
        body=await request.body(),
        content_length=request.headers.get("content-length"),
        request_id=get_correlation_id() or "",
        authorization=request.headers.get("authorization"),
        session_id_header=request.headers.get("session_id"),
        session_cookie=request.cookies.get("session_id"),
    )
    outcome = await runtime.orchestrator.handle(ai_request)
    result = AIEventResult.model_validate(outcome.body)
    return JSONResponse(content=result.render(), headers=outcome.headers)


@router.get("/ai-event", response_model=AIEventHealth)
async def ai_event_health() -> AIEventHealth:
    return AIEventHealth(
        timestamp=datetime.now(timezone.utc).isoformat(),
        version=AI_EVENT_VERSION,
    )


@router.get("/events", response_model=EventListResponse)
async def list_events(
    response: Response,
    limit: int = Query(50, ge=1, le=200),
    principal: AuthContext = Depends(get_user),
) -> EventListResponse:
    runtime = get_runtime()
    await _enforce_rate_limit("EVENT_API", principal.user_id, response=response)
    events = call_store(
        "list_events", runtime.store.list_events, principal.user_id, limit=limit
    )
    items = [EventOut(**evt.to_dict()) for evt in events]
    return EventListResponse(events=items, count=len(items))


@router.post("/auth/csrf", response_model=CsrfTokenResponse)
async def issue_csrf_token(
    response: Response, principal: AuthContext = Depends(get_user)
) -> CsrfTokenResponse:
    runtime = get_runtime()
    await _enforce_rate_limit("AUTH", principal.user_id, response=response)
    token = runtime.auth.issue_csrf_token(principal)
    response.set_cookie(
        CSRF_COOKIE_NAME,
        token,
        httponly=False,
        samesite="strict",
        secure=runtime.settings.enable_hsts,
    )
    logger.info("csrf_token_issued", user_id=principal.user_id)
    return CsrfTokenResponse(csrf_token=token)
