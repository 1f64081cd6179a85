from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from freeme.config import Settings
from freeme.logging import get_logger
from freeme.service.auth import AuthService
from freeme.service.completion import CompletionBackend
from freeme.service.dispatcher import CommandDispatcher, call_store
from freeme.service.errors import (
    InvalidInputError,
    PayloadTooLargeError,
    UnauthorizedError,
)
from freeme.service.extractor import extract_intent
from freeme.service.prompts import build_system_prompt
from freeme.service.rate_limit import RateLimiter, RateLimitRule, enforce_rate_limit
from freeme.service.validation import validate_prompt, validate_request_size

logger = get_logger(__name__)


@dataclass
class AIEventRequest:
    """Raw inputs of one natural-language calendar command."""

    body: bytes
    content_length: Optional[str]
    request_id: str
    authorization: Optional[str] = None
    session_id_header: Optional[str] = None
    session_cookie: Optional[str] = None


@dataclass
class AIEventResponse:
    body: Dict[str, Any]
    headers: Dict[str, str] = field(default_factory=dict)


class AIEventOrchestrator:
    """Runs a prompt through the trust boundary and applies at most one change.

    Checks run cheapest first: size, identity, rate budget, body, prompt. Only
    then are context events fetched and the model called. Any failure aborts
    the pipeline by raising a ``ServiceError``; nothing is applied after a
    failed step.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        store,
        auth: AuthService,
        rate_limiter: RateLimiter,
        rate_rule: RateLimitRule,
        completion: CompletionBackend,
        dispatcher: CommandDispatcher,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.settings = settings
        self.store = store
        self.auth = auth
        self.rate_limiter = rate_limiter
        self.rate_rule = rate_rule
        self.completion = completion
        self.dispatcher = dispatcher
        self.clock = clock

    async def handle(self, request: AIEventRequest) -> AIEventResponse:
        started = time.perf_counter()
        rid = request.request_id

        size = validate_request_size(request.content_length, self.settings.max_ai_request_bytes)
        if not size.valid:
            logger.warning(
                "ai_request_too_large", request_id=rid, content_length=request.content_length
            )
            raise PayloadTooLargeError(detail=size.error)

        principal = await self.auth.authenticate(
            request.authorization, request.session_id_header, request.session_cookie
        )
        if principal is None:
            logger.warning("ai_request_unauthorized", request_id=rid)
            raise UnauthorizedError()

        rate = await enforce_rate_limit(self.rate_limiter, self.rate_rule, principal.user_id)

        try:
            payload = json.loads(request.body or b"")
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("ai_request_invalid_json", request_id=rid, user_id=principal.user_id)
            raise InvalidInputError("Invalid JSON") from exc
        prompt_value = payload.get("prompt") if isinstance(payload, dict) else None
        prompt = validate_prompt(prompt_value)
        if not prompt.valid:
            logger.warning(
                "ai_prompt_rejected",
                request_id=rid,
                user_id=principal.user_id,
                reason=prompt.error,
            )
            raise InvalidInputError("Invalid input", detail=prompt.error)

        now = self.clock()
        events = call_store(
            "list_events",
            self.store.list_events,
            principal.user_id,
            ending_after=now,
            limit=self.settings.context_event_limit,
        )
        logger.info("ai_context_loaded", request_id=rid, event_count=len(events))

        system_prompt = build_system_prompt(now, [evt.context_dict() for evt in events])
        raw = await self.completion.complete(system_prompt, prompt.value)
        logger.info("ai_completion_received", request_id=rid, response_chars=len(raw))

        intent = extract_intent(raw)
        logger.info("ai_intent_extracted", request_id=rid, action=intent.action)

        outcome = self.dispatcher.dispatch(intent, principal)
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "ai_event_processed",
            request_id=rid,
            user_id=principal.user_id,
            action=outcome.action,
            processing_time_ms=elapsed_ms,
        )

        body: Dict[str, Any] = {"success": True, "action": outcome.action}
        body.update(outcome.body())
        body.update(
            {
                "message": outcome.message,
                "requestId": request.request_id,
                "processingTimeMs": elapsed_ms,
            }
        )
        return AIEventResponse(body=body, headers=rate.headers())
