from __future__ import annotations

import asyncio
import json
from typing import Optional, Protocol

from openai import AsyncOpenAI, OpenAIError

from freeme.config import Settings
from freeme.logging import get_logger
from freeme.service.errors import ModelFailureError

logger = get_logger(__name__)


class CompletionBackend(Protocol):
    async def complete(self, system_prompt: str, user_prompt: str) -> str: ...


class StubCompletionBackend:
    """Deterministic backend for test mode; always answers with an empty query."""

    def __init__(self, message: str = "No matching events found") -> None:
        self.message = message
        self.calls: list[tuple[str, str]] = []

    async def complete(self, system_prompt: str, user_prompt: str) -> str:
        self.calls.append((system_prompt, user_prompt))
        return json.dumps({"action": "query", "results": [], "message": self.message})


class CompletionService:
    """Chat completion client for an OpenAI-compatible endpoint (OpenRouter by default).

    The SDK retries at most ``model_max_retries`` times; that is safe because
    a completion has no side effects. ``asyncio.wait_for`` enforces the hard
    ceiling on the whole call including retries.
    """

    def __init__(self, settings: Settings, *, client: Optional[AsyncOpenAI] = None) -> None:
        self.model = settings.model_path
        self.temperature = settings.model_temperature
        self.max_tokens = settings.model_max_tokens
        self.timeout_seconds = settings.model_timeout_seconds
        self.client = client
        if self.client is None and settings.model_api_key:
            self.client = AsyncOpenAI(
                api_key=settings.model_api_key,
                base_url=settings.model_base_url,
                timeout=settings.model_timeout_seconds,
                max_retries=settings.model_max_retries,
                default_headers={
                    "HTTP-Referer": settings.app_base_url,
                    "X-Title": settings.app_title,
                },
            )

    async def _create(self, system_prompt: str, user_prompt: str):
        return await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )

    async def complete(self, system_prompt: str, user_prompt: str) -> str:
        if self.client is None:
            logger.error("model_api_key_missing", model=self.model)
            raise ModelFailureError(detail={"reason": "api key missing"})

        try:
            completion = await asyncio.wait_for(
                self._create(system_prompt, user_prompt), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError as exc:
            logger.error(
                "model_call_timeout", model=self.model, timeout_seconds=self.timeout_seconds
            )
            raise ModelFailureError(detail={"reason": "timeout"}) from exc
        except OpenAIError as exc:
            logger.error("model_call_failed", model=self.model, error=str(exc))
            raise ModelFailureError(detail={"reason": type(exc).__name__}) from exc

        choices = getattr(completion, "choices", None) or []
        first_choice = next(iter(choices), None)
        if not first_choice:
            logger.warning("model_returned_no_choices", model=self.model)
            raise ModelFailureError(detail={"reason": "no choices"})
        content = first_choice.message.content or ""
        usage = getattr(completion, "usage", None)
        logger.info(
            "model_call_completed",
            model=self.model,
            prompt_tokens=getattr(usage, "prompt_tokens", 0),
            completion_tokens=getattr(usage, "completion_tokens", 0),
        )
        return content


def build_completion_backend(settings: Settings) -> CompletionBackend:
    if settings.test_mode and not settings.model_api_key:
        logger.info("completion_stub_selected")
        return StubCompletionBackend()
    return CompletionService(settings)
