import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import openai
import pytest

from freeme.config import Settings
from freeme.service.completion import (
    CompletionService,
    StubCompletionBackend,
    build_completion_backend,
)
from freeme.service.errors import ModelFailureError


def _completion(content):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(prompt_tokens=12, completion_tokens=7),
    )


def _service(create, **settings):
    client = MagicMock()
    client.chat.completions.create = create
    return CompletionService(Settings(**settings), client=client)


class TestCompletionService:
    async def test_returns_content_and_sends_both_prompts(self):
        create = AsyncMock(return_value=_completion('{"action": "query"}'))
        service = _service(create)

        content = await service.complete("system text", "user text")

        assert content == '{"action": "query"}'
        kwargs = create.call_args.kwargs
        assert kwargs["model"] == "anthropic/claude-3.5-sonnet"
        assert kwargs["temperature"] == 0.3
        assert kwargs["max_tokens"] == 1500
        assert kwargs["messages"] == [
            {"role": "system", "content": "system text"},
            {"role": "user", "content": "user text"},
        ]

    async def test_api_error_is_model_failure(self):
        request = httpx.Request("POST", "https://openrouter.ai/api/v1/chat/completions")
        create = AsyncMock(side_effect=openai.APIConnectionError(request=request))
        service = _service(create)

        with pytest.raises(ModelFailureError) as excinfo:
            await service.complete("s", "u")
        assert excinfo.value.status_code == 503

    async def test_timeout_is_model_failure(self):
        async def slow(**kwargs):
            await asyncio.sleep(5)

        service = _service(slow, model_timeout_seconds=0.05)
        with pytest.raises(ModelFailureError) as excinfo:
            await service.complete("s", "u")
        assert excinfo.value.detail == {"reason": "timeout"}

    async def test_no_choices_is_model_failure(self):
        create = AsyncMock(return_value=SimpleNamespace(choices=[], usage=None))
        with pytest.raises(ModelFailureError):
            await _service(create).complete("s", "u")

    async def test_missing_key_outside_test_mode(self):
        service = CompletionService(Settings(model_api_key=None))
        with patch("freeme.service.completion.logger") as mock_logger:
            with pytest.raises(ModelFailureError):
                await service.complete("s", "u")
        assert mock_logger.error.call_args[0][0] == "model_api_key_missing"

    def test_client_sends_attribution_headers(self):
        service = CompletionService(
            Settings(model_api_key="sk-or-test-key-000000000000", app_base_url="https://freeme.app")
        )
        assert isinstance(service.client, openai.AsyncOpenAI)
        assert service.client.max_retries == 1
        assert service.client.default_headers["HTTP-Referer"] == "https://freeme.app"
        assert service.client.default_headers["X-Title"] == "Freeme Calendar"


class TestBackendSelection:
    def test_stub_in_test_mode_without_key(self):
        backend = build_completion_backend(Settings(test_mode=True))
        assert isinstance(backend, StubCompletionBackend)

    def test_real_client_when_key_present(self):
        backend = build_completion_backend(
            Settings(test_mode=True, model_api_key="sk-or-test-key-000000000000")
        )
        assert isinstance(backend, CompletionService)

    async def test_stub_answers_with_query(self):
        stub = StubCompletionBackend()
        payload = json.loads(await stub.complete("s", "u"))
        assert payload["action"] == "query"
        assert stub.calls == [("s", "u")]
