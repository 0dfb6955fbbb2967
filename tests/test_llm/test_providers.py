"""
Tests for the completion providers.

Gemini is exercised end to end over httpx.MockTransport; Anthropic uses a
mocked AsyncAnthropic client raising the SDK's real exception types.
No network calls are made.
"""

from __future__ import annotations

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import anthropic
import httpx
import pytest

from diagram_engine.config import EngineConfig
from diagram_engine.exceptions import (
    AuthFailureError,
    ConfigurationError,
    InvalidRequestError,
    RateLimitedError,
    TransientNetworkError,
)
from diagram_engine.llm.llm_config import CLAUDE_HAIKU, GEMINI_FLASH, GEMINI_PRO
from diagram_engine.llm.providers import (
    AnthropicProvider,
    GeminiProvider,
    build_provider,
    error_from_status,
    parse_retry_after,
)


GRAPH_TEXT = '{"nodes": [{"id": "a", "label": "A"}], "edges": []}'


def _gemini_body(text: str = GRAPH_TEXT) -> dict:
    return {
        "candidates": [{"content": {"parts": [{"text": text}], "role": "model"}}],
        "usageMetadata": {"promptTokenCount": 120, "candidatesTokenCount": 40},
    }


def _gemini(handler) -> GeminiProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GeminiProvider("test-key", client=client)


# ===========================================================================
# Error mapping
# ===========================================================================

class TestErrorMapping:

    @pytest.mark.parametrize("status,cls", [
        (429, RateLimitedError),
        (401, AuthFailureError),
        (403, AuthFailureError),
        (400, InvalidRequestError),
        (404, InvalidRequestError),
        (500, TransientNetworkError),
        (503, TransientNetworkError),
    ])
    def test_status_classification(self, status, cls):
        err = error_from_status(status, "boom", tier="fast")
        assert type(err) is cls
        assert err.status_code == status
        assert err.tier == "fast"

    @pytest.mark.parametrize("value,expected", [
        ("3", 3.0),
        (" 1.5 ", 1.5),
        ("", None),
        (None, None),
        ("-1", None),
        ("Wed, 21 Oct 2015 07:28:00 GMT", None),
    ])
    def test_parse_retry_after(self, value, expected):
        assert parse_retry_after(value) == expected


# ===========================================================================
# Gemini
# ===========================================================================

class TestGeminiProvider:

    @pytest.mark.asyncio
    async def test_request_shape_and_completion(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["key"] = request.headers.get("x-goog-api-key")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=_gemini_body())

        provider = _gemini(handler)
        completion = await provider.complete(GEMINI_FLASH, "PROMPT")

        assert seen["url"].endswith("/v1beta/models/gemini-2.5-flash:generateContent")
        assert seen["key"] == "test-key"
        assert seen["body"]["contents"][0]["parts"][0]["text"] == "PROMPT"
        generation = seen["body"]["generationConfig"]
        assert generation == {
            "temperature": 0.1,
            "maxOutputTokens": 2048,
            "topP": 0.95,
            "topK": 40,
        }
        assert completion.text == GRAPH_TEXT
        assert completion.model == "gemini-2.5-flash"
        assert completion.total_tokens == 160

    @pytest.mark.asyncio
    async def test_overrides_temperature_and_tokens(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=_gemini_body())

        await _gemini(handler).complete(GEMINI_PRO, "p", temperature=0.7, max_output_tokens=512)
        assert seen["body"]["generationConfig"]["temperature"] == 0.7
        assert seen["body"]["generationConfig"]["maxOutputTokens"] == 512

    @pytest.mark.asyncio
    async def test_joins_multiple_parts(self):
        body = {"candidates": [{"content": {"parts": [{"text": '{"a":'}, {"text": " 1}"}]}}]}
        provider = _gemini(lambda r: httpx.Response(200, json=body))
        assert (await provider.complete(GEMINI_FLASH, "p")).text == '{"a": 1}'

    @pytest.mark.asyncio
    async def test_rate_limit_with_retry_after(self):
        provider = _gemini(lambda r: httpx.Response(429, headers={"Retry-After": "7"}, text="quota"))
        with pytest.raises(RateLimitedError) as exc:
            await provider.complete(GEMINI_FLASH, "p")
        assert exc.value.retry_after_seconds == 7.0
        assert exc.value.tier == "fast"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,cls", [
        (401, AuthFailureError),
        (400, InvalidRequestError),
        (502, TransientNetworkError),
    ])
    async def test_http_errors(self, status, cls):
        provider = _gemini(lambda r: httpx.Response(status, text="nope"))
        with pytest.raises(cls):
            await provider.complete(GEMINI_FLASH, "p")

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self):
        def handler(request):
            raise httpx.ReadTimeout("too slow", request=request)

        with pytest.raises(TransientNetworkError, match="Request timeout"):
            await _gemini(handler).complete(GEMINI_FLASH, "p")

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(TransientNetworkError, match="Transport error"):
            await _gemini(handler).complete(GEMINI_FLASH, "p")

    @pytest.mark.asyncio
    async def test_empty_completion_is_transient(self):
        provider = _gemini(lambda r: httpx.Response(200, json=_gemini_body("   ")))
        with pytest.raises(TransientNetworkError, match="Empty response"):
            await provider.complete(GEMINI_FLASH, "p")

    @pytest.mark.asyncio
    async def test_no_candidates_is_transient(self):
        provider = _gemini(lambda r: httpx.Response(200, json={"candidates": []}))
        with pytest.raises(TransientNetworkError):
            await provider.complete(GEMINI_FLASH, "p")

    @pytest.mark.asyncio
    async def test_blocked_prompt_is_invalid_request(self):
        body = {"promptFeedback": {"blockReason": "SAFETY"}}
        provider = _gemini(lambda r: httpx.Response(200, json=body))
        with pytest.raises(InvalidRequestError, match="SAFETY"):
            await provider.complete(GEMINI_FLASH, "p")

    @pytest.mark.asyncio
    async def test_non_json_envelope_is_transient(self):
        provider = _gemini(lambda r: httpx.Response(200, text="<html>oops</html>"))
        with pytest.raises(TransientNetworkError):
            await provider.complete(GEMINI_FLASH, "p")

    @pytest.mark.asyncio
    async def test_injected_client_not_closed(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        provider = GeminiProvider("k", client=client)
        await provider.aclose()
        assert not client.is_closed
        await client.aclose()

    def test_empty_key_rejected(self):
        with pytest.raises(ConfigurationError):
            GeminiProvider("")


# ===========================================================================
# Anthropic
# ===========================================================================

def _anthropic_response(status: int, headers: dict | None = None) -> httpx.Response:
    return httpx.Response(
        status,
        headers=headers or {},
        request=httpx.Request("POST", "https://api.anthropic.com/v1/messages"),
    )


@pytest.fixture
def mock_anthropic():
    """Mock AsyncAnthropic client."""
    client = MagicMock()
    response = MagicMock()
    response.content = [SimpleNamespace(type="text", text=GRAPH_TEXT)]
    response.usage = SimpleNamespace(input_tokens=100, output_tokens=50)
    client.messages.create = AsyncMock(return_value=response)
    client.close = AsyncMock()
    return client


class TestAnthropicProvider:

    @pytest.mark.asyncio
    async def test_completion(self, mock_anthropic):
        provider = AnthropicProvider(client=mock_anthropic)
        completion = await provider.complete(CLAUDE_HAIKU, "PROMPT", temperature=0.3)

        assert completion.text == GRAPH_TEXT
        assert completion.input_tokens == 100
        kwargs = mock_anthropic.messages.create.call_args.kwargs
        assert kwargs["model"] == CLAUDE_HAIKU.model
        assert kwargs["temperature"] == 0.3
        assert kwargs["max_tokens"] == 2048
        assert kwargs["messages"] == [{"role": "user", "content": "PROMPT"}]

    @pytest.mark.asyncio
    async def test_rate_limit(self, mock_anthropic):
        mock_anthropic.messages.create.side_effect = anthropic.RateLimitError(
            "slow down",
            response=_anthropic_response(429, {"retry-after": "4"}),
            body=None,
        )
        with pytest.raises(RateLimitedError) as exc:
            await AnthropicProvider(client=mock_anthropic).complete(CLAUDE_HAIKU, "p")
        assert exc.value.retry_after_seconds == 4.0

    @pytest.mark.asyncio
    async def test_authentication(self, mock_anthropic):
        mock_anthropic.messages.create.side_effect = anthropic.AuthenticationError(
            "bad key", response=_anthropic_response(401), body=None,
        )
        with pytest.raises(AuthFailureError):
            await AnthropicProvider(client=mock_anthropic).complete(CLAUDE_HAIKU, "p")

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self, mock_anthropic):
        mock_anthropic.messages.create.side_effect = anthropic.InternalServerError(
            "overloaded", response=_anthropic_response(529), body=None,
        )
        with pytest.raises(TransientNetworkError):
            await AnthropicProvider(client=mock_anthropic).complete(CLAUDE_HAIKU, "p")

    @pytest.mark.asyncio
    async def test_bad_request_is_invalid(self, mock_anthropic):
        mock_anthropic.messages.create.side_effect = anthropic.BadRequestError(
            "bad", response=_anthropic_response(400), body=None,
        )
        with pytest.raises(InvalidRequestError):
            await AnthropicProvider(client=mock_anthropic).complete(CLAUDE_HAIKU, "p")

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self, mock_anthropic):
        mock_anthropic.messages.create.side_effect = anthropic.APITimeoutError(
            request=httpx.Request("POST", "https://api.anthropic.com/v1/messages"),
        )
        with pytest.raises(TransientNetworkError, match="Request timeout"):
            await AnthropicProvider(client=mock_anthropic).complete(CLAUDE_HAIKU, "p")

    @pytest.mark.asyncio
    async def test_empty_content_is_transient(self, mock_anthropic):
        mock_anthropic.messages.create.return_value.content = []
        with pytest.raises(TransientNetworkError, match="Empty response"):
            await AnthropicProvider(client=mock_anthropic).complete(CLAUDE_HAIKU, "p")

    @pytest.mark.asyncio
    async def test_aclose(self, mock_anthropic):
        await AnthropicProvider(client=mock_anthropic).aclose()
        mock_anthropic.close.assert_awaited_once()

    def test_requires_key_or_client(self):
        with pytest.raises(ConfigurationError):
            AnthropicProvider()


# ===========================================================================
# Factory
# ===========================================================================

class TestBuildProvider:

    def test_gemini_with_key(self, monkeypatch):
        monkeypatch.setenv("GOOGLE_API_KEY", "g-key")
        assert isinstance(build_provider(EngineConfig()), GeminiProvider)

    def test_anthropic_with_key(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "a-key")
        config = EngineConfig(provider={"name": "anthropic", "api_key_env": "ANTHROPIC_API_KEY"})
        assert isinstance(build_provider(config), AnthropicProvider)

    def test_missing_key_returns_none(self, monkeypatch):
        monkeypatch.delenv("GOOGLE_API_KEY", raising=False)
        assert build_provider(EngineConfig()) is None
