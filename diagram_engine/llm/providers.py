"""
Completion Providers — Adapters for the external text-completion APIs.

Every provider exposes one coroutine, `complete(profile, prompt, ...)`,
returning the raw completion text, and maps its failures onto the
engine's error taxonomy:

- 429                              → RateLimitedError (retryable)
- 401 / 403                        → AuthFailureError (fatal)
- other 4xx, blocked prompt        → InvalidRequestError (fatal for the tier)
- 5xx, timeout, transport failure,
  empty completion                 → TransientNetworkError (retryable)

Supported:
- GeminiProvider: Google Generative Language REST API via httpx
- AnthropicProvider: Anthropic Messages API via the anthropic SDK

Usage:
    provider = GeminiProvider(api_key=os.environ["GOOGLE_API_KEY"])
    completion = await provider.complete(GEMINI_FLASH, prompt, temperature=0.1)
    print(completion.text)
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

import anthropic
import httpx

from diagram_engine.exceptions import (
    AuthFailureError,
    ConfigurationError,
    InvalidRequestError,
    ProviderError,
    RateLimitedError,
    TransientNetworkError,
)
from diagram_engine.llm.llm_config import ModelProfile

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Completion Type
# ---------------------------------------------------------------------------

@dataclass
class Completion:
    """Raw text from one successful model call."""

    text: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    latency_ms: float = 0.0
    raw_response: Any = None

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Seconds from a Retry-After header (delta-seconds form only)."""
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


def error_from_status(
    status_code: int,
    message: str,
    *,
    retry_after: Optional[float] = None,
    tier: Optional[str] = None,
) -> ProviderError:
    """Classify an HTTP error status into the provider error taxonomy."""
    if status_code == 429:
        cls: type[ProviderError] = RateLimitedError
    elif status_code in (401, 403):
        cls = AuthFailureError
    elif 400 <= status_code < 500:
        cls = InvalidRequestError
    else:
        cls = TransientNetworkError
    return cls(
        message,
        status_code=status_code,
        tier=tier,
        retry_after_seconds=retry_after,
    )


# ---------------------------------------------------------------------------
# Base Provider
# ---------------------------------------------------------------------------

class CompletionProvider(ABC):
    """Interface the executor calls for one model attempt."""

    name: str = "base"

    @abstractmethod
    async def complete(
        self,
        profile: ModelProfile,
        prompt: str,
        *,
        temperature: Optional[float] = None,
        max_output_tokens: Optional[int] = None,
    ) -> Completion:
        """Return the completion text or raise a ProviderError subclass."""

    async def aclose(self) -> None:
        """Release network resources."""


# ---------------------------------------------------------------------------
# Gemini
# ---------------------------------------------------------------------------

class GeminiProvider(CompletionProvider):
    """
    Google Gemini `generateContent` over httpx.

    Pass an `httpx.AsyncClient` to share connection pools or to inject a
    mock transport in tests; otherwise one is created and owned here.
    """

    name = "gemini"
    DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

    def __init__(
        self,
        api_key: str,
        *,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 120.0,
    ):
        if not api_key:
            raise ConfigurationError("Gemini API key is empty")
        self._api_key = api_key
        self._base_url = (base_url or self.DEFAULT_BASE_URL).rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def complete(
        self,
        profile: ModelProfile,
        prompt: str,
        *,
        temperature: Optional[float] = None,
        max_output_tokens: Optional[int] = None,
    ) -> Completion:
        start = time.monotonic()
        tier = profile.tier.value
        body = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": temperature if temperature is not None else profile.temperature,
                "maxOutputTokens": max_output_tokens or profile.max_output_tokens,
                "topP": 0.95,
                "topK": 40,
            },
        }

        try:
            resp = await self._client.post(
                f"{self._base_url}/models/{profile.model}:generateContent",
                headers={"x-goog-api-key": self._api_key},
                json=body,
            )
        except httpx.TimeoutException as e:
            raise TransientNetworkError("Request timeout", tier=tier) from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"Transport error: {e}", tier=tier) from e

        if resp.status_code >= 400:
            raise error_from_status(
                resp.status_code,
                f"Gemini API error {resp.status_code}: {resp.text[:200]}",
                retry_after=parse_retry_after(resp.headers.get("retry-after")),
                tier=tier,
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise TransientNetworkError("Malformed JSON envelope from Gemini", tier=tier) from e

        block_reason = (data.get("promptFeedback") or {}).get("blockReason")
        if block_reason:
            raise InvalidRequestError(f"Prompt blocked: {block_reason}", tier=tier)

        text = self._extract_text(data)
        if not text.strip():
            raise TransientNetworkError("Empty response from LLM", tier=tier)

        usage = data.get("usageMetadata") or {}
        return Completion(
            text=text,
            model=profile.model,
            input_tokens=int(usage.get("promptTokenCount", 0)),
            output_tokens=int(usage.get("candidatesTokenCount", 0)),
            latency_ms=(time.monotonic() - start) * 1000,
            raw_response=data,
        )

    @staticmethod
    def _extract_text(data: dict[str, Any]) -> str:
        candidates = data.get("candidates") or []
        if not candidates:
            return ""
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(part.get("text", "") for part in parts if isinstance(part, dict))

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------

class AnthropicProvider(CompletionProvider):
    """Anthropic Messages API via `anthropic.AsyncAnthropic`."""

    name = "anthropic"

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        client: Any = None,
        base_url: Optional[str] = None,
        timeout: float = 120.0,
    ):
        if client is None:
            if not api_key:
                raise ConfigurationError("Anthropic API key is empty")
            client = anthropic.AsyncAnthropic(
                api_key=api_key,
                base_url=base_url,
                timeout=timeout,
                max_retries=0,  # retries belong to the executor
            )
        self._client = client

    async def complete(
        self,
        profile: ModelProfile,
        prompt: str,
        *,
        temperature: Optional[float] = None,
        max_output_tokens: Optional[int] = None,
    ) -> Completion:
        start = time.monotonic()
        tier = profile.tier.value

        try:
            response = await self._client.messages.create(
                model=profile.model,
                max_tokens=max_output_tokens or profile.max_output_tokens,
                temperature=temperature if temperature is not None else profile.temperature,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.RateLimitError as e:
            raise RateLimitedError(
                str(e),
                status_code=429,
                tier=tier,
                retry_after_seconds=parse_retry_after(e.response.headers.get("retry-after")),
            ) from e
        except (anthropic.AuthenticationError, anthropic.PermissionDeniedError) as e:
            raise AuthFailureError(str(e), status_code=e.status_code, tier=tier) from e
        except anthropic.APITimeoutError as e:
            raise TransientNetworkError("Request timeout", tier=tier) from e
        except anthropic.APIConnectionError as e:
            raise TransientNetworkError(f"Connection error: {e}", tier=tier) from e
        except anthropic.APIStatusError as e:
            raise error_from_status(e.status_code, str(e), tier=tier) from e

        text = "".join(
            getattr(block, "text", "")
            for block in (response.content or [])
            if getattr(block, "type", "text") == "text"
        )
        if not text.strip():
            raise TransientNetworkError("Empty response from LLM", tier=tier)

        usage = getattr(response, "usage", None)
        return Completion(
            text=text,
            model=profile.model,
            input_tokens=getattr(usage, "input_tokens", 0) or 0,
            output_tokens=getattr(usage, "output_tokens", 0) or 0,
            latency_ms=(time.monotonic() - start) * 1000,
            raw_response=response,
        )

    async def aclose(self) -> None:
        close = getattr(self._client, "close", None)
        if close is not None:
            await close()


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def build_provider(config: Any) -> Optional[CompletionProvider]:
    """
    Create the provider named in an EngineConfig.

    Returns None when the API key is not set; the executor then reports
    itself as disabled instead of failing every request.
    """
    provider_config = config.provider
    api_key = provider_config.resolve_api_key()
    if not api_key:
        logger.warning(
            "llm_provider_disabled",
            extra={"provider": provider_config.name.value, "api_key_env": provider_config.api_key_env},
        )
        return None

    if provider_config.name.value == "gemini":
        return GeminiProvider(
            api_key,
            base_url=provider_config.base_url,
            timeout=provider_config.http_timeout_seconds,
        )
    if provider_config.name.value == "anthropic":
        return AnthropicProvider(
            api_key,
            base_url=provider_config.base_url,
            timeout=provider_config.http_timeout_seconds,
        )
    raise ConfigurationError(f"Unsupported provider: {provider_config.name}")
