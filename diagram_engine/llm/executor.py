"""
Request Executor — Cache-first, complexity-routed model calls with fallback.

Drives one AnalysisRequest to one AnalysisResponse:

    pending → cache_check → done                      (cache hit)
    pending → cache_check → complexity → attempting
            → (backoff → attempting)* → parsing → done | failed

- Cache hits return immediately: no model call, no retry counters.
- The ComplexityDetector picks the primary tier (fast for simple and
  moderate text, accurate for complex text); `force_tier` overrides it.
- Each tier gets up to `max_retries` attempts. Retryable failures back
  off exponentially with jitter; fatal failures abort the tier.
- When the primary tier is exhausted the other tier runs the same loop.
  Authentication failures end the request at once.
- Only a successful parse writes the cache.

Expected failures never raise: they come back as a failed response with
an `error_kind`.

Usage:
    from diagram_engine.llm.executor import RequestExecutor
    from diagram_engine.llm.models import AnalysisRequest

    async with RequestExecutor.from_config() as executor:
        response = await executor.execute(
            AnalysisRequest.for_segment("First mix the dough. Then bake it.")
        )
        if response.success:
            print(response.data.to_dict())
"""

from __future__ import annotations

import asyncio
import logging
import math
import random
import time
import uuid
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Optional

from diagram_engine.config import EngineConfig, load_engine_config
from diagram_engine.exceptions import (
    AuthFailureError,
    ErrorKind,
    ProviderError,
    TransientNetworkError,
)
from diagram_engine.llm.cache import SemanticCache
from diagram_engine.llm.complexity import ComplexityDetector
from diagram_engine.llm.llm_config import ModelProfile, ModelTier, TierRouting
from diagram_engine.llm.models import AnalysisRequest, AnalysisResponse, DiagramAnalysis
from diagram_engine.llm.parser import ParseFailure, ParseSuccess, ResponseParser
from diagram_engine.llm.providers import Completion, CompletionProvider, build_provider
from diagram_engine.llm.rate_limiter import RateLimiter
from diagram_engine.observability.logging_config import reset_request_id, set_request_id
from diagram_engine.observability.telemetry import Telemetry, percentile

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Request state machine
# ---------------------------------------------------------------------------

class RequestState(str, Enum):
    PENDING = "pending"
    CACHE_CHECK = "cache_check"
    COMPLEXITY = "complexity"
    ATTEMPTING = "attempting"
    BACKOFF = "backoff"
    PARSING = "parsing"
    DONE = "done"
    FAILED = "failed"


_TRANSITIONS: dict[RequestState, frozenset[RequestState]] = {
    RequestState.PENDING: frozenset({RequestState.CACHE_CHECK, RequestState.FAILED}),
    RequestState.CACHE_CHECK: frozenset({RequestState.DONE, RequestState.COMPLEXITY}),
    RequestState.COMPLEXITY: frozenset({RequestState.ATTEMPTING}),
    RequestState.ATTEMPTING: frozenset({
        RequestState.BACKOFF,
        RequestState.ATTEMPTING,  # next tier after an exhausted one
        RequestState.PARSING,
        RequestState.FAILED,
    }),
    RequestState.BACKOFF: frozenset({RequestState.ATTEMPTING}),
    RequestState.PARSING: frozenset({RequestState.DONE, RequestState.FAILED}),
    RequestState.DONE: frozenset(),
    RequestState.FAILED: frozenset(),
}


class RequestRun:
    """Per-request progress: current state, visited states, attempt count."""

    def __init__(self) -> None:
        self.state = RequestState.PENDING
        self.history: list[RequestState] = [RequestState.PENDING]
        self.attempts = 0

    def transition(self, new_state: RequestState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Invalid request transition: {self.state.value} -> {new_state.value}"
            )
        self.state = new_state
        self.history.append(new_state)

    @property
    def finished(self) -> bool:
        return self.state in (RequestState.DONE, RequestState.FAILED)


# ---------------------------------------------------------------------------
# Adaptive timeout
# ---------------------------------------------------------------------------

class AdaptiveTimeout:
    """
    Per-attempt timeout derived from recent successful call latencies.

    timeout = clamp(P95 × multiplier, min, max); `default` until the
    first sample arrives.
    """

    def __init__(
        self,
        default: float = 30.0,
        minimum: float = 15.0,
        maximum: float = 60.0,
        history_size: int = 20,
        multiplier: float = 1.5,
    ):
        if not minimum <= default <= maximum:
            raise ValueError("Adaptive timeout requires minimum <= default <= maximum")
        self._default = default
        self._min = minimum
        self._max = maximum
        self._multiplier = multiplier
        self._samples: deque[float] = deque(maxlen=history_size)

    @classmethod
    def from_config(cls, config: Any) -> "AdaptiveTimeout":
        """Build from a TimeoutConfig."""
        return cls(
            default=config.default_seconds,
            minimum=config.min_seconds,
            maximum=config.max_seconds,
            history_size=config.history_size,
            multiplier=config.p95_multiplier,
        )

    @property
    def samples(self) -> list[float]:
        return list(self._samples)

    def record(self, latency_seconds: float) -> None:
        if latency_seconds >= 0 and math.isfinite(latency_seconds):
            self._samples.append(latency_seconds)

    def current(self) -> float:
        if not self._samples:
            return self._default
        target = percentile(list(self._samples), 0.95) * self._multiplier
        return max(self._min, min(self._max, target))


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------

class RequestExecutor:
    """
    The engine's service object. Build once, share explicitly.

    All collaborators are injectable; anything not passed in is built
    from `config`. `sleep` and `rng` exist so backoff can be observed
    without real waiting.
    """

    def __init__(
        self,
        provider: Optional[CompletionProvider],
        config: Optional[EngineConfig] = None,
        *,
        cache: Optional[SemanticCache] = None,
        telemetry: Optional[Telemetry] = None,
        limiter: Optional[RateLimiter] = None,
        detector: Optional[ComplexityDetector] = None,
        parser: Optional[ResponseParser] = None,
        routing: Optional[TierRouting] = None,
        timeout: Optional[AdaptiveTimeout] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ):
        self._config = config or EngineConfig()
        self._provider = provider

        if cache is None and self._config.cache.enabled:
            cache = SemanticCache.from_config(self._config.cache)
        self._cache = cache

        self._telemetry = telemetry or Telemetry()
        self._limiter = limiter or RateLimiter(self._config.rate_limit.min_interval_ms / 1000)
        self._detector = detector or ComplexityDetector.from_config(self._config.complexity)
        self._parser = parser or ResponseParser()
        self._routing = routing or TierRouting.from_config(self._config)
        self._timeout = timeout or AdaptiveTimeout.from_config(self._config.timeout)
        self._sleep = sleep
        self._rng = rng
        self._concurrency = asyncio.Semaphore(self._config.concurrency_limit)

    @classmethod
    def from_config(
        cls,
        config: Optional[EngineConfig] = None,
        *,
        provider: Optional[CompletionProvider] = None,
        **kwargs: Any,
    ) -> "RequestExecutor":
        """
        Build the whole service from config (loaded from YAML/env when omitted).

        Without an API key the provider is None and the executor runs
        disabled.
        """
        config = config or load_engine_config()
        if provider is None and not config.disabled:
            provider = build_provider(config)
        return cls(provider, config, **kwargs)

    # --- Properties ---

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def cache(self) -> Optional[SemanticCache]:
        return self._cache

    @property
    def telemetry(self) -> Telemetry:
        return self._telemetry

    @property
    def routing(self) -> TierRouting:
        return self._routing

    @property
    def adaptive_timeout(self) -> AdaptiveTimeout:
        return self._timeout

    @property
    def enabled(self) -> bool:
        return self._provider is not None and not self._config.disabled

    # --- Main API ---

    async def execute(self, request: AnalysisRequest) -> AnalysisResponse:
        """Run one request to a terminal response."""
        token = set_request_id(uuid.uuid4().hex[:12])
        try:
            return await self._execute(request, RequestRun())
        finally:
            reset_request_id(token)

    async def execute_many(self, requests: Iterable[AnalysisRequest]) -> list[AnalysisResponse]:
        """Run requests concurrently (bounded by `concurrency_limit`), results in input order."""

        async def run_one(request: AnalysisRequest) -> AnalysisResponse:
            async with self._concurrency:
                return await self.execute(request)

        return list(await asyncio.gather(*(run_one(r) for r in requests)))

    def backoff_delay(self, attempt: int, error: Optional[ProviderError] = None) -> float:
        """
        Seconds to wait after failed attempt number `attempt` (0-based).

        base × 2^attempt plus up to `jitter_ratio` of that, raised to any
        server Retry-After, capped at `max_delay_seconds`.
        """
        retry = self._config.retry
        exponential = retry.base_delay_seconds * (2 ** attempt)
        delay = exponential + exponential * retry.jitter_ratio * self._rng()
        if error is not None and error.retry_after_seconds:
            delay = max(delay, error.retry_after_seconds)
        return min(retry.max_delay_seconds, delay)

    # --- Request flow ---

    async def _execute(self, request: AnalysisRequest, run: RequestRun) -> AnalysisResponse:
        start = time.monotonic()

        if not self.enabled:
            run.transition(RequestState.FAILED)
            self._telemetry.record_failure(ErrorKind.DISABLED)
            logger.info("llm_request_disabled")
            return AnalysisResponse.failure(
                ErrorKind.DISABLED,
                "LLM analysis is disabled (no provider configured or disabled by config)",
            )

        run.transition(RequestState.CACHE_CHECK)
        cache_key = request.cache_key
        cached = self._check_cache(cache_key, request.source_text, request.cache_scope)
        if cached is not None:
            data, similarity = cached
            latency_ms = (time.monotonic() - start) * 1000
            run.transition(RequestState.DONE)
            self._telemetry.record_cache_hit(latency_ms, similarity=similarity)
            logger.info(
                "llm_request_completed",
                extra={"cache_hit": True, "similarity": round(similarity, 3), "latency_ms": round(latency_ms, 2)},
            )
            return AnalysisResponse.from_cache(data, similarity=similarity, latency_ms=latency_ms)

        run.transition(RequestState.COMPLEXITY)
        complexity = self._detector.analyze(request.source_text)
        forced = request.options.force_tier
        primary = ModelTier(forced) if forced is not None else complexity.recommended_tier
        overridden = forced is not None
        tiers = [primary, self._routing.fallback_for(primary)]

        completion: Optional[Completion] = None
        tier_used: Optional[ModelTier] = None
        errors: list[ProviderError] = []

        for index, tier in enumerate(tiers):
            if index > 0:
                logger.warning(
                    "llm_fallback_started",
                    extra={"tier": tier.value, "primary_error": str(errors[-1])[:100]},
                )
            try:
                completion = await self._run_tier(tier, request, run)
            except AuthFailureError as e:
                errors.append(e)
                break
            except ProviderError as e:
                errors.append(e)
                continue
            tier_used = tier
            break

        # The fallback tier ran if it served the result or also failed
        fallback_used = (tier_used is not None and tier_used != primary) or len(errors) > 1
        latency_ms = (time.monotonic() - start) * 1000

        if completion is None or tier_used is None:
            last = errors[-1]
            run.transition(RequestState.FAILED)
            self._telemetry.record_failure(
                last.kind,
                latency_ms=latency_ms,
                fallback_used=fallback_used,
                overridden=overridden,
            )
            message = "; ".join(f"{e.tier or '?'}: {e}" for e in errors)
            logger.error(
                "llm_request_failed",
                extra={"error_kind": last.kind.value, "attempt": run.attempts, "latency_ms": round(latency_ms, 2)},
            )
            return AnalysisResponse.failure(
                last.kind,
                message,
                latency_ms=latency_ms,
                attempts=run.attempts,
                fallback_used=fallback_used,
                complexity=complexity,
            )

        run.transition(RequestState.PARSING)
        outcome = self._parser.parse(completion.text)
        latency_ms = (time.monotonic() - start) * 1000

        if isinstance(outcome, ParseSuccess):
            if self._cache is not None:
                self._cache.set(
                    cache_key, request.source_text, outcome.analysis.to_dict(), request.cache_scope
                )
            run.transition(RequestState.DONE)
            self._telemetry.record_success(
                tier_used,
                latency_ms,
                fallback_used=fallback_used,
                overridden=overridden,
            )
            logger.info(
                "llm_request_completed",
                extra={
                    "tier": tier_used.value,
                    "cache_hit": False,
                    "attempt": run.attempts,
                    "latency_ms": round(latency_ms, 2),
                    "fallback_used": fallback_used,
                    "complexity_score": round(complexity.score, 3),
                },
            )
            return AnalysisResponse(
                success=True,
                data=outcome.analysis,
                model_tier_used=tier_used,
                latency_ms=latency_ms,
                attempts=run.attempts,
                fallback_used=fallback_used,
                complexity=complexity,
                raw_text=completion.text,
            )

        if isinstance(outcome, ParseFailure):
            kind, error = ErrorKind.PARSE_FAILURE, outcome.reason
        else:
            kind, error = ErrorKind.SCHEMA_VIOLATION, "; ".join(outcome.issues)

        run.transition(RequestState.FAILED)
        self._telemetry.record_failure(
            kind,
            latency_ms=latency_ms,
            fallback_used=fallback_used,
            overridden=overridden,
        )
        logger.warning(
            "llm_request_unparseable",
            extra={"tier": tier_used.value, "error_kind": kind.value},
        )
        return AnalysisResponse.failure(
            kind,
            error,
            model_tier_used=tier_used,
            latency_ms=latency_ms,
            attempts=run.attempts,
            fallback_used=fallback_used,
            complexity=complexity,
            raw_text=completion.text,
        )

    def _check_cache(
        self, key: str, text: str, scope: str
    ) -> Optional[tuple[DiagramAnalysis, float]]:
        if self._cache is None:
            return None
        lookup = self._cache.get(key, text, scope)
        if lookup is None:
            return None
        try:
            data = DiagramAnalysis.from_dict(lookup.response)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(
                "cache_payload_invalid",
                extra={"key": lookup.key[:16], "error": str(e)[:100]},
            )
            self._cache.invalidate(lookup.key)
            return None
        return data, lookup.similarity

    async def _run_tier(
        self,
        tier: ModelTier,
        request: AnalysisRequest,
        run: RequestRun,
    ) -> Completion:
        """Up to `max_retries` attempts on one tier. Raises the last ProviderError."""
        profile = self._routing.get_profile(tier)
        max_retries = self._config.retry.max_retries

        for attempt in range(max_retries):
            run.transition(RequestState.ATTEMPTING)
            run.attempts += 1
            try:
                return await self._attempt(profile, request)
            except ProviderError as e:
                e.tier = e.tier or tier.value
                logger.warning(
                    "llm_attempt_failed",
                    extra={
                        "tier": tier.value,
                        "attempt": attempt + 1,
                        "error_kind": e.kind.value,
                        "status": e.status_code,
                        "error": str(e)[:200],
                    },
                )
                if not e.retryable or attempt + 1 >= max_retries:
                    raise

                delay = self.backoff_delay(attempt, e)
                run.transition(RequestState.BACKOFF)
                self._telemetry.record_retry()
                logger.info(
                    "llm_retry_scheduled",
                    extra={"tier": tier.value, "attempt": attempt + 1, "delay_s": round(delay, 3)},
                )
                await self._sleep(delay)

        # max_retries >= 1, so the loop always returns or raises
        raise TransientNetworkError("Retry loop exited without a result", tier=tier.value)

    async def _attempt(self, profile: ModelProfile, request: AnalysisRequest) -> Completion:
        options = request.options
        timeout = options.timeout_seconds or self._timeout.current()

        await self._limiter.acquire()
        try:
            self._telemetry.record_model_call(profile.tier)
            started = time.monotonic()
            try:
                completion = await asyncio.wait_for(
                    self._provider.complete(
                        profile,
                        request.prompt,
                        temperature=options.temperature,
                        max_output_tokens=options.max_output_tokens,
                    ),
                    timeout,
                )
            except asyncio.TimeoutError as e:
                raise TransientNetworkError(
                    f"Request timeout after {timeout:.1f}s",
                    tier=profile.tier.value,
                ) from e
        finally:
            self._limiter.release()

        self._timeout.record(time.monotonic() - started)
        return completion

    # --- Maintenance ---

    def stats(self) -> dict[str, Any]:
        """Telemetry snapshot merged with cache, limiter and timeout state."""
        return {
            "enabled": self.enabled,
            "telemetry": self._telemetry.snapshot(),
            "cache": self._cache.get_stats() if self._cache is not None else None,
            "rate_limiter": self._limiter.get_stats(),
            "adaptive_timeout_s": round(self._timeout.current(), 2),
            "tiers": self._routing.list_tiers(),
        }

    def clear_cache(self) -> int:
        """Drop every cache entry. Returns the number removed."""
        if self._cache is None:
            return 0
        return self._cache.clear()

    def reset_metrics(self) -> None:
        self._telemetry.reset()
        if self._cache is not None:
            self._cache.reset_stats()

    async def close(self) -> None:
        """Flush the cache and release the provider's connections."""
        if self._cache is not None:
            self._cache.close()
        if self._provider is not None:
            await self._provider.aclose()

    async def __aenter__(self) -> "RequestExecutor":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
