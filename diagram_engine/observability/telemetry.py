"""
Telemetry — Aggregated counters for the request executor.

Purely additive counters updated by RequestExecutor on every terminal
outcome, plus a read-only snapshot for callers and monitoring:

- total requests, success rate
- per-tier model call counts and average latency
- cache hit rate (exact vs. semantic)
- fallback rate, complexity override rate, retries
- latency percentiles (P50/P95/P99) over every terminal outcome,
  cache hits and failures included
- estimated time saved by routing simple content to the fast tier

Usage:
    telemetry = Telemetry()
    executor = RequestExecutor(provider, config, telemetry=telemetry)
    ...
    print(telemetry.snapshot()["cache_hit_rate"])
"""

from __future__ import annotations

import math
import threading
from collections import deque
from typing import Any, Optional

from diagram_engine.exceptions import ErrorKind
from diagram_engine.llm.llm_config import ModelTier


def percentile(samples: list[float], pct: float) -> float:
    """
    Nearest-rank percentile of `samples` (0 when empty).

    pct is in (0, 1]; P95 of 20 samples is the 19th smallest.
    """
    if not samples:
        return 0.0
    ordered = sorted(samples)
    index = max(0, math.ceil(len(ordered) * pct) - 1)
    return ordered[min(index, len(ordered) - 1)]


class Telemetry:
    """
    Thread-safe request counters.

    Latency samples for percentiles are kept in a bounded window; all
    other counters are cumulative until `reset()`.
    """

    def __init__(self, latency_window: int = 1000):
        self._lock = threading.Lock()
        self._latency_window = latency_window
        self.reset()

    def reset(self) -> None:
        """Reset all counters (e.g., start of a new batch)."""
        with self._lock:
            self._total_requests = 0
            self._successes = 0
            self._failures = 0
            self._cache_hits = 0
            self._semantic_hits = 0
            self._fallbacks = 0
            self._overrides = 0
            self._retries = 0
            self._tier_calls: dict[ModelTier, int] = {t: 0 for t in ModelTier}
            self._tier_served: dict[ModelTier, int] = {t: 0 for t in ModelTier}
            self._tier_latency_ms: dict[ModelTier, float] = {t: 0.0 for t in ModelTier}
            self._errors: dict[str, int] = {}
            self._latencies: deque[float] = deque(maxlen=self._latency_window)

    # --- Recording ---

    def record_model_call(self, tier: ModelTier) -> None:
        with self._lock:
            self._tier_calls[tier] += 1

    def record_retry(self) -> None:
        with self._lock:
            self._retries += 1

    def record_cache_hit(
        self,
        latency_ms: float,
        *,
        similarity: Optional[float] = None,
    ) -> None:
        """Cache hits never touch model or retry counters, only the latency window."""
        with self._lock:
            self._total_requests += 1
            self._successes += 1
            self._cache_hits += 1
            self._latencies.append(latency_ms)
            if similarity is not None and similarity < 1.0:
                self._semantic_hits += 1

    def record_success(
        self,
        tier: ModelTier,
        latency_ms: float,
        *,
        fallback_used: bool = False,
        overridden: bool = False,
    ) -> None:
        with self._lock:
            self._total_requests += 1
            self._successes += 1
            self._tier_served[tier] += 1
            self._tier_latency_ms[tier] += latency_ms
            self._latencies.append(latency_ms)
            if fallback_used:
                self._fallbacks += 1
            if overridden:
                self._overrides += 1

    def record_failure(
        self,
        error_kind: ErrorKind,
        *,
        latency_ms: float = 0.0,
        fallback_used: bool = False,
        overridden: bool = False,
    ) -> None:
        with self._lock:
            self._total_requests += 1
            self._failures += 1
            self._latencies.append(latency_ms)
            self._errors[error_kind.value] = self._errors.get(error_kind.value, 0) + 1
            if fallback_used:
                self._fallbacks += 1
            if overridden:
                self._overrides += 1

    # --- Derived values ---

    def _avg_latency(self, tier: ModelTier) -> float:
        served = self._tier_served[tier]
        return self._tier_latency_ms[tier] / served if served else 0.0

    def _time_savings(self) -> tuple[float, str]:
        """Seconds saved by fast-tier routing versus sending everything to the accurate tier."""
        fast_served = self._tier_served[ModelTier.FAST]
        if fast_served == 0 or self._tier_served[ModelTier.ACCURATE] == 0:
            return 0.0, "0s (insufficient data)"

        avg_fast = self._avg_latency(ModelTier.FAST)
        avg_accurate = self._avg_latency(ModelTier.ACCURATE)
        saved_s = fast_served * (avg_accurate - avg_fast) / 1000
        if saved_s < 0:
            return 0.0, "0s (fast tier slower in this sample)"

        reduction = saved_s / (fast_served * avg_accurate / 1000) * 100 if avg_accurate else 0.0
        return saved_s, f"{saved_s:.1f}s ({reduction:.1f}% reduction)"

    def snapshot(self) -> dict[str, Any]:
        """Return a point-in-time copy of all counters."""
        with self._lock:
            total = self._total_requests
            latencies = list(self._latencies)
            saved_s, saved_str = self._time_savings()

            def rate(n: int) -> float:
                return round(n / total, 3) if total else 0.0

            return {
                "total_requests": total,
                "successes": self._successes,
                "failures": self._failures,
                "success_rate": rate(self._successes),
                "per_tier_counts": {t.value: self._tier_calls[t] for t in ModelTier},
                "per_tier_served": {t.value: self._tier_served[t] for t in ModelTier},
                "cache_hits": self._cache_hits,
                "semantic_hits": self._semantic_hits,
                "cache_hit_rate": rate(self._cache_hits),
                "avg_latency_per_tier": {
                    t.value: round(self._avg_latency(t), 1) for t in ModelTier
                },
                "latency_percentiles": {
                    "p50": round(percentile(latencies, 0.50), 1),
                    "p95": round(percentile(latencies, 0.95), 1),
                    "p99": round(percentile(latencies, 0.99), 1),
                },
                "fallbacks": self._fallbacks,
                "fallback_rate": rate(self._fallbacks),
                "overrides": self._overrides,
                "override_rate": rate(self._overrides),
                "total_retries": self._retries,
                "errors_by_kind": dict(self._errors),
                "estimated_time_savings_s": round(saved_s, 3),
                "estimated_time_savings": saved_str,
            }
