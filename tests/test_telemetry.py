"""
Tests for executor telemetry: counters, rates, percentiles and the
fast-tier time savings estimate.
"""

from __future__ import annotations

import threading

import pytest

from diagram_engine.exceptions import ErrorKind
from diagram_engine.llm.llm_config import ModelTier
from diagram_engine.observability.telemetry import Telemetry, percentile


@pytest.fixture
def telemetry():
    return Telemetry()


class TestPercentile:

    def test_empty_is_zero(self):
        assert percentile([], 0.95) == 0.0

    def test_nearest_rank(self):
        samples = [float(i) for i in range(1, 21)]  # 1..20
        assert percentile(samples, 0.95) == 19.0
        assert percentile(samples, 0.50) == 10.0
        assert percentile(samples, 1.0) == 20.0

    def test_unsorted_input(self):
        assert percentile([5.0, 1.0, 3.0], 0.5) == 3.0


class TestCounters:

    def test_fresh_snapshot(self, telemetry):
        snap = telemetry.snapshot()
        assert snap["total_requests"] == 0
        assert snap["cache_hit_rate"] == 0.0
        assert snap["per_tier_counts"] == {"fast": 0, "accurate": 0}
        assert snap["estimated_time_savings"] == "0s (insufficient data)"

    def test_cache_hit_does_not_touch_model_counters(self, telemetry):
        telemetry.record_cache_hit(0.4, similarity=1.0)
        telemetry.record_cache_hit(0.6, similarity=0.85)
        snap = telemetry.snapshot()

        assert snap["total_requests"] == 2
        assert snap["cache_hits"] == 2
        assert snap["semantic_hits"] == 1
        assert snap["cache_hit_rate"] == 1.0
        assert snap["per_tier_counts"] == {"fast": 0, "accurate": 0}
        assert snap["total_retries"] == 0

    def test_success_and_failure(self, telemetry):
        telemetry.record_model_call(ModelTier.FAST)
        telemetry.record_success(ModelTier.FAST, 100.0)
        telemetry.record_model_call(ModelTier.FAST)
        telemetry.record_model_call(ModelTier.ACCURATE)
        telemetry.record_retry()
        telemetry.record_failure(ErrorKind.RATE_LIMITED, latency_ms=50.0, fallback_used=True)
        snap = telemetry.snapshot()

        assert snap["total_requests"] == 2
        assert snap["success_rate"] == 0.5
        assert snap["per_tier_counts"] == {"fast": 2, "accurate": 1}
        assert snap["per_tier_served"] == {"fast": 1, "accurate": 0}
        assert snap["fallbacks"] == 1
        assert snap["fallback_rate"] == 0.5
        assert snap["total_retries"] == 1
        assert snap["errors_by_kind"] == {"rate_limited": 1}

    def test_override_rate(self, telemetry):
        telemetry.record_success(ModelTier.ACCURATE, 10.0, overridden=True)
        telemetry.record_success(ModelTier.FAST, 10.0)
        snap = telemetry.snapshot()
        assert snap["overrides"] == 1
        assert snap["override_rate"] == 0.5

    def test_avg_latency_and_percentiles(self, telemetry):
        for latency in (100.0, 200.0, 300.0):
            telemetry.record_success(ModelTier.FAST, latency)
        snap = telemetry.snapshot()
        assert snap["avg_latency_per_tier"]["fast"] == 200.0
        assert snap["latency_percentiles"]["p50"] == 200.0
        assert snap["latency_percentiles"]["p99"] == 300.0

    def test_cache_hits_and_failures_enter_percentiles(self, telemetry):
        telemetry.record_cache_hit(2.0)
        telemetry.record_failure(ErrorKind.PARSE_FAILURE, latency_ms=900.0)
        snap = telemetry.snapshot()

        assert snap["latency_percentiles"]["p50"] == 2.0
        assert snap["latency_percentiles"]["p95"] == 900.0
        assert snap["avg_latency_per_tier"] == {"fast": 0.0, "accurate": 0.0}

    def test_reset(self, telemetry):
        telemetry.record_success(ModelTier.FAST, 10.0)
        telemetry.record_retry()
        telemetry.reset()
        snap = telemetry.snapshot()
        assert snap["total_requests"] == 0
        assert snap["total_retries"] == 0
        assert snap["latency_percentiles"]["p95"] == 0.0


class TestTimeSavings:

    def test_savings_formula(self, telemetry):
        """fast_served × (avg_accurate − avg_fast)."""
        telemetry.record_success(ModelTier.FAST, 1000.0)
        telemetry.record_success(ModelTier.FAST, 1000.0)
        telemetry.record_success(ModelTier.ACCURATE, 4000.0)
        snap = telemetry.snapshot()

        assert snap["estimated_time_savings_s"] == 6.0
        assert snap["estimated_time_savings"].startswith("6.0s")
        assert "75.0% reduction" in snap["estimated_time_savings"]

    def test_needs_both_tiers(self, telemetry):
        telemetry.record_success(ModelTier.FAST, 1000.0)
        assert telemetry.snapshot()["estimated_time_savings_s"] == 0.0

    def test_fast_slower_reports_zero(self, telemetry):
        telemetry.record_success(ModelTier.FAST, 5000.0)
        telemetry.record_success(ModelTier.ACCURATE, 1000.0)
        snap = telemetry.snapshot()
        assert snap["estimated_time_savings_s"] == 0.0
        assert "slower" in snap["estimated_time_savings"]


class TestThreadSafety:

    def test_concurrent_updates_are_additive(self, telemetry):
        def worker():
            for _ in range(500):
                telemetry.record_model_call(ModelTier.FAST)
                telemetry.record_retry()

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        snap = telemetry.snapshot()
        assert snap["per_tier_counts"]["fast"] == 2000
        assert snap["total_retries"] == 2000
