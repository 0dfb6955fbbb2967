"""
Tests for the ComplexityDetector.

Covers factor scoring, level thresholds, tier recommendation,
monotonicity in technical density, configuration and summaries.
"""

from __future__ import annotations

import pytest

from diagram_engine.config import ComplexityConfig
from diagram_engine.llm.complexity import (
    ComplexityAnalysis,
    ComplexityDetector,
    ComplexityLevel,
)
from diagram_engine.llm.llm_config import ModelTier


SIMPLE_TEXT = "First do A. Then do B. Finally do C."

COMPLEX_TEXT = (
    "The distributed microservices architecture employs event-driven communication "
    "patterns utilizing Apache Kafka as the message broker. Service mesh implementation "
    "via Istio provides traffic management, security policies, and observability metrics. "
    "The data persistence layer leverages PostgreSQL for ACID transactions while Redis "
    "serves as the caching layer for frequently accessed data. Kubernetes orchestration "
    "enables horizontal pod autoscaling based on CPU and memory utilization metrics, "
    "ensuring optimal resource allocation during peak load scenarios."
)


@pytest.fixture
def detector():
    return ComplexityDetector()


# ===========================================================================
# Classification
# ===========================================================================

class TestAnalyze:

    def test_simple_sequence_routes_fast(self, detector):
        analysis = detector.analyze(SIMPLE_TEXT)
        assert analysis.level is ComplexityLevel.SIMPLE
        assert analysis.recommended_tier is ModelTier.FAST
        assert analysis.score == pytest.approx(0.128, abs=0.01)

    def test_technical_paragraph_routes_accurate(self, detector):
        analysis = detector.analyze(COMPLEX_TEXT)
        assert analysis.level is ComplexityLevel.COMPLEX
        assert analysis.recommended_tier is ModelTier.ACCURATE
        assert analysis.score >= 0.45

    def test_empty_input(self, detector):
        for text in ("", "   ", "...!?"):
            analysis = detector.analyze(text)
            assert analysis.score == 0.0
            assert analysis.level is ComplexityLevel.SIMPLE
            assert analysis.recommended_tier is ModelTier.FAST

    def test_score_and_factors_in_range(self, detector):
        for text in (SIMPLE_TEXT, COMPLEX_TEXT, "a" * 500, "\"quoted\" 42 Names Everywhere"):
            analysis = detector.analyze(text)
            assert 0.0 <= analysis.score <= 1.0
            assert set(analysis.factors) == {
                "vocabulary", "structural", "semantic", "entities", "relationships",
            }
            assert all(0.0 <= v <= 1.0 for v in analysis.factors.values())

    def test_deterministic(self, detector):
        assert detector.analyze(COMPLEX_TEXT) == detector.analyze(COMPLEX_TEXT)

    def test_reason_names_tier(self, detector):
        assert "fast tier" in detector.analyze(SIMPLE_TEXT).reason

    def test_to_dict(self, detector):
        data = detector.analyze(SIMPLE_TEXT).to_dict()
        assert data["level"] == "simple"
        assert data["recommended_tier"] == "fast"
        assert set(data["factors"]) == {
            "vocabulary", "structural", "semantic", "entities", "relationships",
        }


class TestMonotonicity:
    """Raising technical and connector density never lowers the score."""

    def test_technical_variant_scores_higher(self, detector):
        base = "The team paints the fence. The crew cleans the yard."
        technical = (
            "The middleware therefore orchestrates authentication. "
            "The broker consequently manages transactions."
        )
        assert detector.analyze(technical).score >= detector.analyze(base).score

    def test_causal_connectors_outweigh_sequence_markers(self, detector):
        sequence = detector.analyze("Then the cat sat. Next the dog ran.")
        causal = detector.analyze("Because the cat sat. Therefore the dog ran.")
        assert causal.factors["relationships"] > sequence.factors["relationships"]


class TestClassify:

    def test_default_thresholds(self, detector):
        assert detector.classify(0.0) is ComplexityLevel.SIMPLE
        assert detector.classify(0.249) is ComplexityLevel.SIMPLE
        assert detector.classify(0.25) is ComplexityLevel.MODERATE
        assert detector.classify(0.449) is ComplexityLevel.MODERATE
        assert detector.classify(0.45) is ComplexityLevel.COMPLEX

    def test_moderate_routes_fast(self):
        detector = ComplexityDetector(simple_threshold=0.05, complex_threshold=0.9)
        analysis = detector.analyze(SIMPLE_TEXT)
        assert analysis.level is ComplexityLevel.MODERATE
        assert analysis.recommended_tier is ModelTier.FAST

    def test_custom_thresholds_change_routing(self):
        detector = ComplexityDetector(simple_threshold=0.05, complex_threshold=0.1)
        assert detector.analyze(SIMPLE_TEXT).recommended_tier is ModelTier.ACCURATE

    @pytest.mark.parametrize("simple,complex_", [(0.5, 0.4), (0.0, 0.5), (0.3, 1.2)])
    def test_invalid_thresholds(self, simple, complex_):
        with pytest.raises(ValueError):
            ComplexityDetector(simple_threshold=simple, complex_threshold=complex_)


class TestConfiguration:

    def test_weights_are_normalized(self):
        detector = ComplexityDetector(weights={"semantic": 2.0, "entities": 2.0})
        assert detector.weights == {"semantic": 0.5, "entities": 0.5}

    def test_zero_weights_rejected(self):
        with pytest.raises(ValueError):
            ComplexityDetector(weights={"semantic": 0.0})

    def test_from_config(self):
        config = ComplexityConfig(simple_threshold=0.2, complex_threshold=0.6)
        detector = ComplexityDetector.from_config(config)
        assert detector.simple_threshold == 0.2
        assert detector.complex_threshold == 0.6
        assert sum(detector.weights.values()) == pytest.approx(1.0)


class TestSummarize:

    def test_distributions(self, detector):
        analyses = [detector.analyze(SIMPLE_TEXT), detector.analyze(COMPLEX_TEXT)]
        summary = ComplexityDetector.summarize(analyses)

        assert summary["count"] == 2
        assert summary["level_distribution"]["simple"] == 1
        assert summary["level_distribution"]["complex"] == 1
        assert summary["tier_distribution"] == {"fast": 1, "accurate": 1}
        assert 0.0 < summary["avg_score"] < 1.0

    def test_empty(self):
        summary = ComplexityDetector.summarize([])
        assert summary["count"] == 0
        assert summary["avg_score"] == 0.0

    def test_accepts_generators(self, detector):
        summary = ComplexityDetector.summarize(
            detector.analyze(t) for t in (SIMPLE_TEXT, SIMPLE_TEXT)
        )
        assert summary["count"] == 2
        assert isinstance(detector.analyze(SIMPLE_TEXT), ComplexityAnalysis)
