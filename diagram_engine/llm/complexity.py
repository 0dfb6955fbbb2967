"""
Complexity Detector — Scores a text segment and recommends a model tier.

The score is a weighted sum of five factor scores, each in [0, 1]:

- vocabulary (20%): mean word length, lexical diversity, technical terms
- structural (25%): sentence-length variation, sentence length, punctuation
- semantic (30%): abstract-concept markers, connector density
- entities (10%): non-initial capitalized tokens, numerals, quoted terms
- relationships (15%): weighted connectors per sentence

Thresholds map the score to a level; only COMPLEX content is sent to the
accurate tier. The classification leans towards the fast tier: a
misclassified segment is cheap to recover through the fallback chain.

Usage:
    detector = ComplexityDetector()
    analysis = detector.analyze("First do A. Then do B. Finally do C.")
    analysis.level               # ComplexityLevel.SIMPLE
    analysis.recommended_tier    # ModelTier.FAST
"""

from __future__ import annotations

import re
import statistics
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Optional

from diagram_engine.llm.llm_config import ModelTier


class ComplexityLevel(str, Enum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"


@dataclass(frozen=True)
class ComplexityAnalysis:
    """Result of scoring one text segment. Derived, never persisted."""

    score: float
    level: ComplexityLevel
    recommended_tier: ModelTier
    factors: dict[str, float] = field(default_factory=dict)
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "score": round(self.score, 4),
            "level": self.level.value,
            "recommended_tier": self.recommended_tier.value,
            "factors": {k: round(v, 4) for k, v in self.factors.items()},
            "reason": self.reason,
        }


# ---------------------------------------------------------------------------
# Lexicons
# ---------------------------------------------------------------------------

# Plain ordering words: they signal edges but not difficulty
SEQUENCE_MARKERS = frozenset({
    "first", "then", "next", "finally", "after", "afterwards", "before",
    "later", "last", "second", "third", "subsequently", "meanwhile",
})

# Causal / logical / structural connectors: weigh double
RELATION_CONNECTORS = frozenset({
    "because", "therefore", "thus", "hence", "consequently", "since",
    "whereas", "although", "however", "unless", "while", "via",
    "through", "depends", "requires", "enables", "causes", "triggers",
    "leads", "results", "influences", "determines", "contains",
    "comprises", "consists", "includes", "inherits", "implements",
    "extends", "reports", "manages", "controls", "produces", "consumes",
    "correlates", "mitigates", "leverages", "utilizing", "employs",
    "ensuring", "ensures", "facilitates", "orchestrates",
})

TECHNICAL_TERMS = frozenset({
    "api", "apis", "architecture", "algorithm", "asynchronous", "cache",
    "cluster", "database", "deployment", "distributed", "framework",
    "infrastructure", "kernel", "latency", "middleware", "microservice",
    "microservices", "protocol", "pipeline", "schema", "server",
    "throughput", "authentication", "authorization", "encryption",
    "regression", "gradient", "neural", "model", "dataset", "datasets",
    "hypothesis", "methodology", "statistical", "correlation",
    "orchestration", "kubernetes", "container", "containers", "broker",
    "persistence", "transaction", "transactions", "scalability",
    "regularization", "normalization", "heterogeneous", "stochastic",
})

ABSTRACT_SUFFIXES = ("tion", "sion", "ness", "ity", "ism", "ment", "ance", "ence", "ology")

_WORD_RE = re.compile(r"[^\W_]+(?:['\-][^\W_]+)*", re.UNICODE)
_SENTENCE_SPLIT_RE = re.compile(r"[.!?。！？]+")
_QUOTED_RE = re.compile(r"[\"“「『]([^\"”」』]{2,60})[\"”」』]")
_DIVERSITY_PUNCT = ",;:()[]\"'/-—"


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


class ComplexityDetector:
    """
    Deterministic, linear-time text complexity scoring.

    Thresholds and weights come from configuration; the defaults are
    empirical and deliberately configurable.
    """

    def __init__(
        self,
        simple_threshold: float = 0.25,
        complex_threshold: float = 0.45,
        weights: Optional[dict[str, float]] = None,
    ):
        if not 0.0 < simple_threshold < complex_threshold <= 1.0:
            raise ValueError(
                "Thresholds must satisfy 0 < simple_threshold < complex_threshold <= 1"
            )
        self.simple_threshold = simple_threshold
        self.complex_threshold = complex_threshold

        raw = weights or {
            "vocabulary": 0.20,
            "structural": 0.25,
            "semantic": 0.30,
            "entities": 0.10,
            "relationships": 0.15,
        }
        total = sum(raw.values())
        if total <= 0:
            raise ValueError("Complexity weights must sum to a positive value")
        self.weights = {k: v / total for k, v in raw.items()}

    @classmethod
    def from_config(cls, config: Any) -> "ComplexityDetector":
        """Build from a ComplexityConfig."""
        return cls(
            simple_threshold=config.simple_threshold,
            complex_threshold=config.complex_threshold,
            weights=config.weights.model_dump(),
        )

    # --- Public API ---

    def analyze(self, text: str) -> ComplexityAnalysis:
        words = _WORD_RE.findall(text or "")
        if not words:
            return ComplexityAnalysis(
                score=0.0,
                level=ComplexityLevel.SIMPLE,
                recommended_tier=ModelTier.FAST,
                factors={k: 0.0 for k in self.weights},
                reason="Empty input; routed to the fast tier",
            )

        sentences = [s for s in _SENTENCE_SPLIT_RE.split(text) if _WORD_RE.search(s)]
        lowered = [w.lower() for w in words]
        connector_weight = self._connector_weight(lowered)

        factors = {
            "vocabulary": self._vocabulary(lowered),
            "structural": self._structural(text, sentences),
            "semantic": self._semantic(lowered, connector_weight),
            "entities": self._entities(text, sentences),
            "relationships": _clamp(connector_weight / max(len(sentences), 1) / 2),
        }
        score = _clamp(sum(self.weights.get(k, 0.0) * v for k, v in factors.items()))
        level = self.classify(score)
        tier = ModelTier.ACCURATE if level is ComplexityLevel.COMPLEX else ModelTier.FAST

        return ComplexityAnalysis(
            score=score,
            level=level,
            recommended_tier=tier,
            factors=factors,
            reason=self._explain(score, level, tier, factors),
        )

    def classify(self, score: float) -> ComplexityLevel:
        if score < self.simple_threshold:
            return ComplexityLevel.SIMPLE
        if score < self.complex_threshold:
            return ComplexityLevel.MODERATE
        return ComplexityLevel.COMPLEX

    @staticmethod
    def summarize(analyses: Iterable[ComplexityAnalysis]) -> dict[str, Any]:
        """Average score plus level and tier distributions over many analyses."""
        items = list(analyses)
        levels = Counter(a.level.value for a in items)
        tiers = Counter(a.recommended_tier.value for a in items)
        return {
            "count": len(items),
            "avg_score": round(statistics.fmean(a.score for a in items), 4) if items else 0.0,
            "level_distribution": {lvl.value: levels.get(lvl.value, 0) for lvl in ComplexityLevel},
            "tier_distribution": {t.value: tiers.get(t.value, 0) for t in ModelTier},
        }

    # --- Factors ---

    @staticmethod
    def _connector_weight(lowered: list[str]) -> float:
        weight = 0.0
        for w in lowered:
            if w in RELATION_CONNECTORS:
                weight += 1.0
            elif w in SEQUENCE_MARKERS:
                weight += 0.5
        return weight

    @staticmethod
    def _is_technical(word: str) -> bool:
        return word in TECHNICAL_TERMS or len(word) >= 11

    @staticmethod
    def _is_abstract(word: str) -> bool:
        return len(word) > 6 and word.endswith(ABSTRACT_SUFFIXES)

    def _vocabulary(self, lowered: list[str]) -> float:
        total = len(lowered)
        mean_len = sum(len(w) for w in lowered) / total
        length_score = _clamp((mean_len - 3.0) / 5.0)
        # Diversity is meaningless for a handful of words
        diversity = len(set(lowered)) / total * min(1.0, total / 50)
        technical = _clamp(sum(1 for w in lowered if self._is_technical(w)) / total * 4)
        return 0.4 * length_score + 0.2 * diversity + 0.4 * technical

    @staticmethod
    def _structural(text: str, sentences: list[str]) -> float:
        lengths = [len(_WORD_RE.findall(s)) for s in sentences] or [0]
        mean = statistics.fmean(lengths)
        variation = _clamp(statistics.pstdev(lengths) / mean) if mean else 0.0
        length_score = _clamp((mean - 8.0) / 17.0)
        punct = {ch for ch in text if ch in _DIVERSITY_PUNCT}
        diversity = _clamp(len(punct) / 6)
        return 0.4 * variation + 0.3 * length_score + 0.3 * diversity

    def _semantic(self, lowered: list[str], connector_weight: float) -> float:
        total = len(lowered)
        abstract = _clamp(sum(1 for w in lowered if self._is_abstract(w)) / total * 4)
        connectors = _clamp(connector_weight / total * 3)
        return 0.6 * abstract + 0.4 * connectors

    @staticmethod
    def _entities(text: str, sentences: list[str]) -> float:
        count = 0
        for sentence in sentences:
            tokens = _WORD_RE.findall(sentence)
            for i, tok in enumerate(tokens):
                if tok[0].isdigit():
                    count += 1
                elif i > 0 and tok[0].isupper():
                    count += 1
        count += len(_QUOTED_RE.findall(text))
        return _clamp(count / 12)

    @staticmethod
    def _explain(
        score: float,
        level: ComplexityLevel,
        tier: ModelTier,
        factors: dict[str, float],
    ) -> str:
        top = sorted(factors.items(), key=lambda kv: kv[1], reverse=True)[:2]
        drivers = ", ".join(f"{name} {value:.0%}" for name, value in top)
        return (
            f"Complexity {score:.1%} ({level.value}); "
            f"strongest factors: {drivers}; routed to the {tier.value} tier"
        )
