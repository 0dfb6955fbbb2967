"""
Data model for requests, responses and extracted diagrams.

Requests and diagram values are frozen dataclasses: a request is
immutable once submitted, and a DiagramAnalysis is produced once per
successful parse. `to_dict()` / `from_dict()` give the JSON shape used
by the cache file and by downstream layout code.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from typing import Any, Optional

from diagram_engine.exceptions import ErrorKind
from diagram_engine.llm.complexity import ComplexityAnalysis
from diagram_engine.llm.llm_config import ModelTier
from diagram_engine.llm.prompts import build_diagram_prompt


# ---------------------------------------------------------------------------
# Request
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RequestOptions:
    """Per-request knobs. Unset values fall back to the tier profile / config."""

    temperature: Optional[float] = None
    output_schema_hint: Optional[str] = None
    cache_key: Optional[str] = None
    preferred_language: str = "en"
    force_tier: Optional[ModelTier] = None
    max_output_tokens: Optional[int] = None
    timeout_seconds: Optional[float] = None


@dataclass(frozen=True)
class AnalysisRequest:
    """
    One text segment to turn into a diagram.

    `prompt` is what the model sees; `context` is the source segment used
    for complexity scoring and similarity matching in the cache.
    """

    prompt: str
    context: str = ""
    options: RequestOptions = field(default_factory=RequestOptions)

    @classmethod
    def for_segment(cls, text: str, **options: Any) -> "AnalysisRequest":
        """Build a request whose prompt is the standard diagram extraction prompt."""
        opts = RequestOptions(**options)
        prompt = build_diagram_prompt(
            text,
            language=opts.preferred_language,
            schema_hint=opts.output_schema_hint,
        )
        return cls(prompt=prompt, context=text, options=opts)

    @property
    def source_text(self) -> str:
        return self.context or self.prompt

    @property
    def cache_key(self) -> str:
        """
        Explicit cache key, or a digest of everything that shapes the output.

        Identical (prompt, context, options) always map to the same key.
        """
        if self.options.cache_key:
            return self.options.cache_key
        return _digest({
            "prompt": self.prompt,
            "context": self.context,
            **self._output_options(),
        })

    @property
    def cache_scope(self) -> str:
        """Fingerprint of the options that shape the output; similarity hits stay within it."""
        return _digest(self._output_options())[:16]

    def _output_options(self) -> dict[str, Any]:
        return {
            "temperature": self.options.temperature,
            "schema": self.options.output_schema_hint,
            "language": self.options.preferred_language,
        }


def _digest(data: dict[str, Any]) -> str:
    raw = json.dumps(data, sort_keys=True, ensure_ascii=False)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Diagram
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Node:
    id: str
    label: str


@dataclass(frozen=True)
class Edge:
    source: str
    target: str
    label: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"from": self.source, "to": self.target}
        if self.label:
            data["label"] = self.label
        return data


@dataclass(frozen=True)
class GraphFlags:
    """Quality flags; informational only, never cause rejection."""

    has_cycles: bool = False
    disconnected_node_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class DiagramAnalysis:
    """A validated graph: every edge endpoint is a node id."""

    nodes: tuple[Node, ...]
    edges: tuple[Edge, ...]
    confidence: float
    flags: GraphFlags = field(default_factory=GraphFlags)
    title: str = ""
    diagram_type: str = "flow"
    model_confidence: Optional[float] = None
    dropped_edges: int = 0

    @property
    def node_ids(self) -> set[str]:
        return {n.id for n in self.nodes}

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "type": self.diagram_type,
            "nodes": [{"id": n.id, "label": n.label} for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
            "confidence": self.confidence,
            "flags": {
                "has_cycles": self.flags.has_cycles,
                "disconnected_node_ids": list(self.flags.disconnected_node_ids),
            },
            "model_confidence": self.model_confidence,
            "dropped_edges": self.dropped_edges,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DiagramAnalysis":
        """
        Rebuild from `to_dict()` output (cache payloads).

        Raises KeyError/TypeError on bad shape and ValueError when an edge
        endpoint is not a node id.
        """
        flags = data.get("flags") or {}
        analysis = cls(
            nodes=tuple(Node(id=str(n["id"]), label=str(n["label"])) for n in data["nodes"]),
            edges=tuple(
                Edge(source=str(e["from"]), target=str(e["to"]), label=e.get("label"))
                for e in data["edges"]
            ),
            confidence=float(data["confidence"]),
            flags=GraphFlags(
                has_cycles=bool(flags.get("has_cycles", False)),
                disconnected_node_ids=tuple(flags.get("disconnected_node_ids", ())),
            ),
            title=data.get("title", ""),
            diagram_type=data.get("type", "flow"),
            model_confidence=data.get("model_confidence"),
            dropped_edges=int(data.get("dropped_edges", 0)),
        )
        ids = analysis.node_ids
        for edge in analysis.edges:
            if edge.source not in ids or edge.target not in ids:
                raise ValueError(f"Edge {edge.source}->{edge.target} references an unknown node")
        return analysis


# ---------------------------------------------------------------------------
# Response
# ---------------------------------------------------------------------------

@dataclass
class AnalysisResponse:
    """
    Tagged result of one executor run.

    Exactly one of `data` (success) or `error_kind` (failure) is set.
    """

    success: bool
    data: Optional[DiagramAnalysis] = None
    error_kind: Optional[ErrorKind] = None
    error: str = ""
    model_tier_used: Optional[ModelTier] = None
    cache_hit: bool = False
    similarity_score: Optional[float] = None
    latency_ms: float = 0.0
    attempts: int = 0
    fallback_used: bool = False
    complexity: Optional[ComplexityAnalysis] = None
    raw_text: Optional[str] = None

    @classmethod
    def from_cache(
        cls,
        data: DiagramAnalysis,
        *,
        similarity: float,
        latency_ms: float,
    ) -> "AnalysisResponse":
        return cls(
            success=True,
            data=data,
            cache_hit=True,
            similarity_score=similarity,
            latency_ms=latency_ms,
        )

    @classmethod
    def failure(
        cls,
        kind: ErrorKind,
        error: str,
        **kwargs: Any,
    ) -> "AnalysisResponse":
        return cls(success=False, error_kind=kind, error=error, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "data": self.data.to_dict() if self.data else None,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "error": self.error,
            "model_tier_used": self.model_tier_used.value if self.model_tier_used else None,
            "cache_hit": self.cache_hit,
            "similarity_score": self.similarity_score,
            "latency_ms": round(self.latency_ms, 2),
            "attempts": self.attempts,
            "fallback_used": self.fallback_used,
            "complexity": self.complexity.to_dict() if self.complexity else None,
        }
