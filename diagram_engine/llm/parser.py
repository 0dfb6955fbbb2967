"""
Response Parser — Tolerant JSON extraction and graph validation.

Model output is untrusted free text that should contain a JSON object.
The parser:

1. Locates a balanced JSON object in noisy text (code fences, leading
   chatter, trailing commentary), repairing trailing commas.
2. Validates nodes (unique, non-empty ids) and edges (both endpoints
   must be known node ids). Invalid edges are dropped and logged.
3. Flags cycles and disconnected nodes. Neither is a rejection reason:
   cycles are legal in source content, and both only lower confidence.

Results are tagged values, never exceptions:

    outcome = ResponseParser().parse(raw_text)
    if isinstance(outcome, ParseSuccess):
        outcome.analysis.nodes
    elif isinstance(outcome, ParseFailure):
        outcome.reason          # no JSON object found
    else:  # SchemaViolation
        outcome.issues          # JSON found, but no usable graph
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Optional, Union

from diagram_engine.exceptions import JSONExtractionError
from diagram_engine.llm.models import DiagramAnalysis, Edge, GraphFlags, Node

logger = logging.getLogger(__name__)

# Model-side diagram types → layout-side diagram types
DIAGRAM_TYPE_MAP = {
    "flowchart": "flow",
    "mindmap": "tree",
    "timeline": "timeline",
    "orgchart": "tree",
}

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.DOTALL)
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_MAX_CANDIDATE_STARTS = 20


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ParseSuccess:
    analysis: DiagramAnalysis
    issues: tuple[str, ...] = ()

    ok = True


@dataclass(frozen=True)
class ParseFailure:
    raw: str
    reason: str

    ok = False


@dataclass(frozen=True)
class SchemaViolation:
    issues: tuple[str, ...]
    raw: str = ""

    ok = False


ParseOutcome = Union[ParseSuccess, ParseFailure, SchemaViolation]


# ---------------------------------------------------------------------------
# JSON extraction
# ---------------------------------------------------------------------------

def _balanced_end(text: str, start: int) -> Optional[int]:
    """Index of the brace closing the object opened at `start`, string-aware."""
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i
    return None


def _loads_lenient(candidate: str) -> Optional[dict[str, Any]]:
    for attempt in (candidate, _TRAILING_COMMA_RE.sub(r"\1", candidate)):
        try:
            value = json.loads(attempt)
        except json.JSONDecodeError:
            continue
        if isinstance(value, dict):
            return value
    return None


def extract_json_object(text: str) -> dict[str, Any]:
    """
    Return the first JSON object found in `text`.

    Fenced blocks are tried before the surrounding text.

    Raises:
        JSONExtractionError: If no balanced, parseable object exists.
    """
    sources = [m.group(1) for m in _FENCE_RE.finditer(text)] + [text]

    for source in sources:
        starts = [i for i, ch in enumerate(source) if ch == "{"][:_MAX_CANDIDATE_STARTS]
        for start in starts:
            end = _balanced_end(source, start)
            if end is None:
                continue
            value = _loads_lenient(source[start:end + 1])
            if value is not None:
                return value

    raise JSONExtractionError(
        "No JSON object found in model output",
        raw_preview=text[:200],
    )


# ---------------------------------------------------------------------------
# Graph checks
# ---------------------------------------------------------------------------

def has_cycle(node_ids: list[str], edges: list[Edge]) -> bool:
    """Iterative three-colour DFS over the directed edge set."""
    adjacency: dict[str, list[str]] = {nid: [] for nid in node_ids}
    for edge in edges:
        adjacency[edge.source].append(edge.target)

    white, grey, black = 0, 1, 2
    colour = {nid: white for nid in node_ids}

    for root in node_ids:
        if colour[root] != white:
            continue
        stack: list[tuple[str, int]] = [(root, 0)]
        colour[root] = grey
        while stack:
            node, idx = stack[-1]
            children = adjacency[node]
            if idx < len(children):
                stack[-1] = (node, idx + 1)
                child = children[idx]
                if colour[child] == grey:
                    return True
                if colour[child] == white:
                    colour[child] = grey
                    stack.append((child, 0))
            else:
                colour[node] = black
                stack.pop()
    return False


def disconnected_nodes(node_ids: list[str], edges: list[Edge]) -> tuple[str, ...]:
    """Node ids with no incident edge, in node order."""
    touched = {e.source for e in edges} | {e.target for e in edges}
    return tuple(nid for nid in node_ids if nid not in touched)


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

class ResponseParser:
    """
    Validates model output into a DiagramAnalysis.

    Confidence starts from the model-reported value (when it is a number
    in [0, 1]) or `base_confidence`, then is reduced by the share of
    dropped edges, by cycles and by disconnected nodes. It never drops
    below `min_confidence`: a flawed graph is still a usable graph.
    """

    def __init__(
        self,
        base_confidence: float = 0.9,
        min_confidence: float = 0.05,
        cycle_penalty: float = 0.95,
        disconnected_penalty: float = 0.3,
    ):
        self.base_confidence = base_confidence
        self.min_confidence = min_confidence
        self.cycle_penalty = cycle_penalty
        self.disconnected_penalty = disconnected_penalty

    def parse(self, raw_text: str) -> ParseOutcome:
        if not raw_text or not raw_text.strip():
            return ParseFailure(raw=raw_text or "", reason="Empty response from LLM")

        try:
            data = extract_json_object(raw_text)
        except JSONExtractionError as e:
            logger.warning(
                "llm_parse_failed",
                extra={"reason": str(e), "preview": e.raw_preview[:120]},
            )
            return ParseFailure(raw=raw_text, reason=str(e))

        return self.validate(data, raw=raw_text)

    def validate(self, data: dict[str, Any], *, raw: str = "") -> ParseOutcome:
        issues: list[str] = []

        nodes = self._validate_nodes(data.get("nodes"), issues)
        if nodes is None:
            return SchemaViolation(issues=tuple(issues), raw=raw)

        node_ids = [n.id for n in nodes]
        edges, dropped = self._validate_edges(data.get("edges"), set(node_ids), issues)

        cyclic = has_cycle(node_ids, edges)
        disconnected = disconnected_nodes(node_ids, edges) if len(nodes) > 1 else ()

        model_confidence = self._model_confidence(data.get("confidence"), issues)
        confidence = self.score(
            base=model_confidence if model_confidence is not None else self.base_confidence,
            valid_edges=len(edges),
            dropped_edges=dropped,
            has_cycles=cyclic,
            disconnected=len(disconnected),
            total_nodes=len(nodes),
        )

        raw_type = str(data.get("type") or "").strip().lower()
        analysis = DiagramAnalysis(
            nodes=tuple(nodes),
            edges=tuple(edges),
            confidence=confidence,
            flags=GraphFlags(has_cycles=cyclic, disconnected_node_ids=disconnected),
            title=str(data.get("title") or "").strip(),
            diagram_type=DIAGRAM_TYPE_MAP.get(raw_type, "flow"),
            model_confidence=model_confidence,
            dropped_edges=dropped,
        )

        if issues:
            logger.info(
                "llm_graph_repaired",
                extra={"issues": len(issues), "dropped_edges": dropped},
            )
        return ParseSuccess(analysis=analysis, issues=tuple(issues))

    def score(
        self,
        *,
        base: float,
        valid_edges: int,
        dropped_edges: int,
        has_cycles: bool,
        disconnected: int,
        total_nodes: int,
    ) -> float:
        declared = valid_edges + dropped_edges
        edge_ratio = valid_edges / declared if declared else 1.0

        confidence = base * (0.5 + 0.5 * edge_ratio)
        if has_cycles:
            confidence *= self.cycle_penalty
        if disconnected and total_nodes:
            confidence *= 1.0 - self.disconnected_penalty * disconnected / total_nodes

        return max(self.min_confidence, min(1.0, confidence))

    # --- Field validation ---

    @staticmethod
    def _validate_nodes(raw_nodes: Any, issues: list[str]) -> Optional[list[Node]]:
        if not isinstance(raw_nodes, list):
            issues.append("'nodes' is missing or not a list")
            return None

        nodes: list[Node] = []
        seen: set[str] = set()
        for i, item in enumerate(raw_nodes):
            if not isinstance(item, dict):
                issues.append(f"node[{i}] is not an object")
                continue
            raw_id = item.get("id")
            if raw_id is None or isinstance(raw_id, (bool, dict, list)) or not str(raw_id).strip():
                issues.append(f"node[{i}] has no usable id")
                continue
            node_id = str(raw_id).strip()
            if node_id in seen:
                issues.append(f"duplicate node id {node_id!r} dropped")
                continue
            label = item.get("label")
            label = str(label).strip() if label is not None else ""
            nodes.append(Node(id=node_id, label=label or node_id))
            seen.add(node_id)

        if not nodes:
            issues.append("no valid nodes")
            return None
        return nodes

    @staticmethod
    def _validate_edges(
        raw_edges: Any,
        node_ids: set[str],
        issues: list[str],
    ) -> tuple[list[Edge], int]:
        if raw_edges is None:
            issues.append("'edges' missing; defaulting to no edges")
            return [], 0
        if not isinstance(raw_edges, list):
            issues.append("'edges' is not a list; ignored")
            return [], 0

        edges: list[Edge] = []
        seen: set[tuple[str, str]] = set()
        dropped = 0
        for i, item in enumerate(raw_edges):
            if not isinstance(item, dict):
                issues.append(f"edge[{i}] is not an object")
                dropped += 1
                continue
            source = item.get("from", item.get("source"))
            target = item.get("to", item.get("target"))
            source = str(source).strip() if source is not None else None
            target = str(target).strip() if target is not None else None

            if source not in node_ids or target not in node_ids:
                dropped += 1
                issues.append(f"edge {source!r} -> {target!r} references an unknown node")
                logger.warning(
                    "llm_edge_dropped",
                    extra={"source": source, "target": target},
                )
                continue
            if (source, target) in seen:
                issues.append(f"duplicate edge {source!r} -> {target!r} ignored")
                continue

            label = item.get("label")
            edges.append(Edge(
                source=source,
                target=target,
                label=str(label).strip() if label else None,
            ))
            seen.add((source, target))

        return edges, dropped

    @staticmethod
    def _model_confidence(value: Any, issues: list[str]) -> Optional[float]:
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not 0.0 <= value <= 1.0:
            issues.append(f"model confidence {value!r} ignored")
            return None
        return float(value)
