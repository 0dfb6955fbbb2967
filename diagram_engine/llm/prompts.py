"""
Prompt templates for diagram extraction.

The model is asked for a bare JSON object with title, type, nodes and
edges. Input text is truncated to keep latency predictable; connector
words are called out because they carry most of the edge information.
"""

from __future__ import annotations

from typing import Optional

MAX_INPUT_CHARS = 1000
MAX_NODES = 10
MAX_LABEL_CHARS = 60

DIAGRAM_TYPES = ("flowchart", "mindmap", "timeline", "orgchart")

_SCHEMA_EN = f"""Required fields:
- title: string
- type: one of {" | ".join(f'"{t}"' for t in DIAGRAM_TYPES)}
- nodes: array [{{"id": string, "label": string}}, ...]
- edges: array [{{"from": string, "to": string, "label"?: string}}, ...]
- confidence (optional): number between 0 and 1"""

PROMPT_EN = """You are a data analyst. Analyze the text below and output diagram data as JSON.

{schema}

Rules:
1. No explanations.
2. No code fences.
3. Return valid JSON only.
4. At most {max_nodes} nodes.
5. Labels of at most {max_label} characters.
6. Extract relationships precisely: connectors such as "then", "after", "because", "leads to", "depends on" define the edges between nodes.
7. Preserve order: for sequences or timelines, edges must follow the order of the steps.
8. Express hierarchy: for organizations or classifications, edges go from parent to child.
{extra}
Text:
{text}

JSON:"""

_SCHEMA_JA = f"""必須フィールド:
- title: 文字列（タイトル）
- type: {" | ".join(f'"{t}"' for t in DIAGRAM_TYPES)} のいずれか
- nodes: 配列 [{{"id": 文字列, "label": 文字列}}, ...]
- edges: 配列 [{{"from": 文字列, "to": 文字列, "label"?: 文字列}}, ...]
- confidence（任意）: 0〜1 の数値"""

PROMPT_JA = """あなたはデータアナリストです。以下のテキストを分析し、図解データをJSON形式で出力してください。

{schema}

重要な指示:
1. 説明文は一切不要です
2. コードブロックも不要です
3. 有効なJSON形式のみを返してください
4. ノードは最大{max_nodes}個まで
5. ラベルは{max_label}文字以内
6. **関係性を正確に抽出してください**: 「次に」「その後」「から」「により」「を経て」「によって」などの接続語に注目し、ノード間の依存関係を edges で正確に表現してください
7. **順序を保持**: 時系列や手順がある場合、edges で順序関係を必ず表現してください
8. **階層を表現**: 組織図や分類の場合、上位→下位の関係を edges で明確に表現してください
{extra}
テキスト:
{text}

JSON:"""


def build_diagram_prompt(
    text: str,
    *,
    language: str = "en",
    schema_hint: Optional[str] = None,
    max_chars: int = MAX_INPUT_CHARS,
) -> str:
    """Build the extraction prompt for one text segment."""
    template, schema = (PROMPT_JA, _SCHEMA_JA) if language.startswith("ja") else (PROMPT_EN, _SCHEMA_EN)
    extra = f"\n{schema_hint.strip()}\n" if schema_hint else ""
    return template.format(
        schema=schema,
        max_nodes=MAX_NODES,
        max_label=MAX_LABEL_CHARS,
        extra=extra,
        text=text[:max_chars],
    )
