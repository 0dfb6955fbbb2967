"""
Segment Diagram Engine - Operator CLI

Drives the engine by hand: analyze a text segment, score its complexity,
and inspect or clear the persisted cache.

    diagram-engine analyze "First mix the dough. Then bake it."
    diagram-engine analyze --file segment.txt --force-tier accurate --json
    diagram-engine complexity "..."
    diagram-engine cache-info
    diagram-engine cache-clear --yes
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from diagram_engine.config import EngineConfig, load_engine_config
from diagram_engine.exceptions import ConfigurationError
from diagram_engine.llm.cache import SemanticCache
from diagram_engine.llm.complexity import ComplexityDetector
from diagram_engine.llm.executor import RequestExecutor
from diagram_engine.llm.llm_config import ModelTier
from diagram_engine.llm.models import AnalysisRequest
from diagram_engine.observability.logging_config import configure_logging

app = typer.Typer(
    name="diagram-engine",
    help="Segment Diagram Engine - adaptive LLM analysis with semantic caching",
)
console = Console()


def _load_config(config_path: Optional[Path]) -> EngineConfig:
    """Load config, with a friendly error on failure."""
    try:
        return load_engine_config(config_path)
    except ConfigurationError as e:
        console.print(Panel(
            f"[red]{e}[/]",
            title="⚠ Configuration Error",
            border_style="red",
        ))
        raise typer.Exit(code=1)


def _read_text(text: Optional[str], file: Optional[Path]) -> str:
    if file is not None:
        return file.read_text(encoding="utf-8")
    if text:
        return text
    console.print("[red]Provide TEXT or --file.[/]")
    raise typer.Exit(code=2)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    configure_logging(level=logging.DEBUG if verbose else logging.WARNING)


@app.command()
def analyze(
    text: Optional[str] = typer.Argument(None, help="Segment text to analyze"),
    file: Optional[Path] = typer.Option(None, "--file", "-f", exists=True, help="Read the segment from a file"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Engine YAML config"),
    language: str = typer.Option("en", help="Label language (en, ja)"),
    force_tier: Optional[ModelTier] = typer.Option(None, help="Skip complexity routing"),
    as_json: bool = typer.Option(False, "--json", help="Print the raw response as JSON"),
):
    """Turn a text segment into a node/edge graph."""
    segment = _read_text(text, file)
    config = _load_config(config_path)
    request = AnalysisRequest.for_segment(
        segment,
        preferred_language=language,
        force_tier=force_tier,
    )

    async def _run():
        async with RequestExecutor.from_config(config) as executor:
            return await executor.execute(request)

    response = asyncio.run(_run())

    if as_json:
        console.print_json(json.dumps(response.to_dict(), ensure_ascii=False))
    elif not response.success:
        console.print(Panel(
            f"[red]{response.error_kind.value}[/]\n\n{response.error}",
            title="Analysis failed",
            border_style="red",
        ))
    else:
        data = response.data
        source = "cache" if response.cache_hit else response.model_tier_used.value
        table = Table(title=data.title or "Diagram")
        table.add_column("Node", style="cyan")
        table.add_column("Label", style="white")
        table.add_column("Edges out", style="green")
        for node in data.nodes:
            targets = [e.target for e in data.edges if e.source == node.id]
            table.add_row(node.id, node.label, ", ".join(targets))
        console.print(table)
        console.print(
            f"type={data.diagram_type} confidence={data.confidence:.2f} "
            f"source={source} attempts={response.attempts} latency={response.latency_ms:.0f}ms"
        )
        if data.flags.has_cycles or data.flags.disconnected_node_ids:
            console.print(
                f"[yellow]cycles={data.flags.has_cycles} "
                f"disconnected={list(data.flags.disconnected_node_ids)}[/]"
            )

    if not response.success:
        raise typer.Exit(code=1)


@app.command()
def complexity(
    text: Optional[str] = typer.Argument(None, help="Segment text to score"),
    file: Optional[Path] = typer.Option(None, "--file", "-f", exists=True, help="Read the segment from a file"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Engine YAML config"),
):
    """Score a segment's complexity without calling a model."""
    segment = _read_text(text, file)
    config = _load_config(config_path)
    analysis = ComplexityDetector.from_config(config.complexity).analyze(segment)

    table = Table(title=f"Complexity: {analysis.score:.3f} ({analysis.level.value})")
    table.add_column("Factor", style="cyan")
    table.add_column("Score", style="white")
    for name, value in analysis.factors.items():
        table.add_row(name, f"{value:.3f}")
    console.print(table)
    console.print(f"Tier: [green]{analysis.recommended_tier.value}[/] - {analysis.reason}")


@app.command("cache-info")
def cache_info(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Engine YAML config"),
):
    """Show persisted cache statistics."""
    config = _load_config(config_path)
    cache = SemanticCache.from_config(config.cache)
    stats = cache.get_stats()

    table = Table(title="Semantic Cache")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="white")
    for key in ("persist_path", "size", "max_entries", "ttl_seconds", "similarity_threshold", "io_errors"):
        table.add_row(key, str(stats[key]))
    console.print(table)


@app.command("cache-clear")
def cache_clear(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Engine YAML config"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """Remove every cached response."""
    config = _load_config(config_path)
    cache = SemanticCache.from_config(config.cache)
    if not yes and not typer.confirm(f"Clear {cache.size} cached entries?"):
        raise typer.Exit(code=1)

    removed = cache.clear()
    cache.flush()
    console.print(f"[green]Cleared {removed} entries.[/]")


if __name__ == "__main__":
    app()
