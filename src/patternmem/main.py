"""Command-line interface for the pattern memory.

Thin wrappers over ``patternmem.memory.api``:
    - aggregate: Merge candidate files into the store
    - query / search: Read patterns back
    - export: Markdown or JSON export
    - prune-sessions: Session artifact housekeeping
    - deps: Check a session stage's prerequisites
    - stats: Store roll-up metadata
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import typer
from rich import box
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from patternmem.core.config import ConfigLoadResult, EngineConfig, load_config
from patternmem.core.console import console, print_error, setup_logging
from patternmem.core.result import PatternMemError
from patternmem.memory import api
from patternmem.memory.extraction import load_candidates
from patternmem.memory.models import Pattern
from patternmem.memory.sessions import format_validation_result

app = typer.Typer(help="patternmem: a bounded, scored memory of work-session patterns.")


@dataclass
class AppState:
    config: EngineConfig
    config_meta: ConfigLoadResult
    logger: logging.Logger


@app.callback()
def main(
    ctx: typer.Context,
    config: Path | None = typer.Option(
        None, "--config", "-c", help="Path to a patternmem config file (TOML or JSON)."
    ),
    store_dir: Path | None = typer.Option(
        None, "--store-dir", help="Override the directory holding the pattern store."
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    loaded_config, meta = load_config(config_path=config)
    if store_dir is not None:
        storage = loaded_config.storage.model_copy(
            update={
                "store_dir": store_dir,
                "sessions_dir": store_dir / "sessions",
                "markdown_path": store_dir / "PATTERNS.md",
            }
        )
        loaded_config = loaded_config.model_copy(update={"storage": storage})

    logger = setup_logging(level=loaded_config.log_level, verbose=verbose)
    ctx.obj = AppState(config=loaded_config, config_meta=meta, logger=logger)

    if meta.error:
        console.print(
            Panel(
                f"[bold red]Configuration Error - Safe Mode Active[/bold red]\n\n"
                f"Failed to load {escape(str(meta.path))}:\n{escape(meta.error)}\n\n"
                f"[yellow]Using default settings.[/yellow]",
                border_style="red",
            )
        )


def _fail(exc: Exception) -> typer.Exit:
    print_error(str(exc))
    return typer.Exit(code=1)


def _pattern_table(title: str, patterns: list[Pattern], scores: list[float] | None = None) -> Table:
    table = Table(title=title, box=box.SIMPLE_HEAVY, expand=True)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Pattern", style="white")
    table.add_column("Freq", justify="right")
    table.add_column("Success", justify="right")
    table.add_column("Score" if scores is None else "Match", justify="right", style="cyan")
    for rank, pattern in enumerate(patterns, start=1):
        value = pattern.decay_score if scores is None else scores[rank - 1]
        table.add_row(
            str(rank),
            f"{escape(pattern.name)}\n[dim]{escape(pattern.id)}[/dim]",
            str(pattern.frequency),
            f"{pattern.success_rate:.0%}",
            f"{value:.2f}",
        )
    return table


@app.command("aggregate")
def aggregate(
    ctx: typer.Context,
    inputs: list[Path] = typer.Argument(..., help="Candidate files (.json, .jsonl or markdown)."),
    no_markdown: bool = typer.Option(False, "--no-markdown", help="Skip the markdown summary."),
) -> None:
    """Merge candidate files into the store and run dedup, clustering, scoring and eviction."""
    state: AppState = ctx.obj
    config = state.config
    if no_markdown:
        export = config.export.model_copy(update={"auto_generate_markdown": False})
        config = config.model_copy(update={"export": export})

    candidates: list[dict[str, Any]] = []
    try:
        for path in inputs:
            candidates.extend(load_candidates(path))
        stats = api.aggregate(candidates, config=config)
    except (PatternMemError, OSError) as exc:
        raise _fail(exc) from exc

    table = Table(title="Aggregation", box=box.SIMPLE_HEAVY)
    table.add_column("Metric", style="white")
    table.add_column("Value", justify="right", style="cyan")
    for key, value in stats.summary().items():
        rendered = f"{value:.2f}" if isinstance(value, float) else str(value)
        table.add_row(key.replace("_", " ").capitalize(), rendered)
    console.print(table)

    if stats.over_capacity:
        console.print(f"[yellow]Over capacity: {', '.join(stats.over_capacity)}[/yellow]")
    for error in stats.errors:
        console.print(f"[yellow]skipped[/yellow] {escape(error)}", highlight=False)
    if stats.markdown_path is not None:
        console.print(f"[green]Summary written to {stats.markdown_path}[/green]")


@app.command("query")
def query(
    ctx: typer.Context,
    category: str = typer.Argument(..., help="Pattern category, e.g. approach or tool-usage."),
    top: int = typer.Option(10, "--top", "-n", min=0, help="Number of patterns to show."),
    all_: bool = typer.Option(False, "--all", help="Include superseded patterns."),
) -> None:
    """Show the top patterns of a category."""
    state: AppState = ctx.obj
    try:
        patterns = api.query(category, top, config=state.config, include_superseded=all_)
    except PatternMemError as exc:
        raise _fail(exc) from exc

    if not patterns:
        console.print(Panel(f"No patterns in {category}.", style="yellow"))
        return
    console.print(_pattern_table(f"Top {len(patterns)} {category} patterns", patterns))


@app.command("search")
def search(
    ctx: typer.Context,
    text: str = typer.Argument(..., help="Search text."),
    category: str | None = typer.Option(None, "--category", help="Limit to one category."),
    limit: int = typer.Option(10, "--limit", "-l", min=0, help="Maximum results to show."),
) -> None:
    """Search patterns by TF-IDF similarity."""
    state: AppState = ctx.obj
    try:
        hits = api.search(text, category=category, limit=limit, config=state.config)
    except PatternMemError as exc:
        raise _fail(exc) from exc

    if not hits:
        console.print(Panel("No matching patterns.", style="yellow"))
        return
    scores = [similarity for similarity, _ in hits]
    console.print(_pattern_table("Matches", [p for _, p in hits], scores))


@app.command("export")
def export(
    ctx: typer.Context,
    fmt: str = typer.Option("markdown", "--format", "-f", help="markdown or json."),
    output: Path | None = typer.Option(None, "--output", "-o", help="Write to a file."),
) -> None:
    """Export the store as a markdown summary or JSON."""
    state: AppState = ctx.obj
    try:
        if fmt == "markdown":
            text = api.render_top_n(state.config)
        elif fmt == "json":
            text = api.export_json(state.config)
        else:
            raise typer.BadParameter("format must be 'markdown' or 'json'", param_hint="--format")
    except PatternMemError as exc:
        raise _fail(exc) from exc

    if output is None:
        console.print(text, markup=False, highlight=False, soft_wrap=True)
        return
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(text, encoding="utf-8")
    console.print(f"[green]Exported to {output}[/green]")


@app.command("prune-sessions")
def prune_sessions(ctx: typer.Context) -> None:
    """Delete all but the most recent session artifacts."""
    state: AppState = ctx.obj
    deleted = api.prune_session_artifacts(state.config)
    console.print(f"[green]Deleted {len(deleted)} session artifacts.[/green]")


@app.command("deps")
def deps(
    ctx: typer.Context,
    session_id: str = typer.Argument(..., help="Session identifier."),
    stage: str = typer.Argument(..., help="Stage whose prerequisites to check."),
) -> None:
    """Check whether a stage's prerequisites appear in the session's records."""
    state: AppState = ctx.obj
    try:
        result = api.validate_dependencies(session_id, stage, config=state.config)
    except PatternMemError as exc:
        raise _fail(exc) from exc

    console.print(format_validation_result(result), markup=False, highlight=False)
    if not result.satisfied:
        raise typer.Exit(code=1)


@app.command("stats")
def stats(ctx: typer.Context) -> None:
    """Show store roll-up metadata."""
    state: AppState = ctx.obj
    try:
        info = api.store_stats(state.config)
    except PatternMemError as exc:
        raise _fail(exc) from exc

    meta = info.metadata
    table = Table(title=str(info.path), box=box.SIMPLE_HEAVY)
    table.add_column("Category", style="white")
    table.add_column("Patterns", justify="right", style="cyan")
    for category, count in meta.by_category.items():
        table.add_row(category, str(count))
    console.print(table)
    console.print(
        f"Total: {meta.total_patterns} patterns, {meta.total_clusters} clusters, "
        f"avg score {meta.avg_score:.2f}, avg confidence {meta.avg_confidence:.2f}, "
        f"{info.size_bytes} bytes"
    )


def cli() -> None:
    app()


if __name__ == "__main__":
    cli()
