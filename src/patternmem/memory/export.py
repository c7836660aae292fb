"""Human-readable and JSON exports of the store."""

from __future__ import annotations

import json
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path

from patternmem.core.config import EngineConfig
from patternmem.core.console import get_logger

from .models import Category, Pattern
from .store import PatternStore, write_atomic

logger = get_logger(__name__)

RECENT_SESSIONS_SHOWN = 3


def ranked(patterns: Iterable[Pattern], *, include_superseded: bool = False) -> list[Pattern]:
    """Patterns by descending decay score, ties broken by id."""
    pool = [p for p in patterns if include_superseded or p.superseded_by is None]
    return sorted(pool, key=lambda p: (-p.decay_score, p.id))


def _category_title(category: Category) -> str:
    return category.value.replace("-", " ").title()


def _render_pattern(rank: int, pattern: Pattern) -> list[str]:
    lines = [
        f"### {rank}. {pattern.name} [{pattern.frequency}x]",
        "",
        f"**Id**: `{pattern.id}` ({pattern.category.value})",
        "",
    ]
    for label, value in pattern.payload.render_lines():
        lines.extend([f"**{label}**: {value}", ""])
    lines.append(
        f"**Stats**: Freq={pattern.frequency}, "
        f"Success={pattern.success_rate * 100:.0f}%, "
        f"Score={pattern.decay_score:.2f}"
    )
    lines.append("")
    if pattern.examples:
        shown = ", ".join(pattern.examples[-RECENT_SESSIONS_SHOWN:])
        more = " ..." if len(pattern.examples) > RECENT_SESSIONS_SHOWN else ""
        lines.extend([f"**Sessions**: {shown}{more}", ""])
    if pattern.cluster_id:
        lines.extend([f"**Cluster**: {pattern.cluster_id}", ""])
    lines.extend(["---", ""])
    return lines


def render_top_n(store: PatternStore, config: EngineConfig, now: datetime) -> str:
    """Render the top ``markdown_top_n`` patterns of every non-empty category."""
    top_n = config.export.markdown_top_n
    total = store.count()
    lines = [
        "# Pattern Library",
        "",
        f"**Generated**: {now.isoformat()}",
        f"**Total patterns**: {total}",
        f"**Top patterns per category**: {top_n}",
        "",
        "---",
        "",
    ]
    for category in Category:
        top = ranked(store.patterns(category))[:top_n]
        if not top:
            continue
        lines.extend([f"## {_category_title(category)}", ""])
        for rank, pattern in enumerate(top, start=1):
            lines.extend(_render_pattern(rank, pattern))
    return "\n".join(lines).rstrip() + "\n"


def write_markdown(store: PatternStore, config: EngineConfig, now: datetime) -> Path:
    path = config.storage.markdown_path
    assert path is not None
    write_atomic(path, render_top_n(store, config, now))
    logger.debug("Wrote markdown summary to %s", path)
    return path


def export_json(store: PatternStore, now: datetime, category: Category | None = None) -> str:
    """All patterns (optionally one category) as an indented JSON document."""
    categories = [category] if category is not None else list(Category)
    patterns = [p for c in categories for p in ranked(store.patterns(c), include_superseded=True)]
    document = {
        "exported_at": now.isoformat(),
        "total": len(patterns),
        "patterns": [p.model_dump(mode="json") for p in patterns],
    }
    return json.dumps(document, indent=2, ensure_ascii=False)


__all__ = ["export_json", "ranked", "render_top_n", "write_markdown"]
