"""Public API for the pattern memory.

Entry points:
- aggregate: Run a maintenance pass over a batch of candidates
- query: Top patterns of a category
- render_top_n / export_json: Human-readable and JSON exports
- search / recommend / find_related: Read helpers
- validate_dependencies: Check a session stage's prerequisites
- prune_session_artifacts: Session housekeeping
- store_stats: Roll-up metadata of the persisted store

Every function takes an optional ``EngineConfig``; when omitted the
configuration is loaded from the environment and config file.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from patternmem.core.config import EngineConfig, load_config
from patternmem.core.result import ValidationError

from . import export as _export
from . import sessions as _sessions
from .aggregator import AggregationStats, Clock, PatternAggregator, utc_now
from .models import Candidate, Category, Pattern
from .scoring import confidence
from .store import PatternStore, StoreMetadata, load_store
from .text import Embedder, cosine_similarity

# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def _resolve_config(config: EngineConfig | None) -> EngineConfig:
    if config is not None:
        return config
    loaded, _ = load_config()
    return loaded


def _parse_category(category: Category | str) -> Category:
    try:
        return Category(category)
    except ValueError:
        choices = ", ".join(c.value for c in Category)
        raise ValidationError(
            f"Unknown category {category!r}", context={"choices": choices}
        ) from None


def _check_limit(name: str, value: int) -> int:
    if value < 0:
        raise ValidationError(f"{name} must not be negative", context={name: value})
    return value


def open_store(config: EngineConfig | None = None) -> PatternStore:
    """Load the persisted store read-only.

    Raises:
        CorruptStoreError: The store file exists but cannot be decoded.
    """
    cfg = _resolve_config(config)
    return load_store(cfg.storage.store_path).unwrap()


# -----------------------------------------------------------------------------
# Maintenance
# -----------------------------------------------------------------------------


def aggregate(
    candidates: Iterable[Candidate | dict[str, Any]],
    *,
    config: EngineConfig | None = None,
    clock: Clock = utc_now,
) -> AggregationStats:
    """Merge a batch of candidates into the store and run the maintenance phases."""
    return PatternAggregator(_resolve_config(config), clock=clock).run(candidates)


def prune_session_artifacts(config: EngineConfig | None = None) -> list[Path]:
    return _sessions.prune_session_artifacts(_resolve_config(config))


# -----------------------------------------------------------------------------
# Reads
# -----------------------------------------------------------------------------


def query(
    category: Category | str,
    top_n: int | None = None,
    *,
    config: EngineConfig | None = None,
    include_superseded: bool = False,
) -> list[Pattern]:
    """Patterns of ``category`` by descending decay score as of the last run."""
    parsed = _parse_category(category)
    store = open_store(config)
    ranked = _export.ranked(store.patterns(parsed), include_superseded=include_superseded)
    return ranked if top_n is None else ranked[: _check_limit("top_n", top_n)]


def render_top_n(config: EngineConfig | None = None, *, now: datetime | None = None) -> str:
    cfg = _resolve_config(config)
    return _export.render_top_n(open_store(cfg), cfg, now or utc_now())


def export_json(
    config: EngineConfig | None = None,
    *,
    category: Category | str | None = None,
    now: datetime | None = None,
) -> str:
    parsed = _parse_category(category) if category is not None else None
    return _export.export_json(open_store(config), now or utc_now(), parsed)


def search(
    text: str,
    *,
    category: Category | str | None = None,
    limit: int = 10,
    config: EngineConfig | None = None,
) -> list[tuple[float, Pattern]]:
    """Rank patterns by TF-IDF cosine similarity to ``text``.

    Each category is scored against its own vocabulary; patterns sharing no
    terms with the query are left out.
    """
    cfg = _resolve_config(config)
    store = open_store(cfg)
    categories = [_parse_category(category)] if category is not None else list(Category)
    embedder = Embedder(min_token_length=cfg.text.min_token_length)

    hits: list[tuple[float, Pattern]] = []
    for cat in categories:
        patterns = store.patterns(cat)
        if not patterns:
            continue
        embedder.update_vocabulary(cat, patterns)
        query_vector = embedder.embed_text(text, cat)
        for pattern in patterns:
            similarity = cosine_similarity(query_vector, embedder.embed(pattern, patterns))
            if similarity > 0.0:
                hits.append((similarity, pattern))

    hits.sort(key=lambda item: (-item[0], -item[1].decay_score, item[1].id))
    return hits[: _check_limit("limit", limit)]


def recommend(
    category: Category | str,
    *,
    limit: int = 10,
    min_confidence: float = 0.7,
    config: EngineConfig | None = None,
    now: datetime | None = None,
) -> list[Pattern]:
    """High-confidence, non-superseded patterns of a category, best first."""
    parsed = _parse_category(category)
    moment = now or utc_now()
    store = open_store(config)
    confident = [
        p for p in _export.ranked(store.patterns(parsed)) if confidence(p, moment) > min_confidence
    ]
    return confident[: _check_limit("limit", limit)]


def find_related(pattern_id: str, *, config: EngineConfig | None = None) -> list[Pattern]:
    """Other members of the pattern's cluster, best first."""
    store = open_store(config)
    pattern = store.get(pattern_id)
    if pattern is None:
        raise ValidationError("Unknown pattern", context={"pattern": pattern_id})
    if pattern.cluster_id is None:
        return []
    for cluster in store.clusters(pattern.category):
        if cluster.id == pattern.cluster_id:
            members = [store.get(pid) for pid in cluster.pattern_ids if pid != pattern_id]
            return _export.ranked((m for m in members if m is not None), include_superseded=True)
    return []


def validate_dependencies(
    session_id: str,
    target_category: str,
    *,
    config: EngineConfig | None = None,
    checker: _sessions.DependencyChecker = _sessions.default_dependency_checker,
) -> _sessions.DependencyValidationResult:
    """Check whether ``target_category``'s prerequisites appear in the session's records."""
    return _sessions.validate_dependencies(
        session_id, target_category, _resolve_config(config), checker
    )


@dataclass
class StoreStats:
    path: Path
    exists: bool
    size_bytes: int
    last_updated: datetime | None
    metadata: StoreMetadata


def store_stats(config: EngineConfig | None = None, *, now: datetime | None = None) -> StoreStats:
    cfg = _resolve_config(config)
    path = cfg.storage.store_path
    store = open_store(cfg)
    exists = path.exists()
    return StoreStats(
        path=path,
        exists=exists,
        size_bytes=path.stat().st_size if exists else 0,
        last_updated=store.last_updated,
        metadata=store.metadata(now or utc_now()),
    )


__all__ = [
    "StoreStats",
    "aggregate",
    "export_json",
    "find_related",
    "open_store",
    "prune_session_artifacts",
    "query",
    "recommend",
    "render_top_n",
    "search",
    "store_stats",
    "validate_dependencies",
]
