"""Maintenance run: dedup -> cluster -> score -> evict -> persist -> export.

A run processes one batch of candidates against the store, then clusters,
scores and evicts as sequential phases and persists once. Malformed
candidates are skipped and reported; a corrupt store or a failed write
aborts the run before anything is persisted. Markdown export and session
cleanup happen after the store is safely written and never fail the run.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from patternmem.core.config import EngineConfig
from patternmem.core.console import get_logger
from patternmem.core.result import ValidationError

from .clustering import Clusterer
from .dedup import Deduplicator, Merge, New, prepare_candidate
from .eviction import Evictor
from .export import write_markdown
from .models import Candidate
from .scoring import rescore
from .sessions import prune_session_artifacts
from .store import PatternStore, load_store, save_store, writer_lock
from .text import Embedder

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass
class AggregationStats:
    """Outcome of one maintenance run."""

    added: int = 0
    merged: int = 0
    updated: int = 0
    evicted: int = 0
    skipped: int = 0
    total_patterns: int = 0
    total_clusters: int = 0
    avg_score: float = 0.0
    errors: list[str] = field(default_factory=list)
    evicted_ids: list[str] = field(default_factory=list)
    over_capacity: list[str] = field(default_factory=list)
    markdown_path: Path | None = None
    pruned_sessions: list[Path] = field(default_factory=list)

    def summary(self) -> dict[str, int | float]:
        return {
            "added": self.added,
            "merged": self.merged,
            "updated": self.updated,
            "evicted": self.evicted,
            "skipped": self.skipped,
            "total_patterns": self.total_patterns,
            "total_clusters": self.total_clusters,
            "avg_score": round(self.avg_score, 4),
        }


class PatternAggregator:
    """Runs the full maintenance pipeline against the configured store."""

    def __init__(self, config: EngineConfig, *, clock: Clock = utc_now) -> None:
        self._config = config
        self._clock = clock

    def run(self, candidates: Iterable[Candidate | dict[str, Any]]) -> AggregationStats:
        """Process a batch and persist it.

        Raises:
            CorruptStoreError: The existing store cannot be decoded.
            StorageError: The store could not be read or written.
        """
        store_path = self._config.storage.store_path
        with writer_lock(store_path):
            store = load_store(store_path).unwrap()
            now = self._clock()
            stats = self.process(store, candidates, now)
            save_store(store, store_path, now, retries=self._config.storage.write_retries).unwrap()
            logger.info("Saved %d patterns to %s", stats.total_patterns, store_path)

        if self._config.export.auto_generate_markdown:
            try:
                stats.markdown_path = write_markdown(store, self._config, now)
            except OSError as exc:
                logger.warning("Markdown export failed: %s", exc)

        stats.pruned_sessions = prune_session_artifacts(self._config)
        if stats.pruned_sessions:
            logger.info("Pruned %d session artifacts", len(stats.pruned_sessions))
        return stats

    def process(
        self,
        store: PatternStore,
        candidates: Iterable[Candidate | dict[str, Any]],
        now: datetime,
    ) -> AggregationStats:
        """Run the in-memory phases on ``store``; nothing is written to disk."""
        config = self._config
        embedder = Embedder(min_token_length=config.text.min_token_length)
        stats = AggregationStats()

        # 1. Deduplicate
        deduplicator = Deduplicator(store, embedder, config)
        for position, raw in enumerate(candidates):
            try:
                prepared = prepare_candidate(raw, min_token_length=config.text.min_token_length)
            except ValidationError as exc:
                stats.skipped += 1
                stats.errors.append(f"candidate {position}: {exc}")
                logger.warning("Skipping candidate %d: %s", position, exc)
                continue
            decision, _ = deduplicator.ingest(prepared, now)
            match decision:
                case New():
                    stats.added += 1
                case Merge(method="exact"):
                    stats.merged += 1
                case Merge():
                    stats.updated += 1
        logger.info(
            "Deduplicated: %d added, %d merged, %d updated, %d skipped",
            stats.added,
            stats.merged,
            stats.updated,
            stats.skipped,
        )

        # 2. Cluster
        clusterer = Clusterer(store, embedder, config)
        if config.clustering.enabled:
            clusters = clusterer.cluster_all(now)
            logger.info("Clustered into %d clusters", clusters)

        # 3. Score
        rescore(store.all_patterns(), now, config.decay)

        # 4. Evict
        for result in Evictor(store, config).evict_all(now):
            stats.evicted += result.evicted_count
            stats.evicted_ids.extend(p.id for p in result.evicted)
            if result.over_capacity:
                stats.over_capacity.append(result.category.value)
            if result.evicted_count:
                clusterer.refresh_category(result.category, now)

        patterns = list(store.all_patterns())
        stats.total_patterns = len(patterns)
        stats.total_clusters = sum(1 for _ in store.all_clusters())
        stats.avg_score = (
            sum(p.decay_score for p in patterns) / len(patterns) if patterns else 0.0
        )
        return stats


__all__ = ["AggregationStats", "Clock", "PatternAggregator", "utc_now"]
