"""Unit tests for exact and fuzzy deduplication."""

from __future__ import annotations

from datetime import timedelta

import pytest

from patternmem.core.config import DeduplicationConfig, EngineConfig
from patternmem.memory.dedup import Deduplicator, Merge, New, prepare_candidate
from patternmem.memory.models import Category
from patternmem.memory.store import PatternStore
from patternmem.memory.text import Embedder

BASE = ("flaky integration tests", "pin the database container version", "reproducible fixtures beat retries")
VARIANT = (
    "flaky integration tests",
    "pin the database container version",
    "reproducible fixtures beat retries always",
)


def _dedup(store: PatternStore, config: EngineConfig | None = None) -> Deduplicator:
    return Deduplicator(store, Embedder(), config or EngineConfig())


class TestClassify:
    """Tests for the three-step decision."""

    def test_identical_normalized_text_merges(self, make_candidate, now) -> None:
        store = PatternStore()
        dedup = _dedup(store)

        first, created = dedup.ingest(prepare_candidate(make_candidate(*BASE)), now)
        restated = make_candidate(
            "Flaky integration TESTS.", "Pin database container version!", "Reproducible fixtures beat retries"
        )
        second, merged = dedup.ingest(prepare_candidate(restated), now)

        assert isinstance(first, New)
        assert created.frequency == 1
        assert second == Merge(created.id, "exact")
        assert merged is created
        assert merged.frequency == 2
        assert store.count(Category.APPROACH) == 1

    def test_near_duplicate_merges_fuzzily_without_indexing(self, make_candidate, now) -> None:
        config = EngineConfig(deduplication=DeduplicationConfig(fuzzy_match_threshold=0.75))
        store = PatternStore()
        dedup = _dedup(store, config)
        _, original = dedup.ingest(prepare_candidate(make_candidate(*BASE)), now)

        variant = prepare_candidate(make_candidate(*VARIANT))
        decision = dedup.classify(variant)

        assert isinstance(decision, Merge)
        assert decision.method == "fuzzy"
        assert decision.pattern_id == original.id
        assert 0.75 <= decision.similarity < 1.0

        dedup.ingest(variant, now)
        assert original.frequency == 2
        assert variant.semantic_hash not in store.index(Category.APPROACH)

    def test_below_threshold_is_new(self, make_candidate, now) -> None:
        store = PatternStore()
        dedup = _dedup(store)
        dedup.ingest(prepare_candidate(make_candidate(*BASE)), now)

        decision = dedup.classify(prepare_candidate(make_candidate(*VARIANT)))

        assert isinstance(decision, New)

    def test_other_categories_are_not_compared(self, make_candidate, now) -> None:
        store = PatternStore()
        dedup = _dedup(store)
        dedup.ingest(prepare_candidate(make_candidate(*BASE)), now)

        decision = dedup.classify(prepare_candidate(make_candidate(*BASE, category="anti-pattern")))

        assert isinstance(decision, New)

    def test_disabled_dedup_admits_everything(self, make_candidate, now) -> None:
        config = EngineConfig(deduplication=DeduplicationConfig(enabled=False))
        store = PatternStore()
        dedup = _dedup(store, config)

        dedup.ingest(prepare_candidate(make_candidate(*BASE)), now)
        dedup.ingest(prepare_candidate(make_candidate(*BASE)), now)

        ids = sorted(store.ids(Category.APPROACH))
        assert len(ids) == 2
        assert ids[1] == ids[0] + "-2"

    def test_tie_prefers_frequency_then_first_seen(self, make_pattern, make_candidate) -> None:
        store = PatternStore()
        older = make_pattern(*BASE, frequency=2, age_days=5, first_seen_days=50)
        store.insert(older)
        younger = make_pattern(
            *BASE, frequency=2, age_days=5, first_seen_days=10, taken=store.ids(Category.APPROACH)
        )
        store.insert(younger)
        dedup = _dedup(store)
        candidate = prepare_candidate(make_candidate(*VARIANT))

        best = dedup.best_match(candidate)
        assert best is not None and best[1] is older

        younger.frequency = 3
        best = dedup.best_match(candidate)
        assert best is not None and best[1] is younger


class TestMerge:
    """Tests for merge bookkeeping."""

    def test_success_rate_is_a_running_mean_of_outcomes(self, make_candidate, now) -> None:
        store = PatternStore()
        dedup = _dedup(store)
        _, pattern = dedup.ingest(prepare_candidate(make_candidate(*BASE)), now)
        assert pattern.success_rate == 1.0

        dedup.ingest(prepare_candidate(make_candidate(*BASE, succeeded=False)), now)
        assert pattern.success_rate == 0.0

        dedup.ingest(prepare_candidate(make_candidate(*BASE, succeeded=True)), now)
        assert pattern.success_rate == pytest.approx(0.5)

        dedup.ingest(prepare_candidate(make_candidate(*BASE)), now)
        assert pattern.success_rate == pytest.approx(0.5)
        assert pattern.frequency == 4

    def test_examples_keep_latest_sessions(self, make_candidate, now) -> None:
        store = PatternStore()
        dedup = _dedup(store)
        for i in range(7):
            _, pattern = dedup.ingest(
                prepare_candidate(make_candidate(*BASE, session_id=f"s{i}")), now
            )
        assert pattern.examples == ["s2", "s3", "s4", "s5", "s6"]

    def test_timestamps_widen(self, make_candidate, now) -> None:
        store = PatternStore()
        dedup = _dedup(store)
        _, pattern = dedup.ingest(prepare_candidate(make_candidate(*BASE)), now)

        earlier = (now - timedelta(days=3)).isoformat()
        later = (now + timedelta(days=1)).isoformat()
        dedup.ingest(prepare_candidate(make_candidate(*BASE, observed_at=earlier)), now)
        dedup.ingest(prepare_candidate(make_candidate(*BASE, observed_at=later)), now)

        assert pattern.first_seen == now - timedelta(days=3)
        assert pattern.last_seen == now + timedelta(days=1)
