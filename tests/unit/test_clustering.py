"""Unit tests for agglomerative clustering."""

from __future__ import annotations

from datetime import timedelta

import pytest

from patternmem.core.config import ClusteringConfig, DeduplicationConfig, EngineConfig
from patternmem.memory.clustering import Clusterer, coherence
from patternmem.memory.models import Category
from patternmem.memory.store import PatternStore
from patternmem.memory.text import Embedder, mean_vector

BASE = ("flaky integration tests", "pin the database container version", "reproducible fixtures beat retries")
VARIANT = (
    "flaky integration tests",
    "pin the database container version",
    "reproducible fixtures beat retries always",
)
UNRELATED = ("slow docker builds", "order layers by churn", "cache invalidation matters")


def _store(make_pattern) -> tuple[PatternStore, dict[str, str]]:
    store = PatternStore()
    names = {}
    for label, text, freq in (("base", BASE, 1), ("variant", VARIANT, 3), ("other", UNRELATED, 2)):
        pattern = make_pattern(*text, frequency=freq)
        store.insert(pattern)
        names[label] = pattern.id
    return store, names


def _cluster(store: PatternStore, config: EngineConfig, now) -> list:
    return Clusterer(store, Embedder(), config).cluster_category(Category.APPROACH, now)


class TestClusterCategory:
    """Tests for a full clustering pass."""

    def test_similar_patterns_share_a_cluster(self, make_pattern, now) -> None:
        store, ids = _store(make_pattern)

        clusters = _cluster(store, EngineConfig(), now)

        assert len(clusters) == 2
        base, variant, other = (store.get(ids[k]) for k in ("base", "variant", "other"))
        assert base.cluster_id == variant.cluster_id
        assert other.cluster_id not in (None, base.cluster_id)

        merged = next(c for c in clusters if c.id == base.cluster_id)
        assert merged.representative_id == ids["variant"]
        assert merged.pattern_ids == sorted([ids["base"], ids["variant"]])
        assert merged.total_frequency == 4
        assert 0.75 <= merged.coherence <= 1.0

    def test_every_cluster_id_is_backed_by_membership(self, make_pattern, now) -> None:
        store, _ = _store(make_pattern)
        clusters = {c.id: c for c in _cluster(store, EngineConfig(), now)}

        for pattern in store.patterns(Category.APPROACH):
            assert pattern.cluster_id in clusters
            assert pattern.id in clusters[pattern.cluster_id].pattern_ids
        assert store.clusters(Category.APPROACH) == list(clusters.values())

    def test_min_cluster_size_drops_singletons(self, make_pattern, now) -> None:
        store, ids = _store(make_pattern)
        config = EngineConfig(clustering=ClusteringConfig(min_cluster_size=2))

        clusters = _cluster(store, config, now)

        assert len(clusters) == 1
        assert store.get(ids["other"]).cluster_id is None

    def test_max_cluster_size_stops_merging(self, make_pattern, now) -> None:
        store, _ = _store(make_pattern)
        config = EngineConfig(clustering=ClusteringConfig(max_cluster_size=1))

        clusters = _cluster(store, config, now)

        assert len(clusters) == 3
        assert all(c.coherence == 1.0 for c in clusters)

    def test_high_threshold_keeps_singletons(self, make_pattern, now) -> None:
        store, _ = _store(make_pattern)
        config = EngineConfig(clustering=ClusteringConfig(similarity_threshold=0.99))

        assert len(_cluster(store, config, now)) == 3

    def test_repeated_runs_are_identical(self, make_pattern, now) -> None:
        store, _ = _store(make_pattern)
        first = [(c.id, c.pattern_ids) for c in _cluster(store, EngineConfig(), now)]
        second = [(c.id, c.pattern_ids) for c in _cluster(store, EngineConfig(), now)]
        assert first == second

    def test_created_timestamp_survives_recluster(self, make_pattern, now) -> None:
        store, _ = _store(make_pattern)
        first = _cluster(store, EngineConfig(), now)
        later = now + timedelta(days=1)
        second = _cluster(store, EngineConfig(), later)

        assert [c.created for c in second] == [c.created for c in first]
        assert all(c.updated == later for c in second)

    def test_supersession_follows_fuzzy_threshold(self, make_pattern, now) -> None:
        store, ids = _store(make_pattern)
        _cluster(store, EngineConfig(), now)
        assert store.get(ids["base"]).superseded_by is None

        config = EngineConfig(deduplication=DeduplicationConfig(fuzzy_match_threshold=0.8))
        _cluster(store, config, now)
        assert store.get(ids["base"]).superseded_by == ids["variant"]
        assert store.get(ids["variant"]).superseded_by is None

    def test_empty_category(self, now) -> None:
        store = PatternStore()
        assert _cluster(store, EngineConfig(), now) == []


class TestRefreshCategory:
    """Tests for recomputing clusters after members leave the category."""

    def test_removed_member_leaves_centroid_and_coherence(self, make_pattern, now) -> None:
        store, ids = _store(make_pattern)
        config = EngineConfig(clustering=ClusteringConfig(similarity_threshold=0.0))
        (before,) = _cluster(store, config, now)
        assert len(before.pattern_ids) == 3

        store.remove(Category.APPROACH, [ids["other"]])
        embedder = Embedder()
        (after,) = Clusterer(store, embedder, config).refresh_category(Category.APPROACH, now)

        remaining = sorted(store.patterns(Category.APPROACH), key=lambda p: p.id)
        vectors = [embedder.embed(p, remaining) for p in remaining]
        assert after.id == before.id
        assert after.pattern_ids == [p.id for p in remaining]
        assert after.centroid == mean_vector(vectors)
        assert after.coherence == pytest.approx(coherence(vectors))
        assert after.coherence > before.coherence
        assert "docker" not in after.centroid
        assert store.clusters(Category.APPROACH) == [after]

    def test_empty_category_drops_clusters(self, make_pattern, now) -> None:
        store, ids = _store(make_pattern)
        config = EngineConfig(clustering=ClusteringConfig(similarity_threshold=0.0))
        _cluster(store, config, now)

        store.remove(Category.APPROACH, list(ids.values()))

        assert Clusterer(store, Embedder(), config).refresh_category(Category.APPROACH, now) == []
        assert store.clusters(Category.APPROACH) == []


class TestCoherence:
    def test_singleton_is_fully_coherent(self) -> None:
        assert coherence([{"a": 1.0}]) == 1.0

    def test_disjoint_members_have_zero_coherence(self) -> None:
        assert coherence([{"a": 1.0}, {"b": 1.0}]) == 0.0
