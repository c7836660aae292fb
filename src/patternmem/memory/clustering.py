"""Agglomerative clustering of patterns within a category.

Each pass recomputes a category's clusters from scratch: every pattern starts
as a singleton and the most similar pair of clusters (by centroid cosine) is
merged until the best similarity falls below the threshold or the merge would
exceed the maximum cluster size. Pairwise similarities are cached between
iterations, so only the merged cluster's row is recomputed.

Ties between equally similar pairs are broken on the clusters' smallest
member ids, which makes membership reproducible across runs.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from itertools import combinations

from patternmem.core.config import EngineConfig
from patternmem.core.console import get_logger

from .hashing import cluster_id
from .models import Category, Cluster, Pattern, SparseVector
from .store import PatternStore, representative_of
from .text import Embedder, cosine_similarity, mean_vector

logger = get_logger(__name__)


@dataclass
class _Group:
    """A cluster under construction, keyed by its smallest member id."""

    members: list[str]
    centroid: SparseVector

    @property
    def key(self) -> str:
        return self.members[0]


def coherence(vectors: list[SparseVector]) -> float:
    """Average pairwise similarity of member vectors; 1.0 for a singleton."""
    if len(vectors) < 2:
        return 1.0
    pairs = [cosine_similarity(a, b) for a, b in combinations(vectors, 2)]
    return min(1.0, max(0.0, sum(pairs) / len(pairs)))


class Clusterer:
    """Recomputes the clusters of a category and writes membership back."""

    def __init__(self, store: PatternStore, embedder: Embedder, config: EngineConfig) -> None:
        self._store = store
        self._embedder = embedder
        self._config = config

    def cluster_all(self, now: datetime) -> int:
        """Cluster every non-empty category; returns the number of clusters kept."""
        total = 0
        for category in Category:
            if self._store.count(category):
                total += len(self.cluster_category(category, now))
            else:
                self._store.replace_clusters(category, [])
        return total

    def cluster_category(self, category: Category, now: datetime) -> list[Cluster]:
        settings = self._config.clustering
        patterns = sorted(self._store.patterns(category), key=lambda p: p.id)
        if not patterns:
            self._store.replace_clusters(category, [])
            return []

        self._embedder.update_vocabulary(category, patterns)
        by_id = {p.id: p for p in patterns}
        vectors = {p.id: self._embedder.embed(p, patterns) for p in patterns}

        groups = self._agglomerate(vectors, settings.similarity_threshold, settings.max_cluster_size)

        previous = {c.id: c for c in self._store.clusters(category)}
        built = [self._build(category, g, by_id, vectors, previous, now) for g in groups]
        retained = [c for c in built if len(c.pattern_ids) >= settings.min_cluster_size]

        for pattern in patterns:
            pattern.cluster_id = None
            pattern.superseded_by = None
        for cluster in retained:
            for member_id in cluster.pattern_ids:
                by_id[member_id].cluster_id = cluster.id
            self._mark_superseded(cluster, by_id, vectors)

        self._store.replace_clusters(category, retained)
        logger.debug(
            "Clustered %s: %d patterns into %d clusters (%d kept)",
            category.value,
            len(patterns),
            len(built),
            len(retained),
        )
        return retained

    def refresh_category(self, category: Category, now: datetime) -> list[Cluster]:
        """Recompute centroids and coherence of the stored clusters, keeping membership.

        Used after patterns leave the category, which changes both the member
        lists and the vocabulary every member vector is weighed against.
        """
        clusters = self._store.clusters(category)
        patterns = sorted(self._store.patterns(category), key=lambda p: p.id)
        if not clusters or not patterns:
            self._store.replace_clusters(category, [])
            return []

        self._embedder.update_vocabulary(category, patterns)
        vectors = {p.id: self._embedder.embed(p, patterns) for p in patterns}
        refreshed = [
            cluster.model_copy(
                update={
                    "centroid": mean_vector(vectors[m] for m in cluster.pattern_ids),
                    "coherence": coherence([vectors[m] for m in cluster.pattern_ids]),
                    "updated": now,
                }
            )
            for cluster in clusters
        ]
        self._store.replace_clusters(category, refreshed)
        return refreshed

    @staticmethod
    def _agglomerate(
        vectors: dict[str, SparseVector], threshold: float, max_size: int
    ) -> list[_Group]:
        groups = {pid: _Group([pid], vectors[pid]) for pid in sorted(vectors)}
        similarity: dict[tuple[str, str], float] = {
            (a, b): cosine_similarity(groups[a].centroid, groups[b].centroid)
            for a, b in combinations(sorted(groups), 2)
        }

        while len(groups) > 1:
            best_pair: tuple[str, str] | None = None
            best_sim = -1.0
            for pair in sorted(similarity):
                if similarity[pair] > best_sim:
                    best_pair, best_sim = pair, similarity[pair]
            if best_pair is None or best_sim < threshold:
                break
            left, right = groups[best_pair[0]], groups[best_pair[1]]
            if len(left.members) + len(right.members) > max_size:
                break

            members = sorted(left.members + right.members)
            merged = _Group(members, mean_vector(vectors[m] for m in members))
            del groups[best_pair[0]], groups[best_pair[1]]
            similarity = {
                pair: value
                for pair, value in similarity.items()
                if not set(pair) & set(best_pair)
            }
            for other_key, other in groups.items():
                pair = (merged.key, other_key) if merged.key < other_key else (other_key, merged.key)
                similarity[pair] = cosine_similarity(merged.centroid, other.centroid)
            groups[merged.key] = merged

        return [groups[key] for key in sorted(groups)]

    def _build(
        self,
        category: Category,
        group: _Group,
        by_id: dict[str, Pattern],
        vectors: dict[str, SparseVector],
        previous: dict[str, Cluster],
        now: datetime,
    ) -> Cluster:
        members = [by_id[m] for m in group.members]
        new_id = cluster_id(group.members)
        created = previous[new_id].created if new_id in previous else now
        return Cluster(
            id=new_id,
            category=category,
            representative_id=representative_of(members).id,
            pattern_ids=list(group.members),
            centroid=group.centroid,
            coherence=coherence([vectors[m] for m in group.members]),
            total_frequency=sum(p.frequency for p in members),
            avg_success_rate=sum(p.success_rate for p in members) / len(members),
            created=created,
            updated=now,
        )

    def _mark_superseded(
        self, cluster: Cluster, by_id: dict[str, Pattern], vectors: dict[str, SparseVector]
    ) -> None:
        threshold = self._config.deduplication.fuzzy_match_threshold
        representative = vectors[cluster.representative_id]
        for member_id in cluster.pattern_ids:
            if member_id == cluster.representative_id:
                continue
            if cosine_similarity(vectors[member_id], representative) >= threshold:
                by_id[member_id].superseded_by = cluster.representative_id


__all__ = ["Clusterer", "coherence"]
