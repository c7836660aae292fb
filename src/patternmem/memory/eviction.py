"""Capacity-bounded eviction with protection rules.

A pattern is never evicted while any protection rule holds:

- frequency at or above the protect threshold;
- seen within the last ``protect_recent_days``;
- representative of a cluster with at least two members;
- a perfect success rate backed by at least three occurrences.

When protected patterns alone exceed a category's limit, the category is
left over capacity and the condition is reported.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from patternmem.core.config import EngineConfig
from patternmem.core.console import get_logger

from .models import Category, Pattern
from .scoring import days_since, score
from .store import PatternStore

logger = get_logger(__name__)

PROVEN_MIN_FREQUENCY = 3


@dataclass
class EvictionResult:
    category: Category
    limit: int
    remaining: int
    evicted: list[Pattern] = field(default_factory=list)

    @property
    def evicted_count(self) -> int:
        return len(self.evicted)

    @property
    def over_capacity(self) -> bool:
        return self.remaining > self.limit


class Evictor:
    def __init__(self, store: PatternStore, config: EngineConfig) -> None:
        self._store = store
        self._config = config

    def _representatives(self, category: Category) -> set[str]:
        return {
            cluster.representative_id
            for cluster in self._store.clusters(category)
            if len(cluster.pattern_ids) >= 2
        }

    def protection_reasons(
        self, pattern: Pattern, now: datetime, representatives: set[str] | None = None
    ) -> list[str]:
        """Names of the protection rules that currently hold for ``pattern``."""
        rules = self._config.eviction
        if representatives is None:
            representatives = self._representatives(pattern.category)
        reasons: list[str] = []
        if rules.protect_high_frequency and pattern.frequency >= rules.protect_threshold:
            reasons.append("high-frequency")
        if rules.protect_recent and days_since(pattern.last_seen, now) < rules.protect_recent_days:
            reasons.append("recent")
        if rules.protect_cluster_representatives and pattern.id in representatives:
            reasons.append("cluster-representative")
        if (
            rules.protect_proven
            and pattern.success_rate == 1.0
            and pattern.frequency >= PROVEN_MIN_FREQUENCY
        ):
            reasons.append("proven")
        return reasons

    def is_protected(self, pattern: Pattern, now: datetime) -> bool:
        return bool(self.protection_reasons(pattern, now))

    def evict_if_needed(self, category: Category, now: datetime) -> EvictionResult:
        limit = self._config.capacity.limit_for(category)
        patterns = self._store.patterns(category)
        if len(patterns) <= limit:
            return EvictionResult(category=category, limit=limit, remaining=len(patterns))

        representatives = self._representatives(category)
        decay = self._config.decay
        candidates = [
            p for p in patterns if not self.protection_reasons(p, now, representatives)
        ]
        candidates.sort(key=lambda p: (score(p, now, decay), p.last_seen, p.id))

        excess = len(patterns) - limit
        doomed = candidates[:excess]
        removed = self._store.remove(category, (p.id for p in doomed))
        result = EvictionResult(
            category=category,
            limit=limit,
            remaining=self._store.count(category),
            evicted=removed,
        )

        if result.over_capacity:
            logger.warning(
                "Category %s over capacity: %d patterns, limit %d (%d protected)",
                category.value,
                result.remaining,
                limit,
                len(patterns) - len(candidates),
            )
        logger.info("Evicted %d patterns from %s", result.evicted_count, category.value)
        return result

    def evict_all(self, now: datetime) -> list[EvictionResult]:
        return [self.evict_if_needed(category, now) for category in Category]


__all__ = ["EvictionResult", "Evictor"]
