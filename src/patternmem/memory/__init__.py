"""Pattern memory engine.

Keeps a bounded, deduplicated, scored store of work-session patterns:

- models: Categories, payloads, patterns, clusters and candidates
- text / hashing: Tokenizer, TF-IDF embeddings and exact-match keys
- dedup / clustering / scoring / eviction: The maintenance phases
- store: Atomic JSON persistence
- export / sessions / extraction: Outputs, session housekeeping, candidate sources
- api: Public entry points
"""

from __future__ import annotations

from .aggregator import AggregationStats
from .api import (
    aggregate,
    export_json,
    find_related,
    prune_session_artifacts,
    query,
    recommend,
    render_top_n,
    search,
    store_stats,
    validate_dependencies,
)
from .models import Candidate, Category, Cluster, Pattern

__all__ = [
    "AggregationStats",
    "Candidate",
    "Category",
    "Cluster",
    "Pattern",
    "aggregate",
    "export_json",
    "find_related",
    "prune_session_artifacts",
    "query",
    "recommend",
    "render_top_n",
    "search",
    "store_stats",
    "validate_dependencies",
]
