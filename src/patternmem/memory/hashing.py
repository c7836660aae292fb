"""Exact-match keys for patterns and clusters.

The semantic hash is taken over the sorted set of normalized key terms of a
payload, so restatements that differ only in case, punctuation, stopwords or
word order map to the same key. It does not depend on any vocabulary, which
keeps the store's exact-match index stable as the corpus grows.
"""

from __future__ import annotations

import hashlib
from collections.abc import Iterable

from .models import Category, PatternPayload
from .text import DEFAULT_MIN_TOKEN_LENGTH, tokenize

SEMANTIC_HASH_LENGTH = 16
PATTERN_ID_HASH_LENGTH = 12
CLUSTER_ID_HASH_LENGTH = 12


def semantic_hash(
    payload: PatternPayload, *, min_token_length: int = DEFAULT_MIN_TOKEN_LENGTH
) -> str:
    terms = sorted(set(tokenize(payload.key_text(), min_token_length)))
    if not terms:
        # Nothing survived normalization; fall back to the raw key text.
        terms = [" ".join(payload.key_text().lower().split())]
    digest = hashlib.sha256(" ".join(terms).encode("utf-8")).hexdigest()
    return digest[:SEMANTIC_HASH_LENGTH]


def pattern_id(category: Category, hash_value: str, taken: Iterable[str] = ()) -> str:
    """Build ``<category>:<hash prefix>``, suffixed when the prefix is already used."""
    base = f"{category.value}:{hash_value[:PATTERN_ID_HASH_LENGTH]}"
    existing = set(taken)
    if base not in existing:
        return base
    suffix = 2
    while f"{base}-{suffix}" in existing:
        suffix += 1
    return f"{base}-{suffix}"


def cluster_id(member_ids: Iterable[str]) -> str:
    """Deterministic cluster id over the sorted member ids."""
    joined = "\n".join(sorted(member_ids))
    return "cluster-" + hashlib.sha256(joined.encode("utf-8")).hexdigest()[:CLUSTER_ID_HASH_LENGTH]


__all__ = [
    "SEMANTIC_HASH_LENGTH",
    "cluster_id",
    "pattern_id",
    "semantic_hash",
]
