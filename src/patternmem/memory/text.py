"""Text normalization, TF-IDF embeddings and cosine similarity.

Vectors are sparse ``term -> weight`` maps. Inverse document frequencies come
from a per-category ``Vocabulary`` built over all patterns currently in that
category; embedding a stored pattern against a vocabulary that was not built
from the current corpus raises ``VocabularyError``.

All numeric output is produced from sorted terms so that repeated runs over
the same input give bit-identical vectors and similarities.
"""

from __future__ import annotations

import hashlib
import math
import re
from collections import Counter
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from patternmem.core.console import get_logger
from patternmem.core.result import VocabularyError

from .models import Category, Pattern, SparseVector

logger = get_logger(__name__)

_TOKENIZE_PATTERN = re.compile(r"[a-z0-9]+")

STOPWORDS = frozenset(
    {
        "the",
        "and",
        "for",
        "with",
        "that",
        "this",
        "from",
        "are",
        "was",
        "were",
        "been",
        "has",
        "have",
        "had",
        "not",
        "but",
        "into",
        "onto",
        "its",
        "our",
        "your",
        "their",
        "then",
        "than",
        "when",
        "which",
        "will",
        "would",
        "should",
        "can",
        "could",
        "all",
        "any",
        "each",
        "also",
        "use",
        "used",
        "using",
    }
)

DEFAULT_MIN_TOKEN_LENGTH = 3


def tokenize(text: str, min_length: int = DEFAULT_MIN_TOKEN_LENGTH) -> list[str]:
    """Lowercase, strip punctuation and drop short tokens and stopwords."""
    return [
        token
        for token in _TOKENIZE_PATTERN.findall(text.lower())
        if len(token) >= min_length and token not in STOPWORDS
    ]


def pattern_text(pattern: Pattern) -> str:
    """Concatenated text fields a pattern is embedded from."""
    return f"{pattern.name} {pattern.payload.full_text()}"


# -----------------------------------------------------------------------------
# Vocabulary
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class Vocabulary:
    """Document frequencies over one category's patterns."""

    category: Category
    document_count: int
    document_frequency: Mapping[str, int]
    corpus_hashes: frozenset[str]
    min_token_length: int = DEFAULT_MIN_TOKEN_LENGTH
    signature: str = field(default="", compare=False)

    @classmethod
    def build(
        cls,
        category: Category,
        patterns: Iterable[Pattern],
        *,
        min_token_length: int = DEFAULT_MIN_TOKEN_LENGTH,
    ) -> Vocabulary:
        counts: Counter[str] = Counter()
        hashes: set[str] = set()
        total = 0
        for pattern in patterns:
            if pattern.category != category:
                raise VocabularyError(
                    "Pattern does not belong to the vocabulary's category",
                    context={"pattern": pattern.id, "category": category.value},
                )
            total += 1
            hashes.add(pattern.semantic_hash)
            counts.update(set(tokenize(pattern_text(pattern), min_token_length)))

        frequencies = dict(sorted(counts.items()))
        digest = hashlib.sha256()
        digest.update(f"{category.value}|{total}|{min_token_length}".encode())
        for term, df in frequencies.items():
            digest.update(f"|{term}:{df}".encode())
        return cls(
            category=category,
            document_count=total,
            document_frequency=frequencies,
            corpus_hashes=frozenset(hashes),
            min_token_length=min_token_length,
            signature=digest.hexdigest()[:16],
        )

    def idf(self, term: str) -> float:
        # Smoothed so unseen terms and terms present in every document keep weight.
        df = self.document_frequency.get(term, 0)
        return math.log((1 + self.document_count) / (1 + df)) + 1.0

    def covers(self, pattern: Pattern) -> bool:
        return pattern.semantic_hash in self.corpus_hashes

    def is_current(self, patterns: Iterable[Pattern]) -> bool:
        hashes = [p.semantic_hash for p in patterns]
        return len(hashes) == self.document_count and frozenset(hashes) == self.corpus_hashes


# -----------------------------------------------------------------------------
# Embedder
# -----------------------------------------------------------------------------


class Embedder:
    """Computes TF-IDF vectors against per-category vocabularies.

    ``update_vocabulary`` must be called whenever a category's corpus changes.
    Stored patterns carry a memoized vector keyed by the vocabulary signature,
    so unchanged corpora are not re-embedded.
    """

    def __init__(self, *, min_token_length: int = DEFAULT_MIN_TOKEN_LENGTH) -> None:
        self._min_token_length = min_token_length
        self._vocabularies: dict[Category, Vocabulary] = {}

    def update_vocabulary(self, category: Category, patterns: Iterable[Pattern]) -> Vocabulary:
        vocabulary = Vocabulary.build(
            category, patterns, min_token_length=self._min_token_length
        )
        self._vocabularies[category] = vocabulary
        logger.debug(
            "Vocabulary for %s: %d documents, %d terms",
            category.value,
            vocabulary.document_count,
            len(vocabulary.document_frequency),
        )
        return vocabulary

    def ensure_vocabulary(self, category: Category, patterns: list[Pattern]) -> Vocabulary:
        """Return the category vocabulary, rebuilding it if the corpus changed."""
        current = self._vocabularies.get(category)
        if current is not None and current.is_current(patterns):
            return current
        return self.update_vocabulary(category, patterns)

    def vocabulary(self, category: Category) -> Vocabulary:
        try:
            return self._vocabularies[category]
        except KeyError:
            raise VocabularyError(
                "Vocabulary not built for category", context={"category": category.value}
            ) from None

    def embed_text(self, text: str, category: Category) -> SparseVector:
        """Embed free text (a candidate or a query) against a category vocabulary."""
        return self._weigh(tokenize(text, self._min_token_length), self.vocabulary(category))

    def embed(self, pattern: Pattern, corpus: Iterable[Pattern]) -> SparseVector:
        """Embed a stored pattern against the vocabulary of ``corpus``.

        ``corpus`` is the category's current pattern set. The call fails when
        the vocabulary was built over a different corpus, including one that
        has since grown.
        """
        vocabulary = self.vocabulary(pattern.category)
        if not vocabulary.covers(pattern) or not vocabulary.is_current(corpus):
            raise VocabularyError(
                "Vocabulary is stale for pattern; call update_vocabulary first",
                context={"pattern": pattern.id, "category": pattern.category.value},
            )
        cached = pattern.cached_embedding(vocabulary.signature)
        if cached is not None:
            return cached
        vector = self._weigh(tokenize(pattern_text(pattern), self._min_token_length), vocabulary)
        pattern.remember_embedding(vocabulary.signature, vector)
        return vector

    @staticmethod
    def _weigh(tokens: list[str], vocabulary: Vocabulary) -> SparseVector:
        if not tokens:
            return {}
        counts = Counter(tokens)
        total = len(tokens)
        return {term: (count / total) * vocabulary.idf(term) for term, count in sorted(counts.items())}


# -----------------------------------------------------------------------------
# Vector math
# -----------------------------------------------------------------------------


def _norm(vector: Mapping[str, float]) -> float:
    return math.sqrt(math.fsum(vector[term] ** 2 for term in sorted(vector)))


def cosine_similarity(vec_a: Mapping[str, float], vec_b: Mapping[str, float]) -> float:
    """Cosine similarity of two sparse vectors, clamped to [0, 1].

    Returns 0.0 when either vector is empty or has zero norm.
    """
    if not vec_a or not vec_b:
        return 0.0
    shared = sorted(vec_a.keys() & vec_b.keys())
    if not shared:
        return 0.0
    dot = math.fsum(vec_a[term] * vec_b[term] for term in shared)
    norm_a = _norm(vec_a)
    norm_b = _norm(vec_b)
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return min(1.0, max(0.0, dot / (norm_a * norm_b)))


def mean_vector(vectors: Iterable[Mapping[str, float]]) -> SparseVector:
    """Element-wise mean of sparse vectors, with sorted keys."""
    items = list(vectors)
    if not items:
        return {}
    terms = sorted(set().union(*(v.keys() for v in items)))
    count = len(items)
    return {term: math.fsum(v.get(term, 0.0) for v in items) / count for term in terms}


__all__ = [
    "DEFAULT_MIN_TOKEN_LENGTH",
    "Embedder",
    "STOPWORDS",
    "Vocabulary",
    "cosine_similarity",
    "mean_vector",
    "pattern_text",
    "tokenize",
]
