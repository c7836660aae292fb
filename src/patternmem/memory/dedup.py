"""Exact and fuzzy duplicate detection for incoming candidates.

``Deduplicator.classify`` decides, without mutating the store, whether a
prepared candidate restates an existing pattern:

1. exact: the candidate's semantic hash is in the category index;
2. fuzzy: the best cosine match among the category's patterns reaches the
   fuzzy threshold (the candidate's hash is not registered in this case);
3. otherwise the candidate is new.

``Deduplicator.ingest`` applies the decision: merge into the matched pattern
or insert a fresh one.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Literal

from pydantic import ValidationError as PydanticValidationError

from patternmem.core.config import EngineConfig
from patternmem.core.console import get_logger
from patternmem.core.result import StorageError, ValidationError

from .hashing import pattern_id, semantic_hash
from .models import NAME_MAX, Candidate, Category, Pattern, PatternPayload, clip_text
from .store import PatternStore
from .text import Embedder, cosine_similarity

logger = get_logger(__name__)


@dataclass(frozen=True)
class PreparedCandidate:
    """A validated candidate with its payload and hash computed."""

    category: Category
    name: str
    payload: PatternPayload
    semantic_hash: str
    session_id: str
    observed_at: datetime | None
    succeeded: bool | None

    @property
    def text(self) -> str:
        return f"{self.name} {self.payload.full_text()}"


@dataclass(frozen=True)
class Merge:
    pattern_id: str
    method: Literal["exact", "fuzzy"]
    similarity: float = 1.0


@dataclass(frozen=True)
class New:
    semantic_hash: str


Classification = Merge | New


def prepare_candidate(
    candidate: Candidate | dict[str, object], *, min_token_length: int = 3
) -> PreparedCandidate:
    """Validate a raw candidate record and derive its payload, name and hash.

    Raises:
        ValidationError: The record is missing required fields or has the
            wrong shape for its category.
    """
    try:
        parsed = (
            candidate if isinstance(candidate, Candidate) else Candidate.model_validate(candidate)
        )
        payload = parsed.to_payload()
    except PydanticValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in err['loc']) or 'record'}: {err['msg']}"
            for err in exc.errors()
        )
        raise ValidationError(f"Malformed candidate: {problems}") from exc

    name = clip_text(parsed.name or payload.default_name(), NAME_MAX)
    return PreparedCandidate(
        category=parsed.category,
        name=name,
        payload=payload,
        semantic_hash=semantic_hash(payload, min_token_length=min_token_length),
        session_id=parsed.session_id,
        observed_at=parsed.observed_at,
        succeeded=parsed.succeeded,
    )


def _match_key(item: tuple[float, Pattern]) -> tuple[float, int, datetime, str]:
    similarity, pattern = item
    # Best similarity, then higher frequency, then earlier first_seen, then id.
    return (-similarity, -pattern.frequency, pattern.first_seen, pattern.id)


class Deduplicator:
    """Merges restatements into existing patterns and admits the rest."""

    def __init__(self, store: PatternStore, embedder: Embedder, config: EngineConfig) -> None:
        self._store = store
        self._embedder = embedder
        self._config = config

    def classify(self, candidate: PreparedCandidate) -> Classification:
        settings = self._config.deduplication
        if not settings.enabled:
            return New(candidate.semantic_hash)

        exact = self._store.find_by_hash(candidate.category, candidate.semantic_hash)
        if exact is not None:
            return Merge(exact.id, "exact")

        best = self.best_match(candidate)
        if best is not None and best[0] >= settings.fuzzy_match_threshold:
            return Merge(best[1].id, "fuzzy", best[0])
        return New(candidate.semantic_hash)

    def best_match(self, candidate: PreparedCandidate) -> tuple[float, Pattern] | None:
        """Most similar existing pattern of the candidate's category, if any."""
        existing = self._store.patterns(candidate.category)
        if not existing:
            return None
        self._embedder.ensure_vocabulary(candidate.category, existing)
        vector = self._embedder.embed_text(candidate.text, candidate.category)
        scored = [
            (cosine_similarity(vector, self._embedder.embed(p, existing)), p) for p in existing
        ]
        return min(scored, key=_match_key)

    def ingest(self, candidate: PreparedCandidate, now: datetime) -> tuple[Classification, Pattern]:
        """Classify and apply: merge into the matched pattern or insert a new one."""
        decision = self.classify(candidate)
        match decision:
            case Merge(pattern_id=target_id, method=method, similarity=similarity):
                target = self._store.get(target_id)
                if target is None:
                    raise StorageError(
                        "Merge target vanished from the store", context={"pattern": target_id}
                    )
                self.merge_into(target, candidate, now)
                logger.debug(
                    "Merged candidate into %s (%s, similarity %.3f)", target.id, method, similarity
                )
                return decision, target
            case New():
                pattern = self.create(candidate, now)
                self._store.insert(pattern)
                logger.debug("Added pattern %s", pattern.id)
                return decision, pattern
        raise AssertionError(f"unhandled classification {decision!r}")

    def merge_into(self, pattern: Pattern, candidate: PreparedCandidate, now: datetime) -> None:
        observed = candidate.observed_at or now
        pattern.frequency += 1
        pattern.last_seen = max(pattern.last_seen, observed)
        pattern.first_seen = min(pattern.first_seen, observed)
        pattern.add_example(candidate.session_id, self._config.capacity.max_examples)
        if candidate.succeeded is not None:
            pattern.outcome_count += 1
            outcome = 1.0 if candidate.succeeded else 0.0
            pattern.success_rate += (outcome - pattern.success_rate) / pattern.outcome_count

    def create(self, candidate: PreparedCandidate, now: datetime) -> Pattern:
        observed = candidate.observed_at or now
        return Pattern(
            id=pattern_id(
                candidate.category, candidate.semantic_hash, self._store.ids(candidate.category)
            ),
            category=candidate.category,
            name=candidate.name,
            payload=candidate.payload,
            frequency=1,
            success_rate=1.0 if candidate.succeeded is None else float(candidate.succeeded),
            outcome_count=0 if candidate.succeeded is None else 1,
            first_seen=observed,
            last_seen=observed,
            examples=[candidate.session_id] if candidate.session_id else [],
            semantic_hash=candidate.semantic_hash,
        )


__all__ = [
    "Classification",
    "Deduplicator",
    "Merge",
    "New",
    "PreparedCandidate",
    "prepare_candidate",
]
