"""Pattern store persistence.

The store is a single JSON document partitioned by category. Each partition
holds its patterns, the exact-hash index (``semantic_hash -> pattern id``) and
the clusters of the last clustering pass. Roll-up metadata is recomputed from
the patterns on every save and is never read back as state; the index is a
cache and is rebuilt from the patterns on load.

Writes go to a temporary file that is fsynced and atomically renamed over the
store, so a crash mid-write leaves the previous file intact.
"""

from __future__ import annotations

import json
import os
import time
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from patternmem.core.console import get_logger
from patternmem.core.result import CorruptStoreError, Err, Ok, Result, StorageError

from .models import Category, Cluster, Pattern
from .scoring import confidence

# Advisory locking is POSIX-only; elsewhere the single-writer contract is unenforced.
try:
    import fcntl
except ImportError:  # pragma: no cover
    fcntl = None  # type: ignore[assignment]

logger = get_logger(__name__)

STORE_VERSION = 1
WRITE_RETRY_DELAY = 0.05


# -----------------------------------------------------------------------------
# On-disk document
# -----------------------------------------------------------------------------


class CategoryPartition(BaseModel):
    model_config = ConfigDict(extra="forbid")

    patterns: list[Pattern] = Field(default_factory=list)
    index: dict[str, str] = Field(default_factory=dict)
    clusters: list[Cluster] = Field(default_factory=list)


class StoreMetadata(BaseModel):
    """Roll-up statistics, derived from the patterns on every save."""

    model_config = ConfigDict(extra="forbid")

    total_patterns: int = 0
    total_clusters: int = 0
    by_category: dict[str, int] = Field(default_factory=dict)
    avg_score: float = 0.0
    avg_confidence: float = 0.0
    oldest: AwareDatetime | None = None
    newest: AwareDatetime | None = None


class StoreDocument(BaseModel):
    model_config = ConfigDict(extra="forbid")

    version: int = STORE_VERSION
    last_updated: AwareDatetime | None = None
    metadata: StoreMetadata = Field(default_factory=StoreMetadata)
    categories: dict[Category, CategoryPartition] = Field(default_factory=dict)


# -----------------------------------------------------------------------------
# In-memory handle
# -----------------------------------------------------------------------------


class PatternStore:
    """Explicit handle over the store's patterns, indices and clusters.

    Components receive this handle instead of reaching for a global; it is
    the single source of truth during a run.
    """

    def __init__(self, last_updated: datetime | None = None) -> None:
        self.last_updated = last_updated
        self._patterns: dict[Category, dict[str, Pattern]] = {c: {} for c in Category}
        self._index: dict[Category, dict[str, str]] = {c: {} for c in Category}
        self._clusters: dict[Category, list[Cluster]] = {c: [] for c in Category}

    # -- reads ---------------------------------------------------------------

    def patterns(self, category: Category) -> list[Pattern]:
        return list(self._patterns[category].values())

    def all_patterns(self) -> Iterator[Pattern]:
        for category in Category:
            yield from self._patterns[category].values()

    def count(self, category: Category | None = None) -> int:
        if category is None:
            return sum(len(bucket) for bucket in self._patterns.values())
        return len(self._patterns[category])

    def get(self, pattern_id: str) -> Pattern | None:
        category, _, _ = pattern_id.partition(":")
        try:
            bucket = self._patterns[Category(category)]
        except ValueError:
            return None
        return bucket.get(pattern_id)

    def ids(self, category: Category) -> set[str]:
        return set(self._patterns[category])

    def find_by_hash(self, category: Category, hash_value: str) -> Pattern | None:
        pattern_id = self._index[category].get(hash_value)
        return self._patterns[category].get(pattern_id) if pattern_id else None

    def index(self, category: Category) -> dict[str, str]:
        return dict(self._index[category])

    def clusters(self, category: Category) -> list[Cluster]:
        return list(self._clusters[category])

    def all_clusters(self) -> Iterator[Cluster]:
        for category in Category:
            yield from self._clusters[category]

    # -- writes --------------------------------------------------------------

    def insert(self, pattern: Pattern) -> None:
        bucket = self._patterns[pattern.category]
        if pattern.id in bucket:
            raise StorageError("Duplicate pattern id", context={"pattern": pattern.id})
        bucket[pattern.id] = pattern
        self._index[pattern.category].setdefault(pattern.semantic_hash, pattern.id)

    def remove(self, category: Category, pattern_ids: Iterable[str]) -> list[Pattern]:
        """Remove patterns and prune every index entry and cluster referencing them."""
        doomed = set(pattern_ids)
        bucket = self._patterns[category]
        removed = [bucket.pop(pid) for pid in list(bucket) if pid in doomed]
        if not removed:
            return []
        self.rebuild_index(category)
        self._prune_clusters(category, doomed)
        for pattern in bucket.values():
            if pattern.superseded_by in doomed:
                pattern.superseded_by = None
        return removed

    def replace_clusters(self, category: Category, clusters: list[Cluster]) -> None:
        """Install a fresh clustering pass for ``category``."""
        self._clusters[category] = list(clusters)

    def rebuild_index(self, category: Category) -> None:
        index: dict[str, str] = {}
        for pattern in self._patterns[category].values():
            index.setdefault(pattern.semantic_hash, pattern.id)
        self._index[category] = index

    def _prune_clusters(self, category: Category, removed_ids: set[str]) -> None:
        kept: list[Cluster] = []
        for cluster in self._clusters[category]:
            members = [pid for pid in cluster.pattern_ids if pid not in removed_ids]
            if len(members) == len(cluster.pattern_ids):
                kept.append(cluster)
                continue
            if not members:
                continue
            patterns = [self._patterns[category][pid] for pid in members]
            representative = cluster.representative_id
            if representative not in members:
                representative = representative_of(patterns).id
            kept.append(
                cluster.model_copy(
                    update={
                        "pattern_ids": members,
                        "representative_id": representative,
                        "total_frequency": sum(p.frequency for p in patterns),
                        "avg_success_rate": sum(p.success_rate for p in patterns) / len(patterns),
                    }
                )
            )
        self._clusters[category] = kept

    # -- serialization -------------------------------------------------------

    def metadata(self, now: datetime) -> StoreMetadata:
        patterns = list(self.all_patterns())
        if not patterns:
            return StoreMetadata(by_category={c.value: 0 for c in Category})
        return StoreMetadata(
            total_patterns=len(patterns),
            total_clusters=sum(1 for _ in self.all_clusters()),
            by_category={c.value: self.count(c) for c in Category},
            avg_score=sum(p.decay_score for p in patterns) / len(patterns),
            avg_confidence=sum(confidence(p, now) for p in patterns) / len(patterns),
            oldest=min(p.first_seen for p in patterns),
            newest=max(p.last_seen for p in patterns),
        )

    def to_document(self, now: datetime) -> StoreDocument:
        return StoreDocument(
            last_updated=now,
            metadata=self.metadata(now),
            categories={
                category: CategoryPartition(
                    patterns=self.patterns(category),
                    index=self.index(category),
                    clusters=self.clusters(category),
                )
                for category in Category
            },
        )

    @classmethod
    def from_document(cls, document: StoreDocument) -> PatternStore:
        store = cls(last_updated=document.last_updated)
        for category, partition in document.categories.items():
            for pattern in partition.patterns:
                if pattern.category != category:
                    raise CorruptStoreError(
                        "Pattern filed under the wrong category",
                        context={"pattern": pattern.id, "partition": category.value},
                    )
                store.insert(pattern)
            store.replace_clusters(category, partition.clusters)
            store.rebuild_index(category)
        return store


def representative_key(pattern: Pattern) -> tuple[int, datetime, str]:
    """Sort key placing the preferred pattern first: most frequent, oldest, smallest id."""
    return (-pattern.frequency, pattern.first_seen, pattern.id)


def representative_of(patterns: Iterable[Pattern]) -> Pattern:
    return min(patterns, key=representative_key)


# -----------------------------------------------------------------------------
# File I/O
# -----------------------------------------------------------------------------


def write_atomic(path: Path, text: str) -> None:
    """Write ``text`` to a temp file, fsync it and rename it over ``path``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_suffix(path.suffix + ".tmp")
    try:
        with temp_path.open("w", encoding="utf-8") as fh:
            fh.write(text)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(temp_path, path)
    except OSError:
        temp_path.unlink(missing_ok=True)
        raise


def load_store(path: Path) -> Result[PatternStore, StorageError]:
    """Load the store; a missing file is an empty store, a corrupt one is an error."""
    if not path.exists():
        logger.debug("No store at %s; starting empty", path)
        return Ok(PatternStore())

    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        return Err(StorageError("Failed to read store", context={"path": str(path), "error": str(exc)}))

    try:
        document = StoreDocument.model_validate(json.loads(raw))
    except json.JSONDecodeError as exc:
        return Err(
            CorruptStoreError("Store is not valid JSON", context={"path": str(path), "error": str(exc)})
        )
    except PydanticValidationError as exc:
        return Err(
            CorruptStoreError(
                "Store does not match the expected schema",
                context={"path": str(path), "errors": exc.error_count()},
            )
        )

    if document.version > STORE_VERSION:
        return Err(
            CorruptStoreError(
                "Store was written by a newer version",
                context={"path": str(path), "version": document.version},
            )
        )

    try:
        store = PatternStore.from_document(document)
    except (CorruptStoreError, StorageError) as exc:
        return Err(CorruptStoreError(exc.message, context={"path": str(path), **exc.context}))

    logger.debug("Loaded %d patterns from %s", store.count(), path)
    return Ok(store)


def save_store(
    store: PatternStore, path: Path, now: datetime, *, retries: int = 2
) -> Result[StoreDocument, StorageError]:
    """Persist the store atomically, retrying transient write failures."""
    document = store.to_document(now)
    payload = document.model_dump_json(indent=2)

    attempts = retries + 1
    last_error: OSError | None = None
    for attempt in range(1, attempts + 1):
        try:
            write_atomic(path, payload)
        except OSError as exc:
            last_error = exc
            logger.warning("Store write attempt %d/%d failed: %s", attempt, attempts, exc)
            if attempt < attempts:
                time.sleep(WRITE_RETRY_DELAY)
            continue
        store.last_updated = now
        logger.debug("Saved %d patterns to %s", document.metadata.total_patterns, path)
        return Ok(document)

    return Err(
        StorageError(
            "Failed to write store",
            context={"path": str(path), "attempts": attempts, "error": str(last_error)},
        )
    )


@contextmanager
def writer_lock(store_path: Path) -> Iterator[Path]:
    """Hold an exclusive advisory lock on ``<store>.lock`` for one maintenance run."""
    lock_path = store_path.with_suffix(store_path.suffix + ".lock")
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+") as lock_file:
        if fcntl is not None:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
        try:
            yield lock_path
        finally:
            if fcntl is not None:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)


__all__ = [
    "CategoryPartition",
    "PatternStore",
    "STORE_VERSION",
    "StoreDocument",
    "StoreMetadata",
    "load_store",
    "representative_key",
    "representative_of",
    "save_store",
    "write_atomic",
    "writer_lock",
]
