"""Result types and the patternmem exception hierarchy.

Storage and session I/O return ``Ok``/``Err`` so callers decide whether a
failure aborts the run (a corrupt store) or is only logged (an unreadable
session artifact). The public API unwraps them and raises.

Usage:
    from patternmem.core.result import Ok, Err, Result, StorageError

    def load() -> Result[StoreDocument, StorageError]:
        if unreadable:
            return Err(CorruptStoreError("Store is not valid JSON"))
        return Ok(document)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar

T = TypeVar("T")
E = TypeVar("E", bound=Exception)


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    """Successful outcome carrying ``value``."""

    value: T

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        return self.value

    def unwrap_or(self, default: T) -> T:
        return self.value


@dataclass(frozen=True, slots=True)
class Err(Generic[E]):
    """Failed outcome carrying the exception in ``error``."""

    error: E

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self) -> Any:
        """Raise ``error``."""
        raise self.error

    def unwrap_or(self, default: T) -> T:
        return default


Result = Ok[T] | Err[E]


# ---------------------------------------------------------------------------
# Engine error hierarchy
# ---------------------------------------------------------------------------


class PatternMemError(Exception):
    """Base exception for all patternmem errors.

    Carries an optional context mapping that is appended to the message,
    so log lines show which pattern, category or file was involved.
    """

    def __init__(self, message: str, *, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} [{ctx_str}]"
        return self.message


class ConfigurationError(PatternMemError):
    """A config file could not be parsed or holds invalid values."""


class ValidationError(PatternMemError):
    """Raised when a pattern candidate is malformed.

    Examples:
    - Unknown category
    - Empty required content field
    - Payload shape that does not match the category

    The aggregator skips such candidates and reports them; it never aborts
    the batch for one.
    """

    pass


class VocabularyError(PatternMemError):
    """Raised when a vector is requested against a missing or stale vocabulary.

    A programming error: call ``Embedder.update_vocabulary`` after the
    category's patterns change.
    """

    pass


class StorageError(PatternMemError):
    """Raised when the pattern store cannot be written or read.

    Examples:
    - Atomic rename failed after all retries
    - Permission denied on the store directory
    """

    pass


class CorruptStoreError(StorageError):
    """Raised when a store file exists but cannot be decoded.

    A corrupt store is never silently reset; the file is left in place.
    """

    pass


# ---------------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------------


def try_result(fn: Callable[[], T], error_type: type[E] = PatternMemError) -> Result[T, E]:
    """Call ``fn`` and capture ``error_type`` as an ``Err``; other exceptions propagate."""
    try:
        return Ok(fn())
    except error_type as exc:
        return Err(exc)


__all__ = [
    "Ok",
    "Err",
    "Result",
    "PatternMemError",
    "ConfigurationError",
    "ValidationError",
    "VocabularyError",
    "StorageError",
    "CorruptStoreError",
    "try_result",
]
