from __future__ import annotations

import os
import sys
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
from rich.console import Console
from typer.testing import CliRunner

ROOT = Path(__file__).resolve().parent.parent
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from patternmem.core.config import EngineConfig, StorageConfig  # noqa: E402
from patternmem.memory.hashing import pattern_id, semantic_hash  # noqa: E402
from patternmem.memory.models import Category, LessonPayload, Pattern  # noqa: E402

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture(autouse=True)
def isolate_config(tmp_path: Path, monkeypatch: Any) -> Path:
    """Point config and home to a temp path so tests don't touch user state."""
    for key in list(os.environ):
        if key.startswith("PATTERNMEM_"):
            monkeypatch.delenv(key, raising=False)
    cfg_path = tmp_path / "config.toml"
    monkeypatch.setenv("PATTERNMEM_CONFIG", str(cfg_path))
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    return cfg_path


@pytest.fixture(autouse=True)
def capture_console(monkeypatch: Any) -> Console:
    """Use an in-memory Rich console during tests."""
    test_console = Console(record=True, width=200)
    import patternmem.core.console as core_console
    import patternmem.main as pm_main

    monkeypatch.setattr(core_console, "console", test_console)
    monkeypatch.setattr(pm_main, "console", test_console)
    return test_console


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def store_dir(tmp_path: Path) -> Path:
    return tmp_path / "store"


@pytest.fixture
def engine_config(store_dir: Path) -> EngineConfig:
    return EngineConfig(storage=StorageConfig(store_dir=store_dir))


@pytest.fixture
def make_pattern() -> Callable[..., Pattern]:
    """Factory for approach patterns with controllable statistics."""

    def _make(
        problem: str = "flaky integration tests",
        solution: str = "pin the database container version",
        learning: str = "reproducible fixtures beat retries",
        *,
        category: Category = Category.APPROACH,
        frequency: int = 1,
        success_rate: float = 1.0,
        age_days: float = 30.0,
        first_seen_days: float | None = None,
        name: str | None = None,
        taken: set[str] | None = None,
    ) -> Pattern:
        payload = LessonPayload(problem=problem, solution=solution, learning=learning)
        hash_value = semantic_hash(payload)
        last_seen = NOW - timedelta(days=age_days)
        first_seen = NOW - timedelta(days=first_seen_days if first_seen_days is not None else age_days)
        return Pattern(
            id=pattern_id(category, hash_value, taken or ()),
            category=category,
            name=name or learning[:80],
            payload=payload,
            frequency=frequency,
            success_rate=success_rate,
            first_seen=first_seen,
            last_seen=last_seen,
            semantic_hash=hash_value,
        )

    return _make


@pytest.fixture
def make_candidate() -> Callable[..., dict[str, Any]]:
    return lesson_candidate


def lesson_candidate(
    problem: str,
    solution: str,
    learning: str,
    *,
    session_id: str = "session-1",
    category: str = "approach",
    **extra: Any,
) -> dict[str, Any]:
    """Plain candidate record as an upstream extractor would produce it."""
    return {
        "category": category,
        "problem": problem,
        "solution": solution,
        "learning": learning,
        "session_id": session_id,
        **extra,
    }
