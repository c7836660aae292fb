"""Unit tests for session artifact dependency checks and pruning."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

import pytest

from patternmem.core.config import CapacityConfig, EngineConfig, StorageConfig
from patternmem.core.result import Err, Ok, ValidationError
from patternmem.memory.sessions import (
    SessionArtifact,
    all_dependencies,
    check_dependencies,
    format_validation_result,
    list_session_files,
    load_session,
    prune_session_artifacts,
    session_path,
    validate_dependencies,
)

ARTIFACT = {
    "session_id": "session-1",
    "stages": {
        "planning": {
            "accomplishment": "Drafted the Schema Migration plan",
            "decisions": [{"what": "Use feature flags", "why": "safe rollout"}],
        },
        "implementation": {
            "handoff_context": "Ready once review is done",
            "prerequisites": ["schema migration", "feature flags", "load test"],
        },
    },
}


def _write_artifact(config: EngineConfig, data: dict, session_id: str = "session-1") -> Path:
    path = session_path(config, session_id)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


class TestValidateDependencies:
    """Tests for prerequisite checks against session artifacts."""

    def test_reports_satisfied_and_unsatisfied(self, engine_config) -> None:
        _write_artifact(engine_config, ARTIFACT)

        result = validate_dependencies("session-1", "implementation", engine_config)

        assert result.satisfied_deps == ["schema migration", "feature flags"]
        assert result.unsatisfied == ["load test"]
        assert not result.satisfied

    def test_missing_artifact_is_satisfied(self, engine_config) -> None:
        result = validate_dependencies("nobody", "implementation", engine_config)
        assert result.satisfied
        assert result.satisfied_deps == []

    def test_stage_without_prerequisites(self, engine_config) -> None:
        _write_artifact(engine_config, ARTIFACT)
        assert validate_dependencies("session-1", "planning", engine_config).satisfied
        assert validate_dependencies("session-1", "unknown-stage", engine_config).satisfied

    def test_malformed_artifact_is_logged_and_ignored(self, engine_config, caplog) -> None:
        path = session_path(engine_config, "session-1")
        path.parent.mkdir(parents=True)
        path.write_text("[broken", encoding="utf-8")

        with caplog.at_level(logging.WARNING):
            result = validate_dependencies("session-1", "implementation", engine_config)

        assert result.satisfied
        assert "Ignoring session artifact" in caplog.text

    def test_custom_checker(self, engine_config) -> None:
        _write_artifact(engine_config, ARTIFACT)
        result = validate_dependencies(
            "session-1", "implementation", engine_config, checker=lambda dep, stages: True
        )
        assert result.unsatisfied == []
        assert len(result.satisfied_deps) == 3

    def test_invalid_session_id(self, engine_config) -> None:
        with pytest.raises(ValidationError):
            validate_dependencies("../escape", "implementation", engine_config)


class TestArtifactHelpers:
    def test_load_session_missing(self, tmp_path: Path) -> None:
        assert load_session(tmp_path / "absent.json") == Ok(None)

    def test_load_session_malformed(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.json"
        path.write_text(json.dumps({"stages": {}}), encoding="utf-8")
        assert isinstance(load_session(path), Err)

    def test_all_dependencies(self) -> None:
        artifact = SessionArtifact.model_validate(ARTIFACT)
        assert all_dependencies(artifact) == {
            "planning": [],
            "implementation": ["schema migration", "feature flags", "load test"],
        }

    def test_check_dependencies_without_artifact(self) -> None:
        result = check_dependencies(None, "s", "stage")
        assert result.satisfied

    def test_format_validation_result(self, engine_config) -> None:
        _write_artifact(engine_config, ARTIFACT)
        text = format_validation_result(
            validate_dependencies("session-1", "implementation", engine_config)
        )
        assert "1 unsatisfied dependencies" in text
        assert "  - load test" in text
        assert "  + schema migration" in text


class TestPruneSessionArtifacts:
    """Tests for session artifact cleanup."""

    def _config(self, tmp_path: Path, keep: int) -> EngineConfig:
        return EngineConfig(
            storage=StorageConfig(store_dir=tmp_path / "store"),
            capacity=CapacityConfig(max_session_files=keep),
        )

    def _make_files(self, config: EngineConfig, count: int) -> list[Path]:
        sessions_dir = config.storage.sessions_dir
        sessions_dir.mkdir(parents=True)
        paths = []
        for i in range(count):
            path = sessions_dir / f"session-{i}.json"
            path.write_text("{}", encoding="utf-8")
            os.utime(path, (1_700_000_000 + i, 1_700_000_000 + i))
            paths.append(path)
        return paths

    def test_keeps_newest(self, tmp_path: Path) -> None:
        config = self._config(tmp_path, keep=2)
        paths = self._make_files(config, 5)

        deleted = prune_session_artifacts(config)

        assert deleted == paths[:3]
        assert list_session_files(config) == paths[3:]

    def test_nothing_to_prune(self, tmp_path: Path) -> None:
        config = self._config(tmp_path, keep=10)
        self._make_files(config, 3)
        assert prune_session_artifacts(config) == []

    def test_missing_directory(self, tmp_path: Path) -> None:
        assert prune_session_artifacts(self._config(tmp_path, keep=0)) == []

    def test_only_matching_files_are_considered(self, tmp_path: Path) -> None:
        config = self._config(tmp_path, keep=0)
        self._make_files(config, 1)
        notes = config.storage.sessions_dir / "notes.txt"
        notes.write_text("keep me", encoding="utf-8")

        prune_session_artifacts(config)

        assert notes.exists()

    def test_delete_failure_is_skipped(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch, caplog
    ) -> None:
        config = self._config(tmp_path, keep=0)
        first, second = self._make_files(config, 2)
        real_unlink = Path.unlink

        def unlink(self: Path, missing_ok: bool = False) -> None:
            if self == first:
                raise PermissionError("locked")
            real_unlink(self, missing_ok=missing_ok)

        monkeypatch.setattr(Path, "unlink", unlink)
        with caplog.at_level(logging.WARNING):
            deleted = prune_session_artifacts(config)

        assert deleted == [second]
        assert first.exists()
        assert "Could not delete" in caplog.text
