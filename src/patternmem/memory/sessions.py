"""Session artifacts: dependency validation and housekeeping.

Session artifacts are short-lived JSON records owned by the sessions that
write them (``<sessions_dir>/<session_id>.json``). The engine only reads them
to check whether a stage's prerequisites appear to have happened, and prunes
old artifacts down to a configured count. Neither operation ever fails a
maintenance run.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from patternmem.core.config import EngineConfig
from patternmem.core.console import get_logger
from patternmem.core.result import Err, Ok, Result, StorageError, ValidationError, try_result

logger = get_logger(__name__)

_SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


# -----------------------------------------------------------------------------
# Artifact models
# -----------------------------------------------------------------------------


class StageDecision(BaseModel):
    model_config = ConfigDict(extra="ignore")

    what: str
    why: str = ""


class StageRecord(BaseModel):
    """What one stage of a session accomplished and what it handed over."""

    model_config = ConfigDict(extra="ignore")

    accomplishment: str = ""
    handoff_context: str = ""
    ready_for: str = ""
    decisions: list[StageDecision] = Field(default_factory=list)
    prerequisites: list[str] = Field(
        default_factory=list, description="Steps that must have happened before this stage."
    )


class SessionArtifact(BaseModel):
    model_config = ConfigDict(extra="ignore")

    session_id: str
    created: AwareDatetime | None = None
    stages: dict[str, StageRecord] = Field(default_factory=dict)


def session_path(config: EngineConfig, session_id: str) -> Path:
    if not _SESSION_ID_PATTERN.match(session_id):
        raise ValidationError("Invalid session id", context={"session_id": session_id})
    sessions_dir = config.storage.sessions_dir
    assert sessions_dir is not None
    return sessions_dir / f"{session_id}.json"


def load_session(path: Path) -> Result[SessionArtifact | None, StorageError]:
    """Read a session artifact; a missing file is ``Ok(None)``."""
    if not path.exists():
        return Ok(None)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return Ok(SessionArtifact.model_validate(data))
    except OSError as exc:
        return Err(
            StorageError(
                "Failed to read session artifact", context={"path": str(path), "error": str(exc)}
            )
        )
    except (json.JSONDecodeError, PydanticValidationError) as exc:
        return Err(
            StorageError(
                "Session artifact is malformed", context={"path": str(path), "error": str(exc)}
            )
        )


# -----------------------------------------------------------------------------
# Dependency validation
# -----------------------------------------------------------------------------

DependencyChecker = Callable[[str, Mapping[str, StageRecord]], bool]


def default_dependency_checker(dependency: str, stages: Mapping[str, StageRecord]) -> bool:
    """True when any stage mentions the dependency (case-insensitive).

    Looks in accomplishments, handoff context, ready-for notes and the
    ``what`` of decisions.
    """
    needle = dependency.lower()
    for stage in stages.values():
        haystacks = [stage.accomplishment, stage.handoff_context, stage.ready_for]
        haystacks.extend(decision.what for decision in stage.decisions)
        if any(needle in text.lower() for text in haystacks):
            return True
    return False


@dataclass
class DependencyValidationResult:
    session_id: str
    stage: str
    satisfied_deps: list[str] = field(default_factory=list)
    unsatisfied: list[str] = field(default_factory=list)

    @property
    def satisfied(self) -> bool:
        return not self.unsatisfied


def check_dependencies(
    artifact: SessionArtifact | None,
    session_id: str,
    target_stage: str,
    checker: DependencyChecker = default_dependency_checker,
) -> DependencyValidationResult:
    result = DependencyValidationResult(session_id=session_id, stage=target_stage)
    if artifact is None or target_stage not in artifact.stages:
        return result
    for dependency in artifact.stages[target_stage].prerequisites:
        if checker(dependency, artifact.stages):
            result.satisfied_deps.append(dependency)
        else:
            result.unsatisfied.append(dependency)
    return result


def validate_dependencies(
    session_id: str,
    target_stage: str,
    config: EngineConfig,
    checker: DependencyChecker = default_dependency_checker,
) -> DependencyValidationResult:
    """Check whether the target stage's prerequisites appear in the session.

    A session without an artifact, or a stage without prerequisites, is
    trivially satisfied. An unreadable artifact is logged and treated as
    missing.
    """
    loaded = load_session(session_path(config, session_id))
    if isinstance(loaded, Err):
        logger.warning("Ignoring session artifact: %s", loaded.error)
    return check_dependencies(loaded.unwrap_or(None), session_id, target_stage, checker)


def all_dependencies(artifact: SessionArtifact) -> dict[str, list[str]]:
    return {name: list(stage.prerequisites) for name, stage in artifact.stages.items()}


def format_validation_result(result: DependencyValidationResult) -> str:
    lines = [f"Dependency validation: {result.stage}", f"Session: {result.session_id}", ""]
    if result.satisfied:
        lines.append("All dependencies satisfied")
        if result.satisfied_deps:
            lines.extend(["", "Satisfied:"])
            lines.extend(f"  + {dep}" for dep in result.satisfied_deps)
    else:
        lines.append(f"{len(result.unsatisfied)} unsatisfied dependencies")
        lines.extend(["", "Unsatisfied:"])
        lines.extend(f"  - {dep}" for dep in result.unsatisfied)
        if result.satisfied_deps:
            lines.extend(["", "Satisfied:"])
            lines.extend(f"  + {dep}" for dep in result.satisfied_deps)
    return "\n".join(lines)


# -----------------------------------------------------------------------------
# Housekeeping
# -----------------------------------------------------------------------------


def _mtime(path: Path) -> float:
    try:
        return path.stat().st_mtime
    except OSError:
        return 0.0


def list_session_files(config: EngineConfig) -> list[Path]:
    """Session artifact files, oldest modification time first."""
    sessions_dir = config.storage.sessions_dir
    if sessions_dir is None or not sessions_dir.is_dir():
        return []
    files = [p for p in sessions_dir.glob(config.storage.session_glob) if p.is_file()]
    return sorted(files, key=lambda p: (_mtime(p), p.name))


def prune_session_artifacts(config: EngineConfig) -> list[Path]:
    """Delete all but the newest ``max_session_files`` artifacts.

    Failures are logged and skipped; this never raises for I/O problems.
    """
    keep = config.capacity.max_session_files
    try:
        files = list_session_files(config)
    except OSError as exc:
        logger.warning("Could not list session artifacts: %s", exc)
        return []

    excess = len(files) - keep
    if excess <= 0:
        return []

    deleted: list[Path] = []
    for path in files[:excess]:
        outcome = try_result(path.unlink, OSError)
        if outcome.is_err():
            logger.warning("Could not delete session artifact %s: %s", path, outcome.error)
            continue
        deleted.append(path)
        logger.debug("Deleted session artifact %s", path.name)
    return deleted


__all__ = [
    "DependencyChecker",
    "DependencyValidationResult",
    "SessionArtifact",
    "StageDecision",
    "StageRecord",
    "all_dependencies",
    "check_dependencies",
    "default_dependency_checker",
    "format_validation_result",
    "list_session_files",
    "load_session",
    "prune_session_artifacts",
    "session_path",
    "validate_dependencies",
]
