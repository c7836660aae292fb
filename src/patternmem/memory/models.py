"""Pattern memory data models.

Patterns are partitioned by a closed set of categories. Each category has a
fixed payload shape (a tagged union keyed by ``kind``), so category-specific
logic such as hashing, embedding text and rendering lives on the payload
classes instead of on loosely attached extra fields.

Every text field carries a hard length limit. Stored patterns are validated
against the limits; incoming candidates are clipped to them.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Annotated, Any, Literal, TypeAlias

from pydantic import (
    AwareDatetime,
    BaseModel,
    ConfigDict,
    Field,
    PrivateAttr,
    field_validator,
    model_validator,
)

SparseVector: TypeAlias = dict[str, float]


class Category(StrEnum):
    """Closed classification of a pattern's kind."""

    APPROACH = "approach"
    DECISION = "decision"
    RISK = "risk"
    TOOL_USAGE = "tool-usage"
    ANTI_PATTERN = "anti-pattern"
    SEQUENTIAL_DEPENDENCY = "sequential-dependency"
    PARALLEL_SUCCESS = "parallel-success"
    ACCOMPLISHMENT = "accomplishment"


NAME_MAX = 80
SHORT_MAX = 120
TEXT_MAX = 200
LABEL_MAX = 80

FIELD_LIMITS: dict[str, int] = {
    "name": NAME_MAX,
    "problem": TEXT_MAX,
    "solution": TEXT_MAX,
    "learning": TEXT_MAX,
    "what": SHORT_MAX,
    "why": TEXT_MAX,
    "alternatives": LABEL_MAX,
    "impact": SHORT_MAX,
    "description": TEXT_MAX,
    "mitigation": TEXT_MAX,
    "tool": LABEL_MAX,
    "usage": TEXT_MAX,
    "before": SHORT_MAX,
    "after": SHORT_MAX,
    "reasoning": TEXT_MAX,
    "tasks": LABEL_MAX,
}

MAX_ALTERNATIVES = 3
MAX_PARALLEL_TASKS = 10


def clip_text(value: str, limit: int) -> str:
    """Collapse whitespace and cut ``value`` to at most ``limit`` characters."""
    collapsed = " ".join(value.split())
    if len(collapsed) <= limit:
        return collapsed
    return collapsed[: limit - 3].rstrip() + "..."


def _join(*parts: str) -> str:
    return " ".join(part for part in parts if part)


# -----------------------------------------------------------------------------
# Category payloads
# -----------------------------------------------------------------------------


class PatternPayload(BaseModel):
    """Base of the per-category payload shapes."""

    model_config = ConfigDict(frozen=True, extra="forbid", str_strip_whitespace=True)

    def key_text(self) -> str:
        """Text whose normalized terms identify the pattern exactly."""
        raise NotImplementedError

    def full_text(self) -> str:
        """All free text of the payload, used for embeddings and search."""
        raise NotImplementedError

    def default_name(self) -> str:
        raise NotImplementedError

    def render_lines(self) -> list[tuple[str, str]]:
        """Ordered (label, value) pairs for human-readable export."""
        raise NotImplementedError


class LessonPayload(PatternPayload):
    """Problem / solution / learning triple (approaches, anti-patterns, accomplishments)."""

    kind: Literal["lesson"] = "lesson"
    problem: str = Field(..., min_length=1, max_length=FIELD_LIMITS["problem"])
    solution: str = Field(..., min_length=1, max_length=FIELD_LIMITS["solution"])
    learning: str = Field(..., min_length=1, max_length=FIELD_LIMITS["learning"])

    def key_text(self) -> str:
        return _join(self.problem, self.solution, self.learning)

    def full_text(self) -> str:
        return self.key_text()

    def default_name(self) -> str:
        return self.learning

    def render_lines(self) -> list[tuple[str, str]]:
        return [("Problem", self.problem), ("Solution", self.solution), ("Learning", self.learning)]


class DecisionPayload(PatternPayload):
    """A decision with its rationale."""

    kind: Literal["decision"] = "decision"
    what: str = Field(..., min_length=1, max_length=FIELD_LIMITS["what"])
    why: str = Field(..., min_length=1, max_length=FIELD_LIMITS["why"])
    alternatives: list[Annotated[str, Field(max_length=FIELD_LIMITS["alternatives"])]] = Field(
        default_factory=list, max_length=MAX_ALTERNATIVES
    )
    impact: str = Field(default="", max_length=FIELD_LIMITS["impact"])

    def key_text(self) -> str:
        return _join(self.what, self.why)

    def full_text(self) -> str:
        return _join(self.what, self.why, " ".join(self.alternatives), self.impact)

    def default_name(self) -> str:
        return self.what

    def render_lines(self) -> list[tuple[str, str]]:
        lines = [("Decision", self.what), ("Why", self.why)]
        if self.alternatives:
            lines.append(("Alternatives", ", ".join(self.alternatives)))
        if self.impact:
            lines.append(("Impact", self.impact))
        return lines


class RiskPayload(PatternPayload):
    """A risk with severity and mitigation state."""

    kind: Literal["risk"] = "risk"
    description: str = Field(..., min_length=1, max_length=FIELD_LIMITS["description"])
    severity: Literal["P0", "P1", "P2", "P3"] = "P2"
    status: Literal["open", "mitigated", "resolved", "accepted"] = "open"
    mitigation: str = Field(default="", max_length=FIELD_LIMITS["mitigation"])

    def key_text(self) -> str:
        return self.description

    def full_text(self) -> str:
        return _join(self.description, self.mitigation)

    def default_name(self) -> str:
        return self.description

    def render_lines(self) -> list[tuple[str, str]]:
        lines = [("Risk", self.description), ("Severity", f"{self.severity} ({self.status})")]
        if self.mitigation:
            lines.append(("Mitigation", self.mitigation))
        return lines


class ToolUsagePayload(PatternPayload):
    """How a tool was used and how well it worked."""

    kind: Literal["tool-usage"] = "tool-usage"
    tool: str = Field(..., min_length=1, max_length=FIELD_LIMITS["tool"])
    usage: str = Field(..., min_length=1, max_length=FIELD_LIMITS["usage"])
    effectiveness: float = Field(default=1.0, ge=0.0, le=1.0)

    def key_text(self) -> str:
        return _join(self.tool, self.usage)

    def full_text(self) -> str:
        return self.key_text()

    def default_name(self) -> str:
        return f"{self.tool}: {self.usage}"

    def render_lines(self) -> list[tuple[str, str]]:
        return [
            ("Tool", self.tool),
            ("Usage", self.usage),
            ("Effectiveness", f"{self.effectiveness:.2f}"),
        ]


class DependencyPayload(PatternPayload):
    """One step that has to happen before another."""

    kind: Literal["dependency"] = "dependency"
    before: str = Field(..., min_length=1, max_length=FIELD_LIMITS["before"])
    after: str = Field(..., min_length=1, max_length=FIELD_LIMITS["after"])
    reasoning: str = Field(default="", max_length=FIELD_LIMITS["reasoning"])

    def key_text(self) -> str:
        return _join(self.before, self.after)

    def full_text(self) -> str:
        return _join(self.before, self.after, self.reasoning)

    def default_name(self) -> str:
        return f"{self.before} -> {self.after}"

    def render_lines(self) -> list[tuple[str, str]]:
        lines = [("Before", self.before), ("After", self.after)]
        if self.reasoning:
            lines.append(("Reasoning", self.reasoning))
        return lines


class ParallelPayload(PatternPayload):
    """Tasks that ran successfully in parallel."""

    kind: Literal["parallel"] = "parallel"
    tasks: list[Annotated[str, Field(min_length=1, max_length=FIELD_LIMITS["tasks"])]] = Field(
        ..., min_length=1, max_length=MAX_PARALLEL_TASKS
    )
    speedup: float = Field(default=1.0, ge=0.0)

    def key_text(self) -> str:
        return " ".join(self.tasks)

    def full_text(self) -> str:
        return self.key_text()

    def default_name(self) -> str:
        return " + ".join(self.tasks)

    def render_lines(self) -> list[tuple[str, str]]:
        return [("Tasks", ", ".join(self.tasks)), ("Speedup", f"{self.speedup:.1f}x")]


Payload = Annotated[
    LessonPayload
    | DecisionPayload
    | RiskPayload
    | ToolUsagePayload
    | DependencyPayload
    | ParallelPayload,
    Field(discriminator="kind"),
]

PAYLOAD_TYPES: dict[Category, type[PatternPayload]] = {
    Category.APPROACH: LessonPayload,
    Category.ANTI_PATTERN: LessonPayload,
    Category.ACCOMPLISHMENT: LessonPayload,
    Category.DECISION: DecisionPayload,
    Category.RISK: RiskPayload,
    Category.TOOL_USAGE: ToolUsagePayload,
    Category.SEQUENTIAL_DEPENDENCY: DependencyPayload,
    Category.PARALLEL_SUCCESS: ParallelPayload,
}


def build_payload(category: Category, fields: dict[str, Any]) -> PatternPayload:
    """Build the category's payload from loose candidate fields.

    Text values are clipped to their limits first; missing or empty required
    fields still fail validation.
    """
    payload_cls = PAYLOAD_TYPES[category]
    data: dict[str, Any] = {}
    for key in payload_cls.model_fields:
        if key == "kind" or key not in fields:
            continue
        value = fields[key]
        limit = FIELD_LIMITS.get(key)
        if limit is not None:
            if isinstance(value, str):
                value = clip_text(value, limit)
            elif isinstance(value, list):
                value = [clip_text(str(item), limit) for item in value]
        data[key] = value
    if "alternatives" in data:
        data["alternatives"] = data["alternatives"][:MAX_ALTERNATIVES]
    if "tasks" in data:
        data["tasks"] = data["tasks"][:MAX_PARALLEL_TASKS]
    return payload_cls.model_validate(data)


# -----------------------------------------------------------------------------
# Pattern and Cluster
# -----------------------------------------------------------------------------


class Pattern(BaseModel):
    """A single deduplicated, scored observation in the store."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(..., description="<category>:<hash prefix>, stable across runs")
    category: Category
    name: str = Field(..., min_length=1, max_length=NAME_MAX)
    payload: Payload
    frequency: int = Field(default=1, ge=1)
    success_rate: float = Field(default=1.0, ge=0.0, le=1.0)
    outcome_count: int = Field(
        default=0, ge=0, description="Observations that reported success or failure."
    )
    first_seen: AwareDatetime
    last_seen: AwareDatetime
    examples: list[str] = Field(default_factory=list, description="Recent session ids, oldest first.")
    cluster_id: str | None = None
    decay_score: float = 0.0
    semantic_hash: str
    superseded_by: str | None = None

    # Memoized embedding and the vocabulary signature it was computed against.
    _embedding: SparseVector | None = PrivateAttr(default=None)
    _embedding_signature: str | None = PrivateAttr(default=None)

    @model_validator(mode="after")
    def _payload_matches_category(self) -> Pattern:
        expected = PAYLOAD_TYPES[self.category]
        if not isinstance(self.payload, expected):
            raise ValueError(
                f"category {self.category.value!r} requires a {expected.__name__} payload"
            )
        return self

    def cached_embedding(self, signature: str) -> SparseVector | None:
        if self._embedding is not None and self._embedding_signature == signature:
            return self._embedding
        return None

    def remember_embedding(self, signature: str, vector: SparseVector) -> None:
        self._embedding = vector
        self._embedding_signature = signature

    def forget_embedding(self) -> None:
        self._embedding = None
        self._embedding_signature = None

    def add_example(self, session_id: str, limit: int) -> None:
        """Append a session id if new, dropping the oldest beyond ``limit``."""
        if not session_id or session_id in self.examples:
            return
        self.examples.append(session_id)
        if len(self.examples) > limit:
            del self.examples[: len(self.examples) - limit]


class Cluster(BaseModel):
    """Patterns of one category judged similar enough to aggregate."""

    model_config = ConfigDict(extra="forbid")

    id: str
    category: Category
    representative_id: str
    pattern_ids: list[str] = Field(..., min_length=1)
    centroid: SparseVector = Field(default_factory=dict)
    coherence: float = Field(..., ge=0.0, le=1.0)
    total_frequency: int = Field(..., ge=0)
    avg_success_rate: float = Field(..., ge=0.0, le=1.0)
    created: AwareDatetime
    updated: AwareDatetime


# -----------------------------------------------------------------------------
# Incoming candidates
# -----------------------------------------------------------------------------


class Candidate(BaseModel):
    """A raw pattern observation as produced by an upstream extractor.

    Category-specific content fields (``problem``, ``what``, ``tool`` ...) are
    accepted as extra fields and turned into a payload by ``to_payload``.
    """

    model_config = ConfigDict(extra="allow", str_strip_whitespace=True)

    category: Category
    session_id: str = ""
    name: str | None = None
    observed_at: datetime | None = None
    succeeded: bool | None = None

    @field_validator("observed_at", mode="after")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @property
    def content(self) -> dict[str, Any]:
        return dict(self.model_extra or {})

    def to_payload(self) -> PatternPayload:
        return build_payload(self.category, self.content)


__all__ = [
    "Candidate",
    "Category",
    "Cluster",
    "DecisionPayload",
    "DependencyPayload",
    "FIELD_LIMITS",
    "LessonPayload",
    "NAME_MAX",
    "PAYLOAD_TYPES",
    "ParallelPayload",
    "PatternPayload",
    "Pattern",
    "Payload",
    "RiskPayload",
    "SparseVector",
    "ToolUsagePayload",
    "build_payload",
    "clip_text",
]
