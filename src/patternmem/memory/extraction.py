"""Candidate sources.

Turning free text into candidates belongs to upstream collaborators; this
module defines their interface and ships two simple sources: a regex reader
for the "Problem-Solving Patterns" section of markdown session reports, and a
loader for JSON / JSONL candidate records.
"""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any, Protocol

from patternmem.core.console import get_logger
from patternmem.core.result import ValidationError

from .models import Category

logger = get_logger(__name__)

CandidateRecord = dict[str, Any]


class CandidateExtractor(Protocol):
    """Anything that can turn a session's text into candidate records."""

    def extract(self, text: str, session_id: str) -> list[CandidateRecord]: ...


_SECTION_PATTERN = re.compile(
    r"^##\s+\d*\.?\s*Problem-Solving Patterns(.*?)(?=^##\s+\d*\.?\s*\S|\Z)",
    re.IGNORECASE | re.DOTALL | re.MULTILINE,
)
_BLOCK_SPLIT = re.compile(r"^###\s+Pattern\s+\d+:\s*", re.IGNORECASE | re.MULTILINE)
_PROBLEM = re.compile(r"\*\*Problem\*\*:\s*(.+?)(?=\n\*\*Solution\*\*:)", re.IGNORECASE | re.DOTALL)
_SOLUTION = re.compile(r"\*\*Solution\*\*:\s*(.+?)(?=\n\*\*Learning\*\*:)", re.IGNORECASE | re.DOTALL)
_LEARNING = re.compile(
    r"\*\*Learning\*\*:\s*(.+?)(?=\n\*\*Reuse\*\*:|\n---|\n###|\Z)", re.IGNORECASE | re.DOTALL
)


class MarkdownSessionExtractor:
    """Reads ``### Pattern N: <name>`` blocks from a session report.

    Blocks missing any of Problem, Solution or Learning are skipped.
    """

    def __init__(self, category: Category = Category.APPROACH) -> None:
        self.category = category

    def extract(self, text: str, session_id: str) -> list[CandidateRecord]:
        section = _SECTION_PATTERN.search(text)
        if section is None:
            return []

        records: list[CandidateRecord] = []
        for block in _BLOCK_SPLIT.split(section.group(1))[1:]:
            name = block.split("\n", 1)[0].strip()
            problem = _PROBLEM.search(block)
            solution = _SOLUTION.search(block)
            learning = _LEARNING.search(block)
            if not (problem and solution and learning):
                logger.debug("Skipping incomplete pattern block %r in %s", name, session_id)
                continue
            records.append(
                {
                    "category": self.category.value,
                    "name": name or None,
                    "problem": problem.group(1).strip(),
                    "solution": solution.group(1).strip(),
                    "learning": learning.group(1).strip(),
                    "session_id": session_id,
                }
            )
        return records

    def extract_file(self, path: Path) -> list[CandidateRecord]:
        return self.extract(path.read_text(encoding="utf-8"), path.stem)


def _records_from_json(data: Any, path: Path) -> list[CandidateRecord]:
    if isinstance(data, dict) and "candidates" in data:
        data = data["candidates"]
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        raise ValidationError("Candidate file must hold a list of records", context={"path": str(path)})
    return [record for record in data if isinstance(record, dict)]


def load_candidates(path: Path, extractor: CandidateExtractor | None = None) -> list[CandidateRecord]:
    """Load candidate records from a ``.json``, ``.jsonl`` or markdown file.

    Raises:
        ValidationError: The file is not valid JSON / JSONL.
    """
    text = path.read_text(encoding="utf-8")
    suffix = path.suffix.lower()

    if suffix == ".jsonl":
        records: list[CandidateRecord] = []
        for line_no, line in enumerate(text.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                records.extend(_records_from_json(json.loads(line), path))
            except json.JSONDecodeError as exc:
                raise ValidationError(
                    "Invalid JSON line", context={"path": str(path), "line": line_no}
                ) from exc
        return records

    if suffix == ".json":
        try:
            return _records_from_json(json.loads(text), path)
        except json.JSONDecodeError as exc:
            raise ValidationError("Invalid JSON", context={"path": str(path)}) from exc

    return (extractor or MarkdownSessionExtractor()).extract(text, path.stem)


__all__ = [
    "CandidateExtractor",
    "CandidateRecord",
    "MarkdownSessionExtractor",
    "load_candidates",
]
