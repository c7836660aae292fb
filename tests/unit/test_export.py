"""Unit tests for markdown and JSON exports."""

from __future__ import annotations

import json

from patternmem.core.config import EngineConfig, ExportConfig
from patternmem.memory.export import export_json, ranked, render_top_n, write_markdown
from patternmem.memory.hashing import pattern_id, semantic_hash
from patternmem.memory.models import Category, Pattern, RiskPayload
from patternmem.memory.store import PatternStore


def _scored_store(make_pattern, scores: list[float]) -> PatternStore:
    store = PatternStore()
    for i, value in enumerate(scores):
        pattern = make_pattern(f"problem{i}x", f"solution{i}x", f"learning{i}x")
        pattern.decay_score = value
        store.insert(pattern)
    return store


class TestRanked:
    def test_descending_by_score(self, make_pattern) -> None:
        store = _scored_store(make_pattern, [0.5, 2.0, 1.0])
        assert [p.decay_score for p in ranked(store.patterns(Category.APPROACH))] == [2.0, 1.0, 0.5]

    def test_ties_break_by_id(self, make_pattern) -> None:
        store = _scored_store(make_pattern, [1.0, 1.0, 1.0])
        ids = [p.id for p in ranked(store.patterns(Category.APPROACH))]
        assert ids == sorted(ids)

    def test_superseded_hidden_by_default(self, make_pattern) -> None:
        store = _scored_store(make_pattern, [1.0, 2.0])
        first, second = store.patterns(Category.APPROACH)
        first.superseded_by = second.id

        assert [p.id for p in ranked(store.patterns(Category.APPROACH))] == [second.id]
        assert len(ranked(store.patterns(Category.APPROACH), include_superseded=True)) == 2


class TestRenderTopN:
    """Tests for the markdown summary."""

    def test_header_and_sections(self, make_pattern, now) -> None:
        store = _scored_store(make_pattern, [1.0, 2.0])
        text = render_top_n(store, EngineConfig(), now)

        assert text.startswith("# Pattern Library\n")
        assert f"**Generated**: {now.isoformat()}" in text
        assert "**Total patterns**: 2" in text
        assert "## Approach" in text
        assert "## Risk" not in text
        assert "### 1. learning1x [1x]" in text
        assert "### 2. learning0x [1x]" in text
        assert "**Problem**: problem1x" in text
        assert "Score=2.00" in text

    def test_top_n_limits_each_category(self, make_pattern, now) -> None:
        store = _scored_store(make_pattern, [1.0, 2.0, 3.0])
        config = EngineConfig(export=ExportConfig(markdown_top_n=2))

        text = render_top_n(store, config, now)

        assert "### 2." in text
        assert "### 3." not in text

    def test_sessions_show_most_recent(self, make_pattern, now) -> None:
        store = PatternStore()
        pattern = make_pattern()
        pattern.examples = ["s1", "s2", "s3", "s4"]
        pattern.cluster_id = "cluster-abc"
        store.insert(pattern)

        text = render_top_n(store, EngineConfig(), now)

        assert "**Sessions**: s2, s3, s4 ..." in text
        assert "**Cluster**: cluster-abc" in text

    def test_each_pattern_shows_its_identity(self, make_pattern, now) -> None:
        store = PatternStore()
        pattern = make_pattern()
        store.insert(pattern)

        text = render_top_n(store, EngineConfig(), now)

        assert f"**Id**: `{pattern.id}` (approach)" in text

    def test_category_specific_fields(self, now) -> None:
        payload = RiskPayload(description="token leaked in logs", severity="P1", mitigation="redact")
        hash_value = semantic_hash(payload)
        store = PatternStore()
        store.insert(
            Pattern(
                id=pattern_id(Category.RISK, hash_value, ()),
                category=Category.RISK,
                name=payload.default_name(),
                payload=payload,
                first_seen=now,
                last_seen=now,
                semantic_hash=hash_value,
            )
        )

        text = render_top_n(store, EngineConfig(), now)

        assert "## Risk" in text
        assert "**Risk**: token leaked in logs" in text
        assert "**Severity**: P1 (open)" in text

    def test_empty_store(self, now) -> None:
        text = render_top_n(PatternStore(), EngineConfig(), now)
        assert "**Total patterns**: 0" in text
        assert "##" not in text.replace("# Pattern Library", "")

    def test_write_markdown(self, engine_config, make_pattern, now) -> None:
        store = _scored_store(make_pattern, [1.0])
        path = write_markdown(store, engine_config, now)

        assert path == engine_config.storage.markdown_path
        assert path.read_text(encoding="utf-8") == render_top_n(store, engine_config, now)


class TestExportJson:
    def test_all_categories(self, make_pattern, now) -> None:
        store = _scored_store(make_pattern, [1.0, 2.0])
        document = json.loads(export_json(store, now))

        assert document["total"] == 2
        assert document["exported_at"] == now.isoformat()
        assert [p["decay_score"] for p in document["patterns"]] == [2.0, 1.0]
        assert document["patterns"][0]["payload"]["kind"] == "lesson"

    def test_single_category(self, make_pattern, now) -> None:
        store = _scored_store(make_pattern, [1.0])
        document = json.loads(export_json(store, now, Category.RISK))
        assert document == {"exported_at": now.isoformat(), "total": 0, "patterns": []}
