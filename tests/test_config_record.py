"""Tests for harness configuration and fill records."""

from __future__ import annotations

import json

import pytest

from formdown.core.parser import parse_form
from formdown.errors import ConfigError
from formdown.harness.config import DEFAULT_MAX_TURNS, HarnessConfig, load_harness_config
from formdown.harness.record import FillRecord, FillRecordStore, TurnRecord, sidecar_path


HINTED = """\
---
formdown:
  harness:
    max_turns: 7
    max_issues_per_turn: 3
---
{% form id="f" %}
{% field kind="string" id="a" label="A" %}{% /field %}
{% /form %}
"""


@pytest.fixture
def hinted_doc():
    return parse_form(HINTED)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class TestHarnessConfig:
    def test_defaults(self):
        config = load_harness_config()
        assert config.max_turns == DEFAULT_MAX_TURNS
        assert config.target_roles == ["*"]
        assert config.concurrent is True

    def test_front_matter_hints(self, hinted_doc):
        config = load_harness_config(doc=hinted_doc)
        assert config.max_turns == 7
        assert config.max_issues_per_turn == 3

    def test_file_beats_hints(self, hinted_doc, tmp_path):
        path = tmp_path / "formdown.yaml"
        path.write_text("max_turns: 12\ntarget_roles: [agent]\n")
        config = load_harness_config(path, doc=hinted_doc)
        assert config.max_turns == 12
        assert config.max_issues_per_turn == 3
        assert config.target_roles == ["agent"]

    def test_overrides_beat_file(self, hinted_doc, tmp_path):
        path = tmp_path / "formdown.json"
        path.write_text(json.dumps({"max_turns": 12, "concurrent": True}))
        config = load_harness_config(path, doc=hinted_doc, max_turns=2, concurrent=False)
        assert config.max_turns == 2
        assert config.concurrent is False

    def test_front_matter_shaped_file(self, tmp_path):
        path = tmp_path / "settings.yml"
        path.write_text("formdown:\n  harness:\n    max_patches_per_turn: 4\n")
        assert load_harness_config(path).max_patches_per_turn == 4

    def test_unknown_suffix_falls_back_to_yaml(self, tmp_path):
        path = tmp_path / "settings.conf"
        path.write_text("max_parallel_agents: 1\n")
        assert load_harness_config(path).max_parallel_agents == 1

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_harness_config(tmp_path / "nope.yaml")

    def test_unparseable_file(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{not json")
        with pytest.raises(ConfigError, match="Could not parse"):
            load_harness_config(path)

    def test_non_mapping_file(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- 1\n- 2\n")
        with pytest.raises(ConfigError, match="mapping"):
            load_harness_config(path)

    @pytest.mark.parametrize("content", ["max_turns: 0\n", "max_turn: 5\n", "max_turns: many\n"])
    def test_invalid_values(self, tmp_path, content):
        path = tmp_path / "config.yaml"
        path.write_text(content)
        with pytest.raises(ConfigError, match="Invalid harness configuration"):
            load_harness_config(path)

    def test_model_rejects_unknown_keys(self):
        with pytest.raises(ValueError):
            HarnessConfig(max_turn=3)


# ---------------------------------------------------------------------------
# Fill records
# ---------------------------------------------------------------------------

def _record():
    record = FillRecord(form_id="f", agent="mock", status="complete")
    record.turns.append(
        TurnRecord(turn=1, execution_id="serial:o0", patches=[{"op": "set_string"}], applied=True)
    )
    record.turns.append(
        TurnRecord(
            turn=2,
            execution_id="batch:o0:research:0",
            patches=[{"op": "set_string"}, {"op": "set_number"}],
            rejections=[{"reason": "kind_mismatch"}],
        )
    )
    return record


class TestFillRecord:
    def test_totals(self):
        record = _record()
        assert record.total_turns == 2
        assert record.total_patches == 1
        assert record.total_rejections == 1
        assert [t.turn for t in record.turns_for("serial:o0")] == [1]

    def test_summary(self):
        summary = _record().summary()
        assert summary["status"] == "complete"
        assert summary["patches_applied"] == 1

    @pytest.mark.parametrize("name", ["run.json", "run.yaml"])
    def test_save_and_load(self, tmp_path, name):
        record = _record()
        path = record.save(tmp_path / "out" / name)
        assert path.exists()
        loaded = FillRecord.load(path)
        assert loaded == record

    def test_json_is_readable(self, tmp_path):
        path = _record().save(tmp_path / "run.json")
        data = json.loads(path.read_text())
        assert data["turns"][1]["execution_id"] == "batch:o0:research:0"

    @pytest.mark.parametrize(
        "form, suffix, expected",
        [
            ("out/report.form.md", ".json", "out/report.fill.json"),
            ("report.md", ".yaml", "report.fill.yaml"),
            ("notes.txt", ".json", "notes.txt.fill.json"),
        ],
    )
    def test_sidecar_path(self, form, suffix, expected):
        assert sidecar_path(form, suffix).as_posix() == expected


class TestFillRecordStore:
    def test_round_trip(self, tmp_path):
        store = FillRecordStore(tmp_path / "records")
        record = _record()
        path = store.save(record)
        assert path.name == f"{record.record_id}.json"
        assert store.load(record.record_id) == record

    def test_missing_record(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            FillRecordStore(tmp_path).load("nope")

    def test_list_records(self, tmp_path):
        store = FillRecordStore(tmp_path, suffix=".yaml")
        first = FillRecord(form_id="a", started_at="2024-01-01T00:00:00+00:00")
        second = FillRecord(form_id="b", started_at="2024-01-02T00:00:00+00:00")
        store.save(second)
        store.save(first)
        assert [entry["form_id"] for entry in store.list_records()] == ["a", "b"]
        assert [entry["id"] for entry in store.list_records(form_id="b")] == [second.record_id]

    def test_empty_store(self, tmp_path):
        assert FillRecordStore(tmp_path / "missing").list_records() == []
