"""Tests for the formdown command line."""

from __future__ import annotations

import json

import pytest
import yaml
from click.testing import CliRunner

from formdown.cli import main
from formdown.core.parser import parse_form


FORM = """\
{% form id="order" title="Order" %}

{% field kind="string" id="name" label="Name" required=true %}{% /field %}

{% field kind="single_select" id="size" label="Size" required=true %}
- [ ] Small {% #small %}
- [ ] Large {% #large %}
{% /field %}

{% /form %}
"""

FILLED = FORM.replace(
    '{% field kind="string" id="name" label="Name" required=true %}{% /field %}',
    '{% field kind="string" id="name" label="Name" required=true %}\n```value\nWidget\n```\n{% /field %}',
).replace("- [ ] Large", "- [x] Large")

BROKEN = '{% form id="x" %}\n{% field kind="string" id="a" label="A" %}\n'

MALFORMED = """\
{% form id="m" %}
{% field kind="url" id="site" label="Site" %}
```value
not a url
```
{% /field %}
{% /form %}
"""


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def files(tmp_path):
    paths = {}
    for name, text in (("order.form.md", FORM), ("done.form.md", FILLED), ("broken.md", BROKEN), ("bad.md", MALFORMED)):
        path = tmp_path / name
        path.write_text(text, encoding="utf-8")
        paths[name] = path
    return paths


class TestInspect:
    def test_json(self, runner, files):
        result = runner.invoke(main, ["inspect", str(files["order.form.md"]), "--json"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["is_complete"] is False
        assert [issue["ref"] for issue in data["issues"]] == ["name", "size"]

    def test_tree(self, runner, files):
        result = runner.invoke(main, ["inspect", str(files["done.form.md"])])
        assert result.exit_code == 0
        assert "Order" in result.output
        assert "No issues" in result.output

    def test_parse_error_exit_code(self, runner, files):
        result = runner.invoke(main, ["inspect", str(files["broken.md"])])
        assert result.exit_code == 2


class TestValidate:
    def test_valid(self, runner, files):
        result = runner.invoke(main, ["validate", str(files["order.form.md"]), str(files["done.form.md"])])
        assert result.exit_code == 0

    def test_malformed_value(self, runner, files):
        result = runner.invoke(main, ["validate", str(files["bad.md"])])
        assert result.exit_code == 1
        assert "malformed" in result.output

    def test_parse_error(self, runner, files):
        result = runner.invoke(main, ["validate", str(files["broken.md"])])
        assert result.exit_code == 1


class TestApply:
    def test_applies_to_output(self, runner, files, tmp_path):
        patches = tmp_path / "patches.yaml"
        patches.write_text(yaml.safe_dump([
            {"op": "set_string", "field_id": "name", "value": "Widget"},
            {"op": "set_single_select", "field_id": "size", "value": "small"},
        ]))
        out = tmp_path / "patched.form.md"
        result = runner.invoke(main, ["apply", str(files["order.form.md"]), str(patches), "-o", str(out)])
        assert result.exit_code == 0
        doc = parse_form(out.read_text(encoding="utf-8"))
        assert doc.response_for("size").value.selected == "small"

    def test_stdin_and_stdout(self, runner, files):
        patch = json.dumps({"patches": [{"op": "set_string", "field_id": "name", "value": "Gadget"}]})
        result = runner.invoke(main, ["apply", str(files["order.form.md"]), "-"], input=patch)
        assert result.exit_code == 0
        assert "```value\nGadget\n```" in result.output

    def test_rejection_exit_code(self, runner, files):
        patch = json.dumps([{"op": "set_string", "field_id": "size", "value": "huge"}])
        path = files["order.form.md"]
        result = runner.invoke(main, ["apply", str(path), "-", "--in-place"], input=patch)
        assert result.exit_code == 1
        assert path.read_text(encoding="utf-8") == FORM


class TestFormatAndExport:
    def test_convert_syntax(self, runner, files):
        result = runner.invoke(main, ["format", str(files["done.form.md"]), "--syntax", "comments"])
        assert result.exit_code == 0
        assert '<!-- f:form id="order" title="Order" -->' in result.output
        assert "{%" not in result.output

    def test_format_is_identity_by_default(self, runner, files):
        result = runner.invoke(main, ["format", str(files["done.form.md"])])
        assert result.output == FILLED

    def test_export_json(self, runner, files):
        result = runner.invoke(main, ["export", str(files["done.form.md"])])
        assert json.loads(result.output) == {"name": "Widget", "size": "large"}

    def test_export_yaml_with_states(self, runner, files):
        result = runner.invoke(main, ["export", str(files["order.form.md"]), "-f", "yaml", "--states"])
        data = yaml.safe_load(result.output)
        assert data["name"] == {"state": "unanswered", "value": None}


class TestFill:
    def test_mock_fill_writes_form_and_record(self, runner, files, tmp_path):
        out = tmp_path / "filled.form.md"
        result = runner.invoke(
            main,
            ["fill", str(files["order.form.md"]), "--mock", str(files["done.form.md"]), "-o", str(out)],
        )
        assert result.exit_code == 0
        assert parse_form(out.read_text(encoding="utf-8")).response_for("name").value.value == "Widget"
        record = json.loads((tmp_path / "filled.fill.json").read_text(encoding="utf-8"))
        assert record["status"] == "complete"
        assert len(record["turns"]) == 1

    def test_rejection_mock_takes_two_turns(self, runner, files, tmp_path):
        record_path = tmp_path / "run.yaml"
        result = runner.invoke(
            main,
            [
                "fill", str(files["order.form.md"]),
                "--mock", str(files["done.form.md"]),
                "--rejection-test",
                "--record", str(record_path),
            ],
        )
        assert result.exit_code == 0
        record = yaml.safe_load(record_path.read_text(encoding="utf-8"))
        assert [turn["applied"] for turn in record["turns"]] == [False, True]

    def test_budget_exit_code(self, runner, files):
        empty = files["order.form.md"]
        result = runner.invoke(main, ["fill", str(empty), "--mock", str(empty)])
        assert result.exit_code == 1
        assert "incomplete_no_progress" in result.output

    def test_bad_config(self, runner, files, tmp_path):
        result = runner.invoke(
            main,
            ["fill", str(files["order.form.md"]), "--mock", str(files["done.form.md"]), "-c", str(tmp_path / "x.yaml")],
        )
        assert result.exit_code == 2
