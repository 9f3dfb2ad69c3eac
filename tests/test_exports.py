"""Tests for value export and the markdown report."""

from __future__ import annotations

import pytest

from formdown.core.exports import export_values, field_summary, render_report
from formdown.core.parser import parse_form
from formdown.core.patches import apply_patches


FORM = """\
{% form id="trip" title="Trip" %}

{% description ref="trip" %}
Plan the offsite.
{% /description %}

{% group id="basics" title="Basics" %}

{% field kind="string" id="city" label="City" required=true %}{% /field %}

{% field kind="multi_select" id="days" label="Days" %}
- [ ] Monday {% #mon %}
- [ ] Tuesday {% #tue %}
{% /field %}

{% field kind="checkboxes" id="todo" label="To do" %}
- [ ] Book hotel {% #hotel %}
- [ ] Book train {% #train %}
{% /field %}

{% field kind="number" id="budget" label="Budget" %}{% /field %}

{% /group %}

{% /form %}
"""


@pytest.fixture
def doc():
    doc = parse_form(FORM)
    result = apply_patches(doc, [
        {"op": "set_string", "field_id": "city", "value": "Lisbon"},
        {"op": "set_multi_select", "field_id": "days", "value": ["tue", "mon"]},
        {"op": "set_checkboxes", "field_id": "todo", "value": {"hotel": "done"}},
        {"op": "skip_field", "field_id": "budget", "reason": "not decided"},
    ])
    assert result.applied
    return doc


class TestExportValues:
    def test_answered_only(self, doc):
        assert export_values(doc) == {
            "city": "Lisbon",
            "days": ["mon", "tue"],
            "todo": {"hotel": "done", "train": "todo"},
        }

    def test_with_states(self, doc):
        values = export_values(doc, include_states=True)
        assert values["budget"] == {"state": "skipped", "value": None, "reason": "not decided"}
        assert values["city"] == {"state": "answered", "value": "Lisbon"}


class TestReport:
    def test_report(self, doc):
        report = render_report(doc)
        assert report.startswith("# Trip\n\nPlan the offsite.\n\n## Basics\n\n")
        assert "**City:**\nLisbon" in report
        assert "**Days:**\n- Monday\n- Tuesday" in report
        assert "- [x] Book hotel\n- [ ] Book train" in report
        assert "**Budget:**\n_(skipped: not decided)_" in report
        assert "{%" not in report

    def test_field_summary(self, doc):
        assert field_summary(doc.get_field("days"), doc.response_for("days")) == "mon, tue"
        assert field_summary(doc.get_field("budget"), doc.response_for("budget")) == "(skipped: not decided)"
