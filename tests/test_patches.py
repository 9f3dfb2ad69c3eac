"""Tests for typed patches and transactional application."""

from __future__ import annotations

import pytest

from formdown.core.inspector import inspect_form
from formdown.core.models import AnswerState, CheckboxState
from formdown.core.parser import parse_form
from formdown.core.patches import (
    RejectionReason,
    SetSingleSelectPatch,
    SetStringPatch,
    apply_patches,
    parse_patches,
    patch_for_response,
)
from formdown.errors import PatchApplicationError


ORDER = """\
{% form id="order" title="Order" %}

{% field kind="string" id="name" label="Name" required=true minLength=2 %}{% /field %}

{% field kind="single_select" id="priority" label="Priority" required=true %}
- [ ] Low {% #low %}
- [ ] Medium {% #medium %}
- [ ] High {% #high %}
{% /field %}

{% field kind="multi_select" id="sizes" label="Sizes" maxSelections=2 %}
- [ ] Small {% #s %}
- [ ] Medium {% #m %}
- [ ] Large {% #l %}
{% /field %}

{% field kind="string_list" id="tags" label="Tags" %}{% /field %}

{% field kind="table" id="team" label="Team" required=true minRows=1 columnIds=["name", "role", "age"] columnTypes=[{type: "string", required: true}, "string", "number"] %}{% /field %}

{% field kind="checkboxes" id="checks" label="Checks" checkboxMode="explicit" %}
- [ ] Backups tested {% #backups %}
- [ ] Alerts wired {% #alerts %}
{% /field %}

{% field kind="number" id="count" label="Count" integer=true min=0 %}{% /field %}

{% field kind="year" id="since" label="Since" %}{% /field %}

{% field kind="date" id="due" label="Due" %}{% /field %}

{% field kind="url" id="site" label="Site" %}{% /field %}

{% /form %}
"""


@pytest.fixture
def doc():
    return parse_form(ORDER)


def _reasons(result):
    return [r.reason for r in result.rejections]


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------

class TestTransactions:
    def test_valid_batch_is_applied(self, doc):
        result = apply_patches(doc, [
            {"op": "set_string", "field_id": "name", "value": "Ada"},
            {"op": "set_single_select", "field_id": "priority", "value": "medium"},
        ])
        assert result.applied is True
        assert result.status == "applied"
        assert len(result.patches) == 2
        assert doc.response_for("name").value.value == "Ada"
        assert doc.response_for("priority").value.selected == "medium"

    def test_one_bad_patch_rejects_the_batch(self, doc):
        result = apply_patches(doc, [
            {"op": "set_string", "field_id": "name", "value": "A"},
            {"op": "set_single_select", "field_id": "priority", "value": "medium"},
        ])
        assert result.applied is False
        assert result.status == "rejected"
        assert len(result.rejections) == 1
        rejection = result.rejections[0]
        assert rejection.patch_index == 0
        assert rejection.field_id == "name"
        assert rejection.reason == RejectionReason.CONSTRAINT_VIOLATION
        assert "at least 2 characters" in rejection.message
        assert doc.response_for("name").state == AnswerState.UNANSWERED
        assert doc.response_for("priority").state == AnswerState.UNANSWERED

    def test_every_failure_is_reported(self, doc):
        result = apply_patches(doc, [
            {"op": "set_string", "field_id": "nope", "value": "x"},
            {"op": "set_string", "field_id": "name", "value": "Ada"},
            {"op": "set_number", "field_id": "name", "value": 3},
        ])
        assert [r.patch_index for r in result.rejections] == [0, 2]
        assert _reasons(result) == [RejectionReason.UNKNOWN_FIELD, RejectionReason.KIND_MISMATCH]
        assert doc.response_for("name").state == AnswerState.UNANSWERED

    def test_later_patches_see_earlier_ones(self, doc):
        result = apply_patches(doc, [
            {"op": "set_table", "field_id": "team", "value": [{"name": "Ada"}, {"name": "Grace"}]},
            {"op": "delete_table_rows", "field_id": "team", "indexes": [0]},
        ])
        assert result.applied
        rows = doc.response_for("team").value.rows
        assert [row["name"].value for row in rows] == ["Grace"]

    def test_result_carries_inspection(self, doc):
        result = apply_patches(doc, [{"op": "set_string", "field_id": "name", "value": "Ada"}])
        assert result.inspection is not None
        assert "name" not in {issue.field_id for issue in result.inspection.issues}

    def test_completion_holds_until_a_field_is_cleared(self, doc):
        result = apply_patches(doc, [
            {"op": "set_string", "field_id": "name", "value": "Ada"},
            {"op": "set_single_select", "field_id": "priority", "value": "high"},
            {"op": "append_table_rows", "field_id": "team", "rows": [{"name": "Ada"}]},
            {"op": "set_checkboxes", "field_id": "checks", "value": {"backups": "yes", "alerts": "no"}},
        ])
        assert result.applied
        assert inspect_form(doc).is_complete is True

        assert apply_patches(doc, [{"op": "set_string", "field_id": "name", "value": "Grace"}]).applied
        assert inspect_form(doc).is_complete is True

        rejected = apply_patches(doc, [
            {"op": "set_string", "field_id": "tags", "value": "x"},
            {"op": "set_string", "field_id": "missing", "value": "x"},
        ])
        assert not rejected.applied
        assert inspect_form(doc).is_complete is True
        assert doc.response_for("name").value.value == "Grace"

        assert apply_patches(doc, [{"op": "clear_field", "field_id": "name"}]).applied
        assert inspect_form(doc).is_complete is False

    def test_empty_batch_is_applied(self, doc):
        result = apply_patches(doc, [])
        assert result.applied is True
        assert result.patches == []

    def test_accepts_patch_models(self, doc):
        result = apply_patches(doc, [
            SetStringPatch(field_id="name", value="Ada"),
            SetSingleSelectPatch(field_id="priority", value="high"),
        ])
        assert result.applied

    def test_responses_out_of_sync_raise(self, doc):
        del doc.responses["name"]
        with pytest.raises(PatchApplicationError):
            apply_patches(doc, [{"op": "set_string", "field_id": "tags", "value": "x"}])


# ---------------------------------------------------------------------------
# Rejection reasons
# ---------------------------------------------------------------------------

class TestRejections:
    def test_unknown_option(self, doc):
        result = apply_patches(doc, [{"op": "set_single_select", "field_id": "priority", "value": "urgent"}])
        assert _reasons(result) == [RejectionReason.INVALID_VALUE]
        assert "urgent" in result.rejections[0].message

    def test_wrong_value_type_is_invalid_patch(self, doc):
        result = apply_patches(doc, [{"op": "set_number", "field_id": "count", "value": "5"}])
        assert _reasons(result) == [RejectionReason.INVALID_PATCH]

    def test_boolean_is_not_a_year(self, doc):
        result = apply_patches(doc, [{"op": "set_year", "field_id": "since", "value": True}])
        assert _reasons(result) == [RejectionReason.INVALID_PATCH]

    def test_unknown_op(self, doc):
        result = apply_patches(doc, [{"op": "set_colour", "field_id": "name", "value": "red"}])
        assert _reasons(result) == [RejectionReason.INVALID_PATCH]
        assert result.rejections[0].op == "set_colour"

    def test_non_object_patch(self, doc):
        result = apply_patches(doc, ["set name"])
        assert _reasons(result) == [RejectionReason.INVALID_PATCH]
        assert "str" in result.rejections[0].message

    def test_empty_string(self, doc):
        result = apply_patches(doc, [{"op": "set_string", "field_id": "name", "value": "   "}])
        assert _reasons(result) == [RejectionReason.INVALID_VALUE]

    def test_sentinel_as_value(self, doc):
        result = apply_patches(doc, [{"op": "set_string", "field_id": "name", "value": "%SKIP%"}])
        assert _reasons(result) == [RejectionReason.INVALID_VALUE]
        assert "skip_field" in result.rejections[0].message

    def test_integer_constraint(self, doc):
        result = apply_patches(doc, [{"op": "set_number", "field_id": "count", "value": 2.5}])
        assert _reasons(result) == [RejectionReason.CONSTRAINT_VIOLATION]

    def test_minimum(self, doc):
        result = apply_patches(doc, [{"op": "set_number", "field_id": "count", "value": -1}])
        assert _reasons(result) == [RejectionReason.CONSTRAINT_VIOLATION]

    def test_impossible_date(self, doc):
        result = apply_patches(doc, [{"op": "set_date", "field_id": "due", "value": "2024-02-30"}])
        assert _reasons(result) == [RejectionReason.CONSTRAINT_VIOLATION]

    def test_non_http_url(self, doc):
        result = apply_patches(doc, [{"op": "set_url", "field_id": "site", "value": "ftp://example.com"}])
        assert _reasons(result) == [RejectionReason.CONSTRAINT_VIOLATION]

    def test_too_many_selections(self, doc):
        result = apply_patches(doc, [{"op": "set_multi_select", "field_id": "sizes", "value": ["s", "m", "l"]}])
        assert _reasons(result) == [RejectionReason.CONSTRAINT_VIOLATION]


# ---------------------------------------------------------------------------
# Per-op behaviour
# ---------------------------------------------------------------------------

class TestSkipAndAbort:
    def test_skip_optional(self, doc):
        result = apply_patches(doc, [{"op": "skip_field", "field_id": "tags", "reason": "none apply"}])
        assert result.applied
        response = doc.response_for("tags")
        assert response.state == AnswerState.SKIPPED
        assert response.reason == "none apply"

    def test_skip_required_is_rejected(self, doc):
        result = apply_patches(doc, [{"op": "skip_field", "field_id": "name"}])
        assert _reasons(result) == [RejectionReason.CONSTRAINT_VIOLATION]

    def test_abort_required(self, doc):
        result = apply_patches(doc, [{"op": "abort_field", "field_id": "name", "reason": "unknown"}])
        assert result.applied
        assert doc.response_for("name").state == AnswerState.ABORTED

    def test_clear(self, doc):
        apply_patches(doc, [{"op": "set_string", "field_id": "name", "value": "Ada"}])
        result = apply_patches(doc, [{"op": "clear_field", "field_id": "name"}])
        assert result.applied
        assert doc.response_for("name").state == AnswerState.UNANSWERED


class TestSelections:
    def test_multi_select_follows_option_order(self, doc):
        apply_patches(doc, [{"op": "set_multi_select", "field_id": "sizes", "value": ["l", "s"]}])
        assert doc.response_for("sizes").value.selected == ["s", "l"]

    def test_single_value_is_coerced_to_list(self, doc):
        result = apply_patches(doc, [{"op": "set_string_list", "field_id": "tags", "value": "alpha"}])
        assert result.applied
        assert doc.response_for("tags").value.items == ["alpha"]
        assert [w.coercion for w in result.warnings] == ["value_to_list"]

    def test_checkboxes_merge_with_current_states(self, doc):
        apply_patches(doc, [{"op": "set_checkboxes", "field_id": "checks", "value": {"backups": "yes"}}])
        apply_patches(doc, [{"op": "set_checkboxes", "field_id": "checks", "value": {"alerts": "no"}}])
        assert doc.response_for("checks").value.values == {
            "backups": CheckboxState.YES,
            "alerts": CheckboxState.NO,
        }

    def test_checkbox_state_outside_mode(self, doc):
        result = apply_patches(doc, [{"op": "set_checkboxes", "field_id": "checks", "value": {"backups": "done"}}])
        assert _reasons(result) == [RejectionReason.INVALID_VALUE]

    def test_booleans_are_coerced_to_states(self, doc):
        result = apply_patches(doc, [
            {"op": "set_checkboxes", "field_id": "checks", "value": {"backups": True, "alerts": False}},
        ])
        assert result.applied
        assert doc.response_for("checks").value.values == {
            "backups": CheckboxState.YES,
            "alerts": CheckboxState.NO,
        }
        assert [w.coercion for w in result.warnings] == ["boolean_to_checkbox"]


class TestTables:
    def test_append_types_cells(self, doc):
        result = apply_patches(doc, [
            {"op": "append_table_rows", "field_id": "team", "rows": [{"name": "Ada", "age": "36"}]},
        ])
        assert result.applied
        row = doc.response_for("team").value.rows[0]
        assert row["age"].value == 36
        assert "role" not in row

    def test_skipped_cell(self, doc):
        apply_patches(doc, [
            {"op": "set_table", "field_id": "team", "value": [{"name": "Ada", "age": "%SKIP% (private)"}]},
        ])
        cell = doc.response_for("team").value.rows[0]["age"]
        assert cell.state == AnswerState.SKIPPED
        assert cell.reason == "private"

    def test_missing_required_column(self, doc):
        result = apply_patches(doc, [{"op": "append_table_rows", "field_id": "team", "rows": [{"role": "Lead"}]}])
        assert _reasons(result) == [RejectionReason.CONSTRAINT_VIOLATION]
        assert "missing required column" in result.rejections[0].message

    def test_unknown_column(self, doc):
        result = apply_patches(doc, [{"op": "append_table_rows", "field_id": "team", "rows": [{"nick": "A"}]}])
        assert _reasons(result) == [RejectionReason.INVALID_VALUE]

    def test_text_in_number_column(self, doc):
        result = apply_patches(doc, [
            {"op": "append_table_rows", "field_id": "team", "rows": [{"name": "Ada", "age": "old"}]},
        ])
        assert _reasons(result) == [RejectionReason.CONSTRAINT_VIOLATION]

    def test_delete_out_of_range(self, doc):
        apply_patches(doc, [{"op": "set_table", "field_id": "team", "value": [{"name": "Ada"}]}])
        result = apply_patches(doc, [{"op": "delete_table_rows", "field_id": "team", "indexes": [3]}])
        assert _reasons(result) == [RejectionReason.ROW_INDEX_OUT_OF_RANGE]
        assert len(doc.response_for("team").value.rows) == 1

    def test_deleting_every_row_unanswers(self, doc):
        apply_patches(doc, [{"op": "set_table", "field_id": "team", "value": [{"name": "Ada"}]}])
        apply_patches(doc, [{"op": "delete_table_rows", "field_id": "team", "indexes": [0]}])
        assert doc.response_for("team").state == AnswerState.UNANSWERED


# ---------------------------------------------------------------------------
# Wire parsing and response → patch
# ---------------------------------------------------------------------------

class TestWire:
    def test_parse_patches_keeps_indexes(self, doc):
        patches, rejections, warnings = parse_patches([
            {"op": "set_string", "fieldId": "name", "value": "Ada"},
            {"op": "set_string", "field_id": "name"},
        ], doc)
        assert [(index, patch.field_id) for index, patch in patches] == [(0, "name")]
        assert [r.patch_index for r in rejections] == [1]
        assert warnings == []

    def test_patch_for_response_reproduces_table(self, doc):
        apply_patches(doc, [
            {"op": "set_table", "field_id": "team", "value": [{"name": "Ada", "age": 36}, {"name": "Bo", "age": "%ABORT%"}]},
        ])
        patch = patch_for_response(doc.get_field("team"), doc.response_for("team"))
        assert patch.op == "set_table"

        fresh = parse_form(ORDER)
        assert apply_patches(fresh, [patch]).applied
        assert fresh.response_for("team") == doc.response_for("team")

    def test_patch_for_skipped_response(self, doc):
        apply_patches(doc, [{"op": "skip_field", "field_id": "site", "reason": "none"}])
        patch = patch_for_response(doc.get_field("site"), doc.response_for("site"))
        assert patch.op == "skip_field"
        assert patch.reason == "none"
