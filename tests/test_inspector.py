"""Tests for validation and inspection."""

from __future__ import annotations

import pytest

from formdown.core.inspector import ProgressState, inspect_form
from formdown.core.models import FieldResponse, IssueCategory, IssueScope, IssueSeverity
from formdown.core.parser import parse_form
from formdown.core.patches import apply_patches
from formdown.core.validator import is_valid_date, is_valid_url, validate_field


FORM = """\
{% form id="review" title="Review" %}

{% field kind="string" id="summary" label="Summary" required=true %}{% /field %}

{% field kind="string" id="notes" label="Notes" %}{% /field %}

{% field kind="checkboxes" id="steps" label="Steps" required=true priority=1 %}
- [ ] Read {% #read %}
- [ ] Test {% #test %}
{% /field %}

{% field kind="checkboxes" id="gates" label="Gates" checkboxMode="explicit" %}
- [ ] Security {% #security %}
- [ ] Legal {% #legal %}
{% /field %}

{% field kind="string" id="owner" label="Owner" required=true role="user" %}{% /field %}

{% /form %}
"""


@pytest.fixture
def doc():
    return parse_form(FORM)


# ---------------------------------------------------------------------------
# Issues
# ---------------------------------------------------------------------------

class TestIssues:
    def test_empty_form(self, doc):
        result = inspect_form(doc)
        assert result.is_complete is False
        assert result.form_state == ProgressState.EMPTY
        refs = [issue.ref for issue in result.issues]
        # priority 1 first, then declaration order
        assert refs == ["steps", "summary", "notes", "gates", "owner"]

    def test_missing_and_optional(self, doc):
        issues = {issue.ref: issue for issue in inspect_form(doc).issues}
        assert issues["summary"].category == IssueCategory.MISSING
        assert issues["summary"].severity == IssueSeverity.REQUIRED
        assert issues["notes"].category == IssueCategory.OPTIONAL_EMPTY
        assert issues["notes"].severity == IssueSeverity.RECOMMENDED

    def test_partial_checklist(self, doc):
        apply_patches(doc, [{"op": "set_checkboxes", "field_id": "steps", "value": {"read": "done"}}])
        issues = [i for i in inspect_form(doc).issues if i.field_id == "steps"]
        assert len(issues) == 1
        assert issues[0].category == IssueCategory.INCOMPLETE_CHECKLIST
        assert "test" in issues[0].message

    def test_na_counts_as_finished(self, doc):
        apply_patches(doc, [{"op": "set_checkboxes", "field_id": "steps", "value": {"read": "done", "test": "na"}}])
        assert not [i for i in inspect_form(doc).issues if i.field_id == "steps"]

    def test_explicit_issues_per_option(self, doc):
        apply_patches(doc, [{"op": "set_checkboxes", "field_id": "gates", "value": {"security": "yes"}}])
        issues = [i for i in inspect_form(doc).issues if i.field_id == "gates"]
        assert [i.ref for i in issues] == ["gates.legal"]
        assert issues[0].scope == IssueScope.OPTION
        assert issues[0].is_required

    def test_complete(self, doc):
        apply_patches(doc, [
            {"op": "set_string", "field_id": "summary", "value": "Looks good"},
            {"op": "set_checkboxes", "field_id": "steps", "value": {"read": "done", "test": "done"}},
            {"op": "set_checkboxes", "field_id": "gates", "value": {"security": "yes", "legal": "no"}},
            {"op": "set_string", "field_id": "owner", "value": "Sam"},
        ])
        result = inspect_form(doc)
        assert result.is_complete is True
        assert result.form_state == ProgressState.COMPLETE
        # the optional note is still reported
        assert [issue.ref for issue in result.issues] == ["notes"]

    def test_aborted_required_field_is_resolved(self, doc):
        apply_patches(doc, [{"op": "abort_field", "field_id": "summary", "reason": "blocked"}])
        assert "summary" not in {issue.field_id for issue in inspect_form(doc).issues}


class TestScoping:
    def test_roles(self, doc):
        refs = {issue.ref for issue in inspect_form(doc, roles=["agent"]).issues}
        assert "owner" not in refs
        assert "summary" in refs

    def test_all_roles(self, doc):
        refs = {issue.ref for issue in inspect_form(doc, roles=["*"]).issues}
        assert "owner" in refs

    def test_field_ids(self, doc):
        result = inspect_form(doc, field_ids=["notes"])
        assert [issue.ref for issue in result.issues] == ["notes"]
        assert result.is_complete is True
        assert result.progress.total_fields == 1


# ---------------------------------------------------------------------------
# Progress
# ---------------------------------------------------------------------------

class TestProgress:
    def test_counts(self, doc):
        apply_patches(doc, [
            {"op": "set_string", "field_id": "summary", "value": "ok"},
            {"op": "skip_field", "field_id": "notes"},
            {"op": "abort_field", "field_id": "owner"},
        ])
        progress = inspect_form(doc).progress
        assert progress.total_fields == 5
        assert progress.required_fields == 4
        assert progress.answered_fields == 1
        assert progress.skipped_fields == 1
        assert progress.aborted_fields == 1
        assert progress.unanswered_fields == 2
        assert progress.filled_fields == 1
        assert progress.empty_fields == 4
        assert progress.empty_required_fields == 2

    def test_invalid_state(self):
        doc = parse_form(
            '{% form id="f" %}\n'
            '{% field kind="url" id="u" label="U" %}\n```value\nnot a url\n```\n{% /field %}\n'
            "{% /form %}\n"
        )
        result = inspect_form(doc)
        assert result.form_state == ProgressState.INVALID
        assert result.progress.invalid_fields == 1
        assert result.issues[0].category == IssueCategory.MALFORMED

    def test_to_dict(self, doc):
        data = inspect_form(doc).to_dict()
        assert data["form_state"] == "empty"
        assert data["progress"]["total_fields"] == 5
        assert data["issues"][0]["category"] == "missing"


# ---------------------------------------------------------------------------
# Field validation
# ---------------------------------------------------------------------------

class TestValidateField:
    def test_unanswered_has_no_constraint_issues(self, doc):
        assert validate_field(doc.get_field("summary"), FieldResponse()) == []

    def test_string_list_items(self):
        doc = parse_form(
            '{% form id="f" %}\n'
            '{% field kind="string_list" id="l" label="L" minItems=3 uniqueItems=true itemMaxLength=3 %}\n'
            "```value\nabc\nabc\n```\n{% /field %}\n"
            "{% /form %}\n"
        )
        messages = [i.message for i in validate_field(doc.get_field("l"), doc.response_for("l"))]
        assert any("at least 3 items" in m for m in messages)
        assert any("unique" in m for m in messages)

    def test_pattern(self):
        doc = parse_form(
            '{% form id="f" %}\n'
            '{% field kind="string" id="code" label="Code" pattern="^[A-Z]{3}$" %}\n```value\nabc\n```\n{% /field %}\n'
            "{% /form %}\n"
        )
        issues = validate_field(doc.get_field("code"), doc.response_for("code"))
        assert [i.category for i in issues] == [IssueCategory.MALFORMED]

    def test_min_done(self):
        doc = parse_form(
            '{% form id="f" %}\n'
            '{% field kind="checkboxes" id="c" label="C" minDone=2 %}\n'
            "- [x] A {% #a %}\n- [ ] B {% #b %}\n- [ ] C {% #c %}\n{% /field %}\n"
            "{% /form %}\n"
        )
        issues = validate_field(doc.get_field("c"), doc.response_for("c"))
        assert [i.category for i in issues] == [IssueCategory.INCOMPLETE_CHECKLIST] * 2
        assert "2 unfinished item(s): b, c" in issues[0].message
        assert "at least 2 done" in issues[1].message

    def test_min_done_does_not_replace_finishing_every_item(self):
        doc = parse_form(
            '{% form id="f" %}\n'
            '{% field kind="checkboxes" id="c" label="C" required=true minDone=1 %}\n'
            "- [x] A {% #a %}\n- [ ] B {% #b %}\n{% /field %}\n"
            "{% /form %}\n"
        )
        result = inspect_form(doc)
        assert result.is_complete is False
        assert [i.message for i in result.issues] == ['"C" has 1 unfinished item(s): b']

    def test_min_done_counts_not_applicable_items(self):
        doc = parse_form(
            '{% form id="f" %}\n'
            '{% field kind="checkboxes" id="c" label="C" required=true minDone=2 %}\n'
            "- [x] A {% #a %}\n- [-] B {% #b %}\n{% /field %}\n"
            "{% /form %}\n"
        )
        assert inspect_form(doc).is_complete is True

    @pytest.mark.parametrize(
        "url, ok",
        [
            ("https://example.com/a", True),
            ("http://localhost:8000", True),
            ("example.com", False),
            ("ftp://example.com", False),
            ("https://exa mple.com", False),
        ],
    )
    def test_urls(self, url, ok):
        assert is_valid_url(url) is ok

    @pytest.mark.parametrize("text, ok", [("2024-02-29", True), ("2023-02-29", False), ("2024-2-1", False)])
    def test_dates(self, text, ok):
        assert is_valid_date(text) is ok
