"""Tests for writing forms back to text."""

from __future__ import annotations

import pytest

from formdown.core.models import (
    AnswerState,
    FormDocument,
    FormSchema,
    Group,
    StringField,
    SyntaxStyle,
)
from formdown.core.parser import parse_form
from formdown.core.patches import apply_patches
from formdown.core.serializer import render_field, serialize_form


INTAKE = """\
---
formdown:
  roles: [user, agent]
---
# Intake

Some intro.

{% form id="intake" title="Intake" %}

Fill this in carefully.

{% instructions ref="name" %}
Use the legal name.
{% /instructions %}

{% group id="who" title="Who" %}

{% field kind="string" id="name" label="Name" required=true minLength=2 %}{% /field %}

{% field kind="single_select" id="priority" label="Priority" required=true %}
- [ ] Low {% #low %}
- [ ] Medium {% #medium %}
- [ ] High {% #high %}
{% /field %}

{% /group %}

{% field kind="string_list" id="tags" label="Tags" %}{% /field %}

{% /form %}

Thanks!
"""

PLAN = """\
{% form id="launch" title="Launch plan" %}

Steps:

- [ ] Write the announcement {% #announce %}
- [x] Book the venue {% #venue %}

{% /form %}
"""

TEAM = """\
<!-- f:form id="team" -->

<!-- f:field kind="table" id="members" label="Members" columnIds=["name", "age"] columnTypes=["string", "number"] -->
| name | age |
| --- | --- |
| Ada | 36 |
<!-- /f:field -->

<!-- /f:form -->
"""

NAME_FIELD = '{% field kind="string" id="name" label="Name" required=true minLength=2 %}{% /field %}'


@pytest.fixture
def intake():
    return parse_form(INTAKE)


# ---------------------------------------------------------------------------
# Splice mode
# ---------------------------------------------------------------------------

class TestSplice:
    @pytest.mark.parametrize("text", [INTAKE, PLAN, TEAM])
    def test_unchanged_document_is_byte_identical(self, text):
        assert serialize_form(parse_form(text)) == text

    def test_only_changed_field_is_regenerated(self, intake):
        result = apply_patches(intake, [{"op": "set_string", "field_id": "name", "value": "Ada"}])
        assert result.applied
        out = serialize_form(intake)
        expected_field = (
            '{% field kind="string" id="name" label="Name" minLength=2 required=true %}\n'
            "```value\nAda\n```\n"
            "{% /field %}"
        )
        assert out == INTAKE.replace(NAME_FIELD, expected_field)

    def test_selection_is_written_as_token(self, intake):
        apply_patches(intake, [{"op": "set_single_select", "field_id": "priority", "value": "medium"}])
        out = serialize_form(intake)
        assert "- [x] Medium {% #medium %}" in out
        assert "- [ ] Low {% #low %}" in out
        assert parse_form(out).response_for("priority").value.selected == "medium"

    def test_skip_writes_state_and_reason(self, intake):
        apply_patches(intake, [{"op": "skip_field", "field_id": "tags", "reason": "n/a"}])
        out = serialize_form(intake)
        assert '{% field kind="string_list" id="tags" label="Tags" state="skipped" %}' in out
        assert "%SKIP% (n/a)" in out
        response = parse_form(out).response_for("tags")
        assert response.state == AnswerState.SKIPPED
        assert response.reason == "n/a"

    def test_clearing_restores_empty_field(self, intake):
        apply_patches(intake, [{"op": "set_string", "field_id": "name", "value": "Ada"}])
        filled = parse_form(serialize_form(intake))
        apply_patches(filled, [{"op": "clear_field", "field_id": "name"}])
        assert NAME_FIELD.replace("required=true minLength=2", "minLength=2 required=true") in serialize_form(filled)

    def test_plan_tokens_are_replaced_in_place(self):
        doc = parse_form(PLAN)
        apply_patches(doc, [{"op": "set_checkboxes", "field_id": "checkboxes", "value": {"announce": "done"}}])
        assert serialize_form(doc) == PLAN.replace("- [ ] Write", "- [x] Write")

    def test_table_rows_are_rewritten(self):
        doc = parse_form(TEAM)
        apply_patches(doc, [{"op": "append_table_rows", "field_id": "members", "rows": [{"name": "Grace", "age": 45}]}])
        out = serialize_form(doc)
        assert "| Ada | 36 |\n| Grace | 45 |" in out
        assert out.startswith("<!-- f:form id=\"team\" -->")
        rows = parse_form(out).response_for("members").value.rows
        assert [row["name"].value for row in rows] == ["Ada", "Grace"]

    def test_value_with_backtick_fence(self, intake):
        value = "before\n```\nafter"
        apply_patches(intake, [{"op": "set_string", "field_id": "name", "value": value}])
        out = serialize_form(intake)
        assert "````value\n" in out
        assert parse_form(out).response_for("name").value.value == value

    def test_serializing_is_idempotent(self, intake):
        apply_patches(intake, [
            {"op": "set_string", "field_id": "name", "value": "Ada"},
            {"op": "set_string_list", "field_id": "tags", "value": ["one", "two"]},
        ])
        first = serialize_form(intake)
        assert serialize_form(intake) == first
        assert serialize_form(parse_form(first)) == first


# ---------------------------------------------------------------------------
# Canonical mode
# ---------------------------------------------------------------------------

class TestCanonical:
    def test_canonical_is_stable(self, intake):
        apply_patches(intake, [{"op": "set_string", "field_id": "name", "value": "Ada"}])
        first = serialize_form(intake, canonical=True)
        assert serialize_form(parse_form(first), canonical=True) == first

    def test_canonical_layout(self, intake):
        out = serialize_form(intake, canonical=True)
        assert out.startswith("---\nformdown:\n  roles:\n  - user\n  - agent\n---\n\n# Intake\n\nSome intro.\n\n")
        assert out.endswith("{% /form %}\n\nThanks!\n")
        assert "Fill this in carefully.\n\n{% instructions ref=\"name\" %}\nUse the legal name.\n{% /instructions %}" in out
        assert '{% group id="who" title="Who" %}\n\n' + NAME_FIELD.replace(
            "required=true minLength=2", "minLength=2 required=true"
        ) in out

    def test_canonical_attribute_order(self):
        doc = parse_form(
            '{% form title="T" id="f" %}\n'
            '{% field required=true label="A" priority=1 id="a" kind="string" %}{% /field %}\n'
            "{% /form %}\n"
        )
        out = serialize_form(doc, canonical=True)
        assert '{% form id="f" title="T" %}' in out
        assert '{% field kind="string" id="a" label="A" priority=1 required=true %}{% /field %}' in out

    def test_label_with_quotes_survives(self):
        doc = parse_form('{% form id="f" %}\n{% field kind="string" id="a" label="Say \\"hi\\"" %}{% /field %}\n{% /form %}\n')
        assert doc.get_field("a").label == 'Say "hi"'
        out = serialize_form(doc, canonical=True)
        assert parse_form(out).get_field("a").label == 'Say "hi"'

    def test_document_built_in_code(self):
        schema = FormSchema(
            id="built",
            title="Built",
            groups=[Group(id="main", title="Main", fields=[StringField(id="a", label="A", required=True)])],
        )
        out = serialize_form(FormDocument(form=schema))
        assert out == (
            '{% form id="built" title="Built" %}\n\n'
            '{% group id="main" title="Main" %}\n\n'
            '{% field kind="string" id="a" label="A" required=true %}{% /field %}\n\n'
            "{% /group %}\n\n"
            "{% /form %}\n"
        )
        assert parse_form(out).get_field("a").required is True


# ---------------------------------------------------------------------------
# Syntax conversion
# ---------------------------------------------------------------------------

class TestSyntaxConversion:
    def test_tags_to_comments(self, intake):
        apply_patches(intake, [{"op": "set_single_select", "field_id": "priority", "value": "high"}])
        out = serialize_form(intake, syntax=SyntaxStyle.COMMENTS)
        assert "{%" not in out
        assert '<!-- f:form id="intake" title="Intake" -->' in out
        assert "- [x] High <!-- #high -->" in out
        converted = parse_form(out)
        assert converted.syntax == SyntaxStyle.COMMENTS
        assert converted.response_for("priority").value.selected == "high"

    def test_round_trip_through_comments(self, intake):
        comments = serialize_form(intake, syntax=SyntaxStyle.COMMENTS)
        back = serialize_form(parse_form(comments), syntax=SyntaxStyle.TAGS)
        assert back == serialize_form(intake, canonical=True)

    def test_label_with_comment_terminator(self):
        doc = parse_form('{% form id="f" %}\n{% field kind="string" id="a" label="x --> y" %}{% /field %}\n{% /form %}\n')
        out = serialize_form(doc, syntax=SyntaxStyle.COMMENTS)
        assert 'label="x --> y" --><!-- /f:field -->' in out
        converted = parse_form(out)
        assert converted.get_field("a").label == "x --> y"
        assert serialize_form(converted, syntax=SyntaxStyle.TAGS) == serialize_form(doc, canonical=True)

    def test_label_with_tag_terminator(self):
        doc = parse_form(
            '<!-- f:form id="f" -->\n<!-- f:field kind="string" id="a" label="50%} off" --><!-- /f:field -->\n<!-- /f:form -->\n'
        )
        out = serialize_form(doc, syntax=SyntaxStyle.TAGS)
        assert '{% field kind="string" id="a" label="50%} off" %}{% /field %}' in out
        assert parse_form(out).get_field("a").label == "50%} off"

    def test_quoted_marker_of_other_syntax_is_text(self):
        doc = parse_form('{% form id="f" %}\n{% field kind="string" id="a" label="see <!-- #b -->" %}{% /field %}\n{% /form %}\n')
        assert doc.get_field("a").label == "see <!-- #b -->"

    def test_plan_annotations_are_converted(self):
        out = serialize_form(parse_form(PLAN), syntax=SyntaxStyle.COMMENTS)
        assert "- [ ] Write the announcement <!-- #announce -->" in out
        assert "- [x] Book the venue <!-- #venue -->" in out
        assert parse_form(out).get_field("checkboxes").implicit is True


class TestRenderField:
    def test_empty_field_renders_on_one_line(self, intake):
        fld = intake.get_field("tags")
        assert render_field(fld, intake.response_for("tags"), SyntaxStyle.COMMENTS) == (
            '<!-- f:field kind="string_list" id="tags" label="Tags" --><!-- /f:field -->'
        )
