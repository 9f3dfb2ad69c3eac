"""Read-only projections of a filled document.

``export_values`` flattens responses to plain JSON/YAML-friendly values;
``render_report`` writes readable markdown with no structural markers
(it cannot be parsed back).
"""

from __future__ import annotations

from typing import Any

from .models import (
    DEFAULT_CHECKBOX_STATE,
    AnswerState,
    Cell,
    CheckboxMode,
    CheckboxState,
    DocBlock,
    FieldResponse,
    FormDocument,
    FormField,
)
from .tables import format_cell

_REPORT_MARKS = {
    CheckboxState.TODO: " ",
    CheckboxState.DONE: "x",
    CheckboxState.INCOMPLETE: "/",
    CheckboxState.ACTIVE: "*",
    CheckboxState.NA: "-",
    CheckboxState.UNFILLED: " ",
    CheckboxState.YES: "x",
    CheckboxState.NO: " ",
}


def _plain_cell(cell: Cell) -> Any:
    if cell.state == AnswerState.ANSWERED:
        return cell.value
    return {"state": cell.state.value, "reason": cell.reason}


def plain_value(response: FieldResponse) -> Any:
    """The bare value of an answered response (``None`` otherwise)."""
    value = response.value
    if value is None:
        return None
    if value.kind in ("string_list", "url_list"):
        return list(value.items)
    if value.kind == "single_select":
        return value.selected
    if value.kind == "multi_select":
        return list(value.selected)
    if value.kind == "checkboxes":
        return {oid: state.value for oid, state in value.values.items()}
    if value.kind == "table":
        return [{cid: _plain_cell(cell) for cid, cell in row.items()} for row in value.rows]
    return value.value


def export_values(doc: FormDocument, *, include_states: bool = False) -> dict[str, Any]:
    """Map field ids to plain values, in declaration order.

    By default only answered fields are exported.  With *include_states*
    every field is exported as ``{"state": ..., "value": ..., "reason": ...}``.
    """
    out: dict[str, Any] = {}
    for fld in doc.form.fields:
        response = doc.response_for(fld.id)
        if include_states:
            entry: dict[str, Any] = {"state": response.state.value, "value": plain_value(response)}
            if response.reason:
                entry["reason"] = response.reason
            out[fld.id] = entry
        elif response.state == AnswerState.ANSWERED:
            out[fld.id] = plain_value(response)
    return out


# ---------------------------------------------------------------------------
# Markdown report
# ---------------------------------------------------------------------------

def _placeholder(response: FieldResponse) -> str:
    if response.state in (AnswerState.SKIPPED, AnswerState.ABORTED):
        label = response.state.value
        return f"_({label}: {response.reason})_" if response.reason else f"_({label})_"
    return "_(empty)_"


def _field_lines(fld: Any, response: FieldResponse) -> list[str]:
    lines = [f"**{fld.label}:**"]
    value = response.value
    if fld.kind == "checkboxes":
        default = DEFAULT_CHECKBOX_STATE[fld.checkbox_mode]
        states = value.values if value is not None else {}
        for opt in fld.options:
            state = states.get(opt.id, default)
            if fld.checkbox_mode == CheckboxMode.EXPLICIT and state != CheckboxState.UNFILLED:
                lines.append(f"- {opt.label}: {state.value}")
            else:
                lines.append(f"- [{_REPORT_MARKS[state]}] {opt.label}")
        if value is None and response.state != AnswerState.UNANSWERED:
            lines.append(_placeholder(response))
        return lines
    if value is None:
        lines.append(_placeholder(response))
    elif fld.kind in ("string_list", "url_list"):
        lines.extend(f"- {item}" for item in value.items)
    elif fld.kind == "single_select":
        lines.append(next((opt.label for opt in fld.options if opt.id == value.selected), value.selected))
    elif fld.kind == "multi_select":
        labels = {opt.id: opt.label for opt in fld.options}
        lines.extend(f"- {labels.get(oid, oid)}" for oid in value.selected)
    elif fld.kind == "table":
        lines.append("")
        lines.append("| " + " | ".join(col.label for col in fld.columns) + " |")
        lines.append("| " + " | ".join("---" for _ in fld.columns) + " |")
        for row in value.rows:
            lines.append("| " + " | ".join(format_cell(row.get(col.id)) for col in fld.columns) + " |")
    else:
        lines.append(str(value.value))
    return lines


def render_report(doc: FormDocument) -> str:
    """Readable markdown: titles as headings, values under bold labels."""
    docs_by_ref: dict[str, list[DocBlock]] = {}
    for block in doc.docs:
        docs_by_ref.setdefault(block.ref, []).append(block)

    parts: list[str] = []

    def add_docs(ref: str) -> None:
        for block in docs_by_ref.get(ref, []):
            parts.append(block.body.strip())

    if doc.form.title:
        parts.append(f"# {doc.form.title}")
    add_docs(doc.form.id)
    for group in doc.form.groups:
        if group.title:
            parts.append(f"## {group.title}")
        add_docs(group.id)
        for fld in group.fields:
            parts.append("\n".join(_field_lines(fld, doc.response_for(fld.id))))
            add_docs(fld.id)
    return "\n\n".join(part for part in parts if part) + "\n"


def field_summary(fld: FormField, response: FieldResponse) -> str:
    """One-line rendering of a response, for tables in the CLI."""
    if response.state != AnswerState.ANSWERED:
        return _placeholder(response).strip("_")
    value = plain_value(response)
    if isinstance(value, list):
        if fld.kind == "table":
            return f"{len(value)} row(s)"
        return ", ".join(str(item) for item in value)
    if isinstance(value, dict):
        return ", ".join(f"{k}={v}" for k, v in value.items())
    return str(value)
