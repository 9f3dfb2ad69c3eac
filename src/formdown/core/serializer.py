"""``FormDocument`` → text.

Two modes share one field renderer:

* **splice** (default when the parsed source is available) reproduces the
  source byte-for-byte and regenerates only the fields whose response
  differs from the parse-time baseline;
* **canonical** regenerates the whole document from the layout tree with
  one blank line between blocks.

Both are idempotent: serializing, re-parsing and serializing again yields
identical text.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import yaml

from .models import (
    AGENT_ROLE,
    DEFAULT_CHECKBOX_STATE,
    DEFAULT_PRIORITY,
    TOKEN_FOR_STATE,
    AnswerState,
    CheckboxMode,
    ColumnType,
    DocBlock,
    FieldResponse,
    FormDocument,
    FormField,
    Group,
    PLAN_FIELD_ID,
    LayoutKind,
    LayoutNode,
    SyntaxStyle,
)
from .sentinels import format_sentinel
from .syntax import MarkerKind, render_annotation, render_marker, scan_markers
from .tables import render_table

logger = logging.getLogger("formdown.serializer")


# ---------------------------------------------------------------------------
# Field rendering
# ---------------------------------------------------------------------------

def _field_attributes(fld: Any, response: FieldResponse) -> dict[str, Any]:
    attrs: dict[str, Any] = {"kind": fld.kind, "id": fld.id, "label": fld.label}
    if fld.required and not (fld.kind == "checkboxes" and fld.checkbox_mode == CheckboxMode.EXPLICIT):
        attrs["required"] = True
    if fld.role != AGENT_ROLE:
        attrs["role"] = fld.role
    if fld.priority != DEFAULT_PRIORITY:
        attrs["priority"] = fld.priority
    if fld.order is not None:
        attrs["order"] = fld.order
    if fld.parallel is not None:
        attrs["parallel"] = fld.parallel
    if response.state in (AnswerState.SKIPPED, AnswerState.ABORTED):
        attrs["state"] = response.state.value

    kind = fld.kind
    if kind == "string":
        attrs.update(minLength=fld.min_length, maxLength=fld.max_length, pattern=fld.pattern)
    elif kind == "number":
        attrs.update(min=fld.min, max=fld.max, integer=fld.integer or None)
    elif kind == "string_list":
        attrs.update(
            minItems=fld.min_items,
            maxItems=fld.max_items,
            itemMinLength=fld.item_min_length,
            itemMaxLength=fld.item_max_length,
            uniqueItems=fld.unique_items or None,
        )
    elif kind == "multi_select":
        attrs.update(minSelections=fld.min_selections, maxSelections=fld.max_selections)
    elif kind == "checkboxes":
        if fld.checkbox_mode != CheckboxMode.MULTI:
            attrs["checkboxMode"] = fld.checkbox_mode.value
        attrs["minDone"] = fld.min_done
    elif kind == "url_list":
        attrs.update(minItems=fld.min_items, maxItems=fld.max_items, uniqueItems=fld.unique_items or None)
    elif kind in ("date", "year"):
        attrs.update(min=fld.min, max=fld.max)
    elif kind == "table":
        attrs["columnIds"] = [col.id for col in fld.columns]
        if any(col.label != col.id for col in fld.columns):
            attrs["columnLabels"] = [col.label for col in fld.columns]
        if any(col.type != ColumnType.STRING or col.required for col in fld.columns):
            attrs["columnTypes"] = [
                {"type": col.type.value, "required": True} if col.required else col.type.value
                for col in fld.columns
            ]
        attrs.update(minRows=fld.min_rows, maxRows=fld.max_rows)
    return attrs


def _fence(body: str) -> str:
    longest = 0
    run = 0
    for ch in body:
        run = run + 1 if ch == "`" else 0
        longest = max(longest, run)
    ticks = "`" * max(3, longest + 1)
    return f"{ticks}value\n{body}\n{ticks}"


def _value_text(fld: Any, response: FieldResponse) -> Optional[str]:
    value = response.value
    if value is None:
        return None
    kind = fld.kind
    if kind in ("string", "url", "date"):
        return value.value
    if kind == "number":
        return repr(value.value) if isinstance(value.value, float) else str(value.value)
    if kind == "year":
        return str(value.value)
    if kind in ("string_list", "url_list"):
        return "\n".join(value.items)
    return None


def _option_lines(fld: Any, response: FieldResponse, style: SyntaxStyle) -> list[str]:
    value = response.value
    lines = []
    for opt in fld.options:
        if fld.kind == "checkboxes":
            state = DEFAULT_CHECKBOX_STATE[fld.checkbox_mode]
            if value is not None:
                state = value.values.get(opt.id, state)
            token = TOKEN_FOR_STATE[state]
        elif fld.kind == "single_select":
            token = "[x]" if value is not None and value.selected == opt.id else "[ ]"
        else:
            token = "[x]" if value is not None and opt.id in value.selected else "[ ]"
        lines.append(f"- {token} {opt.label} {render_annotation(style, opt.id)}")
    return lines


def render_field(fld: FormField, response: FieldResponse, style: SyntaxStyle) -> str:
    """Render one field element, markers included."""
    attrs = _field_attributes(fld, response)
    parts: list[str] = []
    if fld.kind in ("single_select", "multi_select", "checkboxes"):
        parts.extend(_option_lines(fld, response, style))
    elif fld.kind == "table" and response.value is not None and response.value.rows:
        parts.append(render_table(fld.columns, response.value.rows))
    else:
        text = _value_text(fld, response)
        if text is not None:
            parts.append(_fence(text))
    if response.state in (AnswerState.SKIPPED, AnswerState.ABORTED) and response.reason:
        parts.append(_fence(format_sentinel(response.state, response.reason)))

    open_marker = render_marker(style, "field", attrs)
    close_marker = render_marker(style, "field", closing=True)
    if not parts:
        return f"{open_marker}{close_marker}"
    return "\n".join([open_marker, *parts, close_marker])


def render_doc_block(block: DocBlock, style: SyntaxStyle) -> str:
    open_marker = render_marker(style, block.tag.value, {"ref": block.ref})
    close_marker = render_marker(style, block.tag.value, closing=True)
    return f"{open_marker}\n{block.body}\n{close_marker}"


# ---------------------------------------------------------------------------
# Canonical mode
# ---------------------------------------------------------------------------

def _checklist_node(fld: Any, style: SyntaxStyle) -> LayoutNode:
    lines: list[str] = []
    tokens: dict[str, int] = {}
    offset = 0
    for opt in fld.options:
        line = f"- [ ] {opt.label} {render_annotation(style, opt.id)}"
        tokens[opt.id] = offset + 2
        lines.append(line)
        offset += len(line) + 1
    return LayoutNode(kind=LayoutKind.PROSE, text="\n".join(lines), tokens=tokens)


def default_layout(doc: FormDocument, style: SyntaxStyle) -> list[LayoutNode]:
    """Layout for documents built in code: groups, fields, then their doc blocks."""
    docs_by_ref: dict[str, list[int]] = {}
    for index, block in enumerate(doc.docs):
        docs_by_ref.setdefault(block.ref, []).append(index)

    def doc_nodes(ref: str) -> list[LayoutNode]:
        return [LayoutNode(kind=LayoutKind.DOC, ref=str(i)) for i in docs_by_ref.get(ref, [])]

    nodes = doc_nodes(doc.form.id)
    for group in doc.form.groups:
        field_nodes: list[LayoutNode] = []
        for fld in group.fields:
            if fld.kind == "checkboxes" and fld.implicit:
                field_nodes.append(_checklist_node(fld, style))
            else:
                field_nodes.append(LayoutNode(kind=LayoutKind.FIELD, ref=fld.id))
            field_nodes.extend(doc_nodes(fld.id))
        if group.implicit:
            nodes.extend(field_nodes)
        else:
            nodes.append(
                LayoutNode(kind=LayoutKind.GROUP, ref=group.id, children=doc_nodes(group.id) + field_nodes)
            )
    return nodes


class _CanonicalWriter:
    def __init__(self, doc: FormDocument, style: SyntaxStyle) -> None:
        self._doc = doc
        self._style = style

    def _prose(self, node: LayoutNode) -> str:
        if not node.tokens:
            return node.text
        response = self._doc.response_for(PLAN_FIELD_ID)
        text = node.text
        for option_id, offset in node.tokens.items():
            text = text[:offset] + _plan_token(response, option_id) + text[offset + 3:]
        if self._style == self._doc.syntax:
            return text
        # checklist annotations are the only markers prose can hold
        for mk in reversed(scan_markers(text)):
            if mk.kind == MarkerKind.ANNOTATION:
                text = text[: mk.start] + render_annotation(self._style, mk.name) + text[mk.end:]
        return text

    def _group(self, group: Group, children: list[LayoutNode]) -> str:
        attrs: dict[str, Any] = {"id": group.id, "title": group.title or None}
        if group.order:
            attrs["order"] = group.order
        attrs["parallel"] = group.parallel
        return self._block("group", attrs, children)

    def _block(self, name: str, attrs: dict[str, Any], children: list[LayoutNode]) -> str:
        open_marker = render_marker(self._style, name, attrs)
        close_marker = render_marker(self._style, name, closing=True)
        inner = [self._node(child) for child in children]
        return "\n\n".join([open_marker, *inner, close_marker])

    def _node(self, node: LayoutNode) -> str:
        if node.kind == LayoutKind.PROSE:
            return self._prose(node)
        if node.kind == LayoutKind.GROUP:
            group = self._doc.form.get_group(node.ref)
            return self._group(group, node.children)
        if node.kind == LayoutKind.FIELD:
            fld = self._doc.get_field(node.ref)
            return render_field(fld, self._doc.response_for(fld.id), self._style)
        return render_doc_block(self._doc.docs[int(node.ref)], self._style)

    def write(self) -> str:
        doc = self._doc
        parts: list[str] = []
        if doc.frontmatter:
            dumped = yaml.safe_dump(doc.frontmatter, sort_keys=False, allow_unicode=True, default_flow_style=False)
            parts.append(f"---\n{dumped}---")
        if doc.preamble.strip():
            parts.append(doc.preamble.strip())
        layout = doc.layout or default_layout(doc, self._style)
        form_attrs = {"id": doc.form.id, "title": doc.form.title or None}
        parts.append(self._block("form", form_attrs, layout))
        if doc.postamble.strip():
            parts.append(doc.postamble.strip())
        return "\n\n".join(parts) + "\n"


def _plan_token(response: FieldResponse, option_id: str) -> str:
    state = DEFAULT_CHECKBOX_STATE[CheckboxMode.MULTI]
    if response.value is not None:
        state = response.value.values.get(option_id, state)
    return TOKEN_FOR_STATE[state]


# ---------------------------------------------------------------------------
# Splice mode
# ---------------------------------------------------------------------------

def _splice(doc: FormDocument) -> str:
    source = doc.source or ""
    edits: list[tuple[int, int, str]] = []
    for fld in doc.form.fields:
        response = doc.response_for(fld.id)
        if response == doc.baseline.get(fld.id, FieldResponse()):
            continue
        if fld.kind == "checkboxes" and fld.implicit:
            for option_id, offset in doc.plan_tokens.items():
                edits.append((offset, offset + 3, _plan_token(response, option_id)))
            continue
        start, end = doc.field_spans[fld.id]
        edits.append((start, end, render_field(fld, response, doc.syntax)))

    if edits:
        logger.debug("Regenerating %d changed regions", len(edits))
    out = source
    for start, end, replacement in sorted(edits, reverse=True):
        out = out[:start] + replacement + out[end:]
    return out


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def serialize_form(
    doc: FormDocument,
    *,
    canonical: bool = False,
    syntax: SyntaxStyle | None = None,
) -> str:
    """Render *doc* back to text.

    Parameters
    ----------
    doc
        The document to write.
    canonical
        Regenerate every block instead of splicing changed fields into the
        parsed source.
    syntax
        Marker syntax to write.  Defaults to the syntax the document was
        read in; a different syntax implies canonical mode.
    """
    style = syntax or doc.syntax
    if doc.source is not None and not canonical and style == doc.syntax:
        return _splice(doc)
    return _CanonicalWriter(doc, style).write()
