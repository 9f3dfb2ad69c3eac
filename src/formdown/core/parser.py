"""Deterministic text → ``FormDocument`` parser.

Reads YAML front-matter, scans the body for structural markers in either
concrete syntax, builds the marker tree and turns it into a schema plus the
initial responses.  Any problem is a ``ParseError``; nothing is recovered
partially.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Optional

import yaml
from pydantic import ValidationError

from ..errors import ParseError
from .attributes import (
    COMMON_FIELD_ATTRIBUTES,
    KIND_FIELD_ATTRIBUTES,
    TABLE_COLUMN_ATTRIBUTES,
    check_attribute_type,
    parse_attributes,
)
from .models import (
    DEFAULT_ROLES,
    IMPLICIT_GROUP_ID,
    PLAN_FIELD_ID,
    PLAN_FIELD_LABEL,
    SELECT_TOKENS,
    AnswerState,
    CheckboxesField,
    CheckboxesValue,
    CheckboxMode,
    ColumnType,
    DateField,
    DateValue,
    DocBlock,
    DocTag,
    FieldResponse,
    FormDocument,
    FormSchema,
    Group,
    LayoutKind,
    LayoutNode,
    MultiSelectField,
    MultiSelectValue,
    NumberField,
    NumberValue,
    Option,
    SingleSelectField,
    SingleSelectValue,
    StringField,
    StringListField,
    StringListValue,
    StringValue,
    SyntaxStyle,
    TableColumn,
    TableField,
    TableValue,
    UrlField,
    UrlListField,
    UrlListValue,
    UrlValue,
    YearField,
    YearValue,
    checkbox_state_for_token,
    DEFAULT_CHECKBOX_STATE,
)
from .sentinels import Sentinel, parse_sentinel
from .syntax import (
    Marker,
    MarkerKind,
    check_consistency,
    code_regions,
    detect_syntax,
    line_and_column,
    render_annotation,
    render_marker,
    scan_markers,
)
from .tables import TableReader, parse_cell_text, parse_number

logger = logging.getLogger("formdown.parser")

CONFIG_KEY = "formdown"
SPEC_VERSION = "formdown/0.1"
HARNESS_HINT_KEYS = ("max_turns", "max_patches_per_turn", "max_issues_per_turn", "max_parallel_agents")
_CONFIG_KEYS = ("spec", "roles", "role_instructions", "harness")

_DOC_TAGS = {tag.value for tag in DocTag}
_KNOWN_TAGS = {"form", "group", "field"} | _DOC_TAGS
_ALLOWED_CHILDREN: dict[str, set[str]] = {
    "form": {"group", "field"} | _DOC_TAGS,
    "group": {"field"} | _DOC_TAGS,
    "field": set(),
    **{tag: set() for tag in _DOC_TAGS},
}

_FIELD_MODELS: dict[str, type] = {
    "string": StringField,
    "number": NumberField,
    "string_list": StringListField,
    "single_select": SingleSelectField,
    "multi_select": MultiSelectField,
    "checkboxes": CheckboxesField,
    "url": UrlField,
    "url_list": UrlListField,
    "date": DateField,
    "year": YearField,
    "table": TableField,
}
_SELECTOR_KINDS = {"single_select", "multi_select", "checkboxes"}
_STATE_VALUES = {"answered", "skipped", "aborted"}

_FRONTMATTER_CLOSE_RE = re.compile(r"^---[ \t]*$", re.MULTILINE)
_FENCE_OPEN_RE = re.compile(r"^ {0,3}(`{3,}|~{3,})\s*(\S*)\s*$")
_OPTION_RE = re.compile(r"^\s*[-*+]\s+(?P<token>\[[^\]]\])")
_CHECKLIST_RE = _OPTION_RE
_ISO_DATE_RE = re.compile(r"\d{4}-\d{2}-\d{2}")
_INT_RE = re.compile(r"[-+]?\d+")


# ---------------------------------------------------------------------------
# Marker tree
# ---------------------------------------------------------------------------

@dataclass
class _Element:
    """An opened (and closed) marker pair with its nested elements."""

    name: str
    attrs: dict[str, Any]
    open: Marker
    close: Optional[Marker] = None
    children: list["_Element"] = field(default_factory=list)
    annotations: list[Marker] = field(default_factory=list)

    @property
    def start(self) -> int:
        return self.open.start

    @property
    def end(self) -> int:
        return self.close.end if self.close else self.open.end

    @property
    def content_start(self) -> int:
        return self.open.end

    @property
    def content_end(self) -> int:
        return self.close.start if self.close else self.open.end

    def error(self, message: str, **kwargs: Any) -> ParseError:
        return ParseError(message, line=self.open.line, column=self.open.column, **kwargs)


@dataclass
class _Fence:
    info: str
    body: str
    line: int


@dataclass
class _Line:
    start: int
    text: str


def _build_tree(markers: list[Marker], style: SyntaxStyle) -> list[_Element]:
    roots: list[_Element] = []
    stack: list[_Element] = []
    for mk in markers:
        if mk.kind == MarkerKind.ANNOTATION:
            if not stack:
                raise ParseError(
                    "option annotation outside a form", line=mk.line, column=mk.column, found=mk.describe()
                )
            stack[-1].annotations.append(mk)
            continue

        if mk.name not in _KNOWN_TAGS:
            raise ParseError(
                f"unknown marker '{mk.name}'",
                line=mk.line,
                column=mk.column,
                expected=", ".join(sorted(_KNOWN_TAGS)),
                found=mk.name,
            )

        if mk.kind == MarkerKind.CLOSE:
            if not stack:
                raise ParseError(
                    "closing marker without an opening marker",
                    line=mk.line, column=mk.column, found=mk.describe(),
                )
            top = stack[-1]
            if top.name != mk.name:
                raise ParseError(
                    "mismatched closing marker",
                    line=mk.line,
                    column=mk.column,
                    expected=render_marker(style, top.name, closing=True),
                    found=mk.describe(),
                )
            top.close = mk
            stack.pop()
            continue

        attrs = parse_attributes(mk.attrs_text, line=mk.line, column=mk.attrs_offset)
        element = _Element(mk.name, attrs, mk)
        if stack:
            parent = stack[-1]
            if mk.name not in _ALLOWED_CHILDREN[parent.name]:
                raise ParseError(
                    f"'{mk.name}' is not allowed inside '{parent.name}'",
                    line=mk.line, column=mk.column, found=mk.name,
                )
            parent.children.append(element)
        else:
            roots.append(element)
        if mk.kind == MarkerKind.OPEN:
            stack.append(element)

    if stack:
        unclosed = stack[-1]
        raise unclosed.error(
            f"'{unclosed.name}' is never closed",
            expected=render_marker(style, unclosed.name, closing=True),
            found="end of document",
        )
    return roots


# ---------------------------------------------------------------------------
# Front-matter
# ---------------------------------------------------------------------------

def _split_frontmatter(text: str) -> tuple[dict[str, Any], int]:
    """Return the front-matter mapping and the offset where the body starts."""
    if not text.startswith("---\n"):
        return {}, 0
    close = _FRONTMATTER_CLOSE_RE.search(text, 4)
    if close is None:
        raise ParseError("front-matter is never closed", line=1, column=1, expected="---")
    raw = text[4: close.start()]
    try:
        data = yaml.safe_load(raw) if raw.strip() else {}
    except yaml.YAMLError as exc:
        mark = getattr(exc, "problem_mark", None)
        line = mark.line + 2 if mark is not None else 1
        problem = getattr(exc, "problem", None) or str(exc)
        raise ParseError(f"malformed front-matter: {problem}", line=line) from exc
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ParseError("front-matter must be a mapping", line=2, found=type(data).__name__)
    body_start = close.end()
    if text[body_start: body_start + 1] == "\n":
        body_start += 1
    return data, body_start


def _read_form_config(frontmatter: dict[str, Any]) -> tuple[list[str], dict[str, str], dict[str, int]]:
    """Extract roles, per-role instructions and harness hints."""
    cfg = frontmatter.get(CONFIG_KEY) or {}
    if not isinstance(cfg, dict):
        raise ParseError(f"front-matter '{CONFIG_KEY}' must be a mapping", line=2)
    for key in cfg:
        if key not in _CONFIG_KEYS:
            raise ParseError(
                f"unknown front-matter key '{CONFIG_KEY}.{key}'",
                line=2, expected=", ".join(_CONFIG_KEYS), found=str(key),
            )

    roles = cfg.get("roles", list(DEFAULT_ROLES))
    if (
        not isinstance(roles, list)
        or not roles
        or not all(isinstance(r, str) and r for r in roles)
        or len(set(roles)) != len(roles)
    ):
        raise ParseError("'roles' must be a list of distinct role names", line=2)

    instructions = cfg.get("role_instructions") or {}
    if not isinstance(instructions, dict) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in instructions.items()
    ):
        raise ParseError("'role_instructions' must map role names to text", line=2)
    for role in instructions:
        if role not in roles:
            raise ParseError(f"instructions given for undeclared role '{role}'", line=2, found=role)

    harness = cfg.get("harness") or {}
    if not isinstance(harness, dict):
        raise ParseError("'harness' must be a mapping", line=2)
    hints: dict[str, int] = {}
    for key, value in harness.items():
        if key not in HARNESS_HINT_KEYS:
            raise ParseError(
                f"unknown harness hint '{key}'",
                line=2, expected=", ".join(HARNESS_HINT_KEYS), found=str(key),
            )
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise ParseError(f"harness hint '{key}' must be a positive integer", line=2, found=repr(value))
        hints[key] = value
    return list(roles), dict(instructions), hints


# ---------------------------------------------------------------------------
# Field content helpers
# ---------------------------------------------------------------------------

def _content_lines(text: str, start: int, end: int) -> list[_Line]:
    lines: list[_Line] = []
    pos = start
    for raw in text[start:end].splitlines(keepends=True):
        lines.append(_Line(pos, raw.rstrip("\n")))
        pos += len(raw)
    return lines


def _split_fence(el: _Element, text: str) -> tuple[Optional[_Fence], list[_Line]]:
    """Separate the value fence of a field from the rest of its content."""
    lines = _content_lines(text, el.content_start, el.content_end)
    fence: Optional[_Fence] = None
    rest: list[_Line] = []
    i = 0
    while i < len(lines):
        line = lines[i]
        m = _FENCE_OPEN_RE.match(line.text)
        if not m:
            rest.append(line)
            i += 1
            continue
        marker = m.group(1)
        info = m.group(2)
        fence_line = line_and_column(text, line.start)[0]
        if fence is not None:
            raise ParseError("field has more than one value block", line=fence_line)
        if info != "value":
            raise ParseError(
                "unexpected code block in field", line=fence_line,
                expected=f"{marker[0] * 3}value", found=line.text.strip(),
            )
        body: list[str] = []
        i += 1
        closed = False
        while i < len(lines):
            stripped = lines[i].text.strip()
            if stripped and set(stripped) == {marker[0]} and len(stripped) >= len(marker):
                closed = True
                i += 1
                break
            body.append(lines[i].text)
            i += 1
        if not closed:
            raise ParseError("value block is never closed", line=fence_line, expected=marker)
        fence = _Fence(info=info, body="\n".join(body), line=fence_line)
    return fence, rest


def _is_iso_date(value: str) -> bool:
    if not _ISO_DATE_RE.fullmatch(value):
        return False
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

class FormParser:
    """Parse form documents written in either marker syntax."""

    def __init__(self) -> None:
        self._tables = TableReader()

    def parse(self, text: str) -> FormDocument:
        """Parse *text* into a ``FormDocument``.

        Parameters
        ----------
        text
            Document text: optional YAML front-matter followed by a markdown
            body holding exactly one form.
        """
        text = text.replace("\r\n", "\n")
        frontmatter, body_start = _split_frontmatter(text)
        roles, role_instructions, hints = _read_form_config(frontmatter)

        markers = scan_markers(text, body_start)
        style = detect_syntax(markers)
        check_consistency(markers, style)

        roots = _build_tree(markers, style)
        forms = [el for el in roots if el.name == "form"]
        for el in roots:
            if el.name != "form":
                raise el.error(f"'{el.name}' must be inside a form", expected="form", found=el.name)
        if not forms:
            raise ParseError(
                "no form marker found",
                line=line_and_column(text, body_start)[0],
                expected=render_marker(style, "form"),
            )
        if len(forms) > 1:
            raise forms[1].error("document holds more than one form", found="form")

        state = _ParseState(text=text, style=style, roles=roles, tables=self._tables)
        doc = state.build(forms[0], role_instructions, hints)
        doc.frontmatter = frontmatter
        doc.preamble = text[body_start: forms[0].start]
        doc.postamble = text[forms[0].end:]
        doc.source = text
        doc.baseline = {fid: resp.model_copy(deep=True) for fid, resp in doc.responses.items()}
        logger.debug(
            "Parsed form '%s': %d fields, %s syntax", doc.form.id, len(doc.form.fields), style.value
        )
        return doc


@dataclass
class _ParseState:
    """Working state for one parse call."""

    text: str
    style: SyntaxStyle
    roles: list[str]
    tables: TableReader
    seen_ids: dict[str, Marker] = field(default_factory=dict)
    responses: dict[str, FieldResponse] = field(default_factory=dict)
    field_spans: dict[str, tuple[int, int]] = field(default_factory=dict)
    plan_tokens: dict[str, int] = field(default_factory=dict)
    docs: list[DocBlock] = field(default_factory=list)
    doc_elements: dict[int, int] = field(default_factory=dict)    # element start -> doc index

    # -- ids -----------------------------------------------------------------

    def _claim_id(self, el: _Element, value: str) -> None:
        if value in self.seen_ids:
            first = self.seen_ids[value]
            raise el.error(f"duplicate id '{value}' (first used on line {first.line})", found=value)
        self.seen_ids[value] = el.open

    def _require_str(self, el: _Element, key: str) -> str:
        value = el.attrs.get(key)
        if not isinstance(value, str) or not value:
            raise el.error(f"'{el.name}' is missing required '{key}'", expected=f'{key}="..."')
        return value

    @staticmethod
    def _check_attrs(el: _Element, allowed: set[str]) -> None:
        for key in el.attrs:
            if key not in allowed:
                raise el.error(
                    f"unknown attribute '{key}' on '{el.name}'",
                    expected=", ".join(sorted(allowed)),
                    found=key,
                )

    # -- form ----------------------------------------------------------------

    def build(
        self, form_el: _Element, role_instructions: dict[str, str], hints: dict[str, int]
    ) -> FormDocument:
        self._check_attrs(form_el, {"id", "title"})
        form_id = self._require_str(form_el, "id")
        self._claim_id(form_el, form_id)
        title = form_el.attrs.get("title", "")
        if not isinstance(title, str):
            raise form_el.error("'title' must be a string")

        groups: list[Group] = []
        implicit: Optional[Group] = None
        for child in form_el.children:
            if child.name == "group":
                groups.append(self._parse_group(child))
            elif child.name == "field":
                if implicit is None:
                    implicit = Group(id=IMPLICIT_GROUP_ID, implicit=True)
                    self._claim_id(child, IMPLICIT_GROUP_ID)
                    groups.append(implicit)
                implicit.fields.append(self._parse_field(child, in_group=False))
            else:
                self._parse_doc(child)

        has_fields = any(g.fields for g in groups)
        if not has_fields:
            plan = self._parse_plan_field(form_el)
            if plan is not None:
                groups.append(Group(id=IMPLICIT_GROUP_ID, implicit=True, fields=[plan]))
        elif form_el.annotations:
            raise self._stray_annotation(form_el.annotations[0])

        schema = FormSchema(
            id=form_id,
            title=title,
            groups=groups,
            roles=self.roles,
            role_instructions=role_instructions,
            harness_hints=hints,
        )
        self._check_docs(schema)
        self._check_parallel(schema)

        layout = self._layout(form_el)
        return FormDocument(
            form=schema,
            responses=self.responses,
            docs=self.docs,
            syntax=self.style,
            layout=layout,
            field_spans=self.field_spans,
            plan_tokens=self.plan_tokens,
        )

    def _stray_annotation(self, mk: Marker) -> ParseError:
        return ParseError(
            "option annotation outside a field", line=mk.line, column=mk.column, found=mk.describe()
        )

    # -- groups --------------------------------------------------------------

    def _parse_group(self, el: _Element) -> Group:
        self._check_attrs(el, {"id", "title", "order", "parallel"})
        group_id = self._require_str(el, "id")
        self._claim_id(el, group_id)
        attrs = el.attrs
        title = attrs.get("title", "")
        order = attrs.get("order", 0)
        parallel = attrs.get("parallel")
        if not isinstance(title, str):
            raise el.error("'title' must be a string")
        if not check_attribute_type(order, "int"):
            raise el.error("'order' must be an integer", found=repr(order))
        if parallel is not None and (not isinstance(parallel, str) or not parallel):
            raise el.error("'parallel' must be a non-empty string", found=repr(parallel))

        if el.annotations:
            raise self._stray_annotation(el.annotations[0])
        fields = []
        for child in el.children:
            if child.name == "field":
                fields.append(self._parse_field(child, in_group=True))
            else:
                self._parse_doc(child)
        if not fields:
            raise el.error(f"group '{group_id}' has no fields", expected="field")
        return Group(id=group_id, title=title, order=order, parallel=parallel, fields=fields)

    # -- documentation blocks ------------------------------------------------

    def _parse_doc(self, el: _Element) -> None:
        self._check_attrs(el, {"ref"})
        ref = self._require_str(el, "ref")
        tag = DocTag(el.name)
        for existing in self.docs:
            if existing.tag == tag and existing.ref == ref:
                raise el.error(f"duplicate '{el.name}' block for '{ref}'", found=ref)
        if el.annotations:
            raise self._stray_annotation(el.annotations[0])
        body = self.text[el.content_start: el.content_end].strip()
        self.doc_elements[el.start] = len(self.docs)
        self.docs.append(DocBlock(tag=tag, ref=ref, body=body))

    def _check_docs(self, schema: FormSchema) -> None:
        known = {schema.id} | {g.id for g in schema.groups} | {f.id for f in schema.fields}
        for block in self.docs:
            if block.ref not in known:
                raise ParseError(
                    f"'{block.tag.value}' block references unknown id '{block.ref}'",
                    expected="a form, group or field id",
                    found=block.ref,
                )

    # -- parallel batches ----------------------------------------------------

    @staticmethod
    def _check_parallel(schema: FormSchema) -> None:
        batches: dict[str, list[tuple[int, Optional[str], str]]] = {}
        for group in schema.groups:
            if group.implicit:
                for fld in group.fields:
                    if fld.parallel:
                        batches.setdefault(fld.parallel, []).append((fld.order or 0, fld.role, fld.id))
            elif group.parallel:
                batches.setdefault(group.parallel, []).append((group.order, None, group.id))
        for key, items in batches.items():
            if len({order for order, _, _ in items}) > 1:
                raise ParseError(
                    f"parallel batch '{key}' mixes items with different order values",
                    found=", ".join(item_id for _, _, item_id in items),
                )
            roles = {role for _, role, _ in items if role is not None}
            if len(roles) > 1:
                raise ParseError(
                    f"parallel batch '{key}' mixes fields with different roles",
                    found=", ".join(sorted(roles)),
                )

    # -- fields --------------------------------------------------------------

    def _parse_field(self, el: _Element, *, in_group: bool) -> Any:
        attrs = el.attrs
        kind = attrs.get("kind")
        if kind not in _FIELD_MODELS:
            raise el.error(
                "field has an unknown or missing kind",
                expected=", ".join(_FIELD_MODELS),
                found=repr(kind),
            )
        kind_attrs = KIND_FIELD_ATTRIBUTES[kind]
        allowed = {"kind", "state", *COMMON_FIELD_ATTRIBUTES, *kind_attrs}
        if kind == "table":
            allowed.update(TABLE_COLUMN_ATTRIBUTES)
        self._check_attrs(el, allowed)

        field_id = self._require_str(el, "id")
        self._require_str(el, "label")
        self._claim_id(el, field_id)

        values: dict[str, Any] = {}
        for key, value in attrs.items():
            if key in ("kind", "state") or key in TABLE_COLUMN_ATTRIBUTES:
                continue
            name, type_name = COMMON_FIELD_ATTRIBUTES.get(key) or kind_attrs[key]
            if not check_attribute_type(value, type_name):
                raise el.error(f"attribute '{key}' must be of type {type_name}", found=repr(value))
            values[name] = value

        if in_group and ("order" in values or "parallel" in values):
            raise el.error(
                f"field '{field_id}' sets order/parallel inside a group; set them on the group"
            )
        if values.get("role", "agent") not in self.roles:
            raise el.error(
                f"field '{field_id}' uses undeclared role", expected=", ".join(self.roles),
                found=values.get("role", "agent"),
            )
        if kind == "checkboxes" and values.get("checkbox_mode") == CheckboxMode.EXPLICIT.value:
            if values.get("required") is False:
                raise el.error(f"explicit checkbox field '{field_id}' is always required")
            values["required"] = True
        if kind == "string" and values.get("pattern") is not None:
            try:
                re.compile(values["pattern"])
            except re.error as exc:
                raise el.error(f"invalid pattern on '{field_id}': {exc}") from exc
        if kind == "date":
            for bound in ("min", "max"):
                if values.get(bound) is not None and not _is_iso_date(values[bound]):
                    raise el.error(f"'{bound}' on '{field_id}' must be a YYYY-MM-DD date")

        fence, rest = _split_fence(el, self.text)
        sentinel: Optional[Sentinel] = None
        if fence is not None and kind in _SELECTOR_KINDS | {"table"}:
            sentinel = self._fence_sentinel(el, fence, must=True)
        elif fence is not None:
            sentinel = self._fence_sentinel(el, fence, must=False)

        if kind in _SELECTOR_KINDS:
            values["options"], tokens = self._parse_options(el, rest)
            fld = self._make_field(el, kind, values)
            value = self._selector_value(el, fld, tokens)
        elif kind == "table":
            if el.annotations:
                raise self._stray_annotation(el.annotations[0])
            fld, value = self._parse_table_field(el, values, rest)
        else:
            if el.annotations:
                raise self._stray_annotation(el.annotations[0])
            for line in rest:
                if line.text.strip():
                    raise ParseError(
                        f"unexpected text in field '{field_id}'",
                        line=line_and_column(self.text, line.start)[0],
                        expected="a ```value block",
                        found=line.text.strip(),
                    )
            fld = self._make_field(el, kind, values)
            body = fence.body if fence is not None and sentinel is None else ""
            value = self._scalar_value(el, kind, body)

        self.responses[field_id] = self._response(el, fld, value, sentinel)
        self.field_spans[field_id] = (el.start, el.end)
        return fld

    @staticmethod
    def _make_field(el: _Element, kind: str, values: dict[str, Any]) -> Any:
        try:
            return _FIELD_MODELS[kind](**values)
        except ValidationError as exc:
            err = exc.errors()[0]
            where = ".".join(str(p) for p in err.get("loc", ()))
            raise el.error(f"invalid field definition: {where}: {err['msg']}") from exc

    def _fence_sentinel(self, el: _Element, fence: _Fence, *, must: bool) -> Optional[Sentinel]:
        try:
            sentinel = parse_sentinel(fence.body)
        except ValueError as exc:
            raise ParseError(str(exc), line=fence.line, expected="%SKIP% or %ABORT%") from exc
        if sentinel is None and must:
            raise ParseError(
                f"value block in '{el.attrs.get('id')}' may only hold a skip or abort sentinel",
                line=fence.line, expected="%SKIP% or %ABORT%", found=fence.body.strip()[:40],
            )
        return sentinel

    def _scalar_value(self, el: _Element, kind: str, body: str) -> Any:
        text = body.strip()
        if not text:
            return None
        field_id = el.attrs["id"]
        if kind == "string":
            return StringValue(value=body)
        if kind == "number":
            number = parse_number(text)
            if number is None:
                raise el.error(f"value of number field '{field_id}' is not a number", found=text)
            return NumberValue(value=number)
        if kind in ("string_list", "url_list"):
            items = [ln.strip() for ln in body.splitlines() if ln.strip()]
            return StringListValue(items=items) if kind == "string_list" else UrlListValue(items=items)
        if kind == "url":
            return UrlValue(value=text)
        if kind == "date":
            return DateValue(value=text)
        if not _INT_RE.fullmatch(text):
            raise el.error(f"value of year field '{field_id}' is not an integer", found=text)
        return YearValue(value=int(text))

    # -- options -------------------------------------------------------------

    def _parse_options(self, el: _Element, lines: list[_Line]) -> tuple[list[Option], list[str]]:
        options: list[Option] = []
        tokens: list[str] = []
        used: set[int] = set()
        for line in lines:
            if not line.text.strip():
                continue
            line_no = line_and_column(self.text, line.start)[0]
            m = _OPTION_RE.match(line.text)
            if not m:
                raise ParseError(
                    f"unexpected text in field '{el.attrs['id']}'",
                    line=line_no,
                    expected=f"- [ ] Label {render_annotation(self.style, 'id')}",
                    found=line.text.strip(),
                )
            end = line.start + len(line.text)
            on_line = [
                (i, mk) for i, mk in enumerate(el.annotations) if line.start <= mk.start < end
            ]
            if len(on_line) != 1:
                raise ParseError(
                    "option needs exactly one id annotation",
                    line=line_no,
                    expected=render_annotation(self.style, "option_id"),
                    found=line.text.strip(),
                )
            index, mk = on_line[0]
            used.add(index)
            token_end = line.start + m.end("token")
            if mk.start < token_end or self.text[mk.end: end].strip():
                raise ParseError(
                    "option annotation must end the option line",
                    line=line_no, column=mk.column, found=line.text.strip(),
                )
            label = self.text[token_end: mk.start].strip()
            if any(opt.id == mk.name for opt in options):
                raise ParseError(f"duplicate option id '{mk.name}'", line=line_no, found=mk.name)
            options.append(Option(id=mk.name, label=label))
            tokens.append(m.group("token"))
        for i, mk in enumerate(el.annotations):
            if i not in used:
                raise self._stray_annotation(mk)
        if not options:
            raise el.error(f"field '{el.attrs['id']}' declares no options", expected="- [ ] Option")
        return options, tokens

    def _selector_value(self, el: _Element, fld: Any, tokens: list[str]) -> Any:
        if fld.kind == "checkboxes":
            states = {}
            for opt, token in zip(fld.options, tokens):
                state = checkbox_state_for_token(token, fld.checkbox_mode)
                if state is None:
                    raise el.error(
                        f"token {token} is not valid in {fld.checkbox_mode.value} checkbox mode",
                        found=token,
                    )
                states[opt.id] = state
            default = DEFAULT_CHECKBOX_STATE[fld.checkbox_mode]
            if all(state == default for state in states.values()):
                return None
            return CheckboxesValue(values=states)

        selected = []
        for opt, token in zip(fld.options, tokens):
            if token not in SELECT_TOKENS:
                raise el.error(f"token {token} is not valid in a select field", expected="[ ] or [x]", found=token)
            if SELECT_TOKENS[token]:
                selected.append(opt.id)
        if not selected:
            return None
        if fld.kind == "single_select":
            if len(selected) > 1:
                raise el.error(
                    f"single-select field '{fld.id}' has {len(selected)} selected options",
                    expected="at most one [x]",
                )
            return SingleSelectValue(selected=selected[0])
        return MultiSelectValue(selected=selected)

    # -- tables --------------------------------------------------------------

    def _parse_columns(self, el: _Element) -> tuple[list[str], Optional[list[str]], list[tuple[ColumnType, bool]]]:
        attrs = el.attrs
        ids = attrs.get("columnIds")
        if not isinstance(ids, list) or not ids or not all(isinstance(i, str) and i for i in ids):
            raise el.error("table field needs 'columnIds' as a list of ids", expected='columnIds=["a", "b"]')
        if len(set(ids)) != len(ids):
            raise el.error("duplicate column id in 'columnIds'")
        labels = attrs.get("columnLabels")
        if labels is not None and (
            not isinstance(labels, list)
            or len(labels) != len(ids)
            or not all(isinstance(lbl, str) for lbl in labels)
        ):
            raise el.error("'columnLabels' must list one label per column")
        raw_types = attrs.get("columnTypes")
        if raw_types is None:
            raw_types = ["string"] * len(ids)
        if not isinstance(raw_types, list) or len(raw_types) != len(ids):
            raise el.error("'columnTypes' must list one type per column")
        types: list[tuple[ColumnType, bool]] = []
        for entry in raw_types:
            required = False
            type_name = entry
            if isinstance(entry, dict):
                if set(entry) - {"type", "required"} or not isinstance(entry.get("required", False), bool):
                    raise el.error("column type objects take 'type' and 'required'", found=repr(entry))
                type_name = entry.get("type", "string")
                required = entry.get("required", False)
            try:
                types.append((ColumnType(type_name), required))
            except ValueError:
                raise el.error(
                    "unknown column type", expected=", ".join(t.value for t in ColumnType), found=repr(type_name)
                ) from None
        return ids, labels, types

    def _parse_table_field(self, el: _Element, values: dict[str, Any], lines: list[_Line]) -> tuple[Any, Any]:
        ids, labels, types = self._parse_columns(el)
        table_lines = [ln for ln in lines if ln.text.strip()]
        headers: list[str] = []
        raw_rows: list[list[str]] = []
        if table_lines:
            table_text = "\n".join(ln.text for ln in table_lines)
            first_line = line_and_column(self.text, table_lines[0].start)[0]
            try:
                headers, raw_rows = self.tables.read(table_text)
            except ValueError as exc:
                raise ParseError(
                    f"table in field '{el.attrs['id']}': {exc}", line=first_line, found=table_lines[0].text.strip()
                ) from exc
            expected = labels if labels is not None else None
            if len(headers) != len(ids) or (expected is not None and headers != expected):
                raise ParseError(
                    f"table header of '{el.attrs['id']}' does not match its columns",
                    line=first_line,
                    expected=" | ".join(expected or ids),
                    found=" | ".join(headers),
                )
        if labels is None:
            labels = headers if headers else list(ids)

        values["columns"] = [
            TableColumn(id=cid, label=label, type=ctype, required=required)
            for cid, label, (ctype, required) in zip(ids, labels, types)
        ]
        fld = self._make_field(el, "table", values)
        if not raw_rows:
            return fld, None
        rows = []
        for raw in raw_rows:
            row = {}
            for col, cell_text in zip(fld.columns, raw):
                try:
                    cell = parse_cell_text(cell_text, col)
                except ValueError as exc:
                    raise el.error(f"table '{fld.id}': {exc}", found=cell_text) from exc
                if cell is not None:
                    row[col.id] = cell
            rows.append(row)
        return fld, TableValue(rows=rows)

    # -- plan documents ------------------------------------------------------

    def _parse_plan_field(self, form_el: _Element) -> Optional[CheckboxesField]:
        """Wrap checklist items in a field-less form into the synthetic checklist."""
        regions = code_regions(self.text, form_el.content_start)
        items: list[tuple[_Line, str]] = []
        for start, end in self._prose_gaps(form_el):
            for line in _content_lines(self.text, start, end):
                m = _CHECKLIST_RE.match(line.text)
                if not m:
                    continue
                if any(r_start <= line.start < r_end for r_start, r_end in regions):
                    continue
                items.append((line, m.group("token")))
        if not items:
            if form_el.annotations:
                raise self._stray_annotation(form_el.annotations[0])
            return None

        options: list[Option] = []
        tokens: list[str] = []
        used: set[int] = set()
        for line, token in items:
            end = line.start + len(line.text)
            line_no = line_and_column(self.text, line.start)[0]
            on_line = [(i, mk) for i, mk in enumerate(form_el.annotations) if line.start <= mk.start < end]
            if len(on_line) != 1:
                raise ParseError(
                    "checklist item needs exactly one id annotation",
                    line=line_no,
                    expected=render_annotation(self.style, "item_id"),
                    found=line.text.strip(),
                )
            index, mk = on_line[0]
            used.add(index)
            token_at = line.start + _CHECKLIST_RE.match(line.text).start("token")
            label = self.text[token_at + 3: mk.start].strip()
            if mk.name in self.seen_ids or any(opt.id == mk.name for opt in options):
                raise ParseError(f"duplicate id '{mk.name}'", line=line_no, found=mk.name)
            state = checkbox_state_for_token(token, CheckboxMode.MULTI)
            if state is None:
                raise ParseError(
                    f"token {token} is not valid in multi checkbox mode", line=line_no, found=token
                )
            options.append(Option(id=mk.name, label=label))
            tokens.append(token)
            self.plan_tokens[mk.name] = token_at
        for i, mk in enumerate(form_el.annotations):
            if i not in used:
                raise self._stray_annotation(mk)

        if PLAN_FIELD_ID in self.seen_ids:
            raise form_el.error(f"id '{PLAN_FIELD_ID}' is reserved for plan checklists", found=PLAN_FIELD_ID)
        self.seen_ids[PLAN_FIELD_ID] = form_el.open
        if IMPLICIT_GROUP_ID in self.seen_ids:
            raise form_el.error(f"id '{IMPLICIT_GROUP_ID}' is reserved", found=IMPLICIT_GROUP_ID)
        self.seen_ids[IMPLICIT_GROUP_ID] = form_el.open

        fld = CheckboxesField(
            id=PLAN_FIELD_ID,
            label=PLAN_FIELD_LABEL,
            required=True,
            options=options,
            implicit=True,
        )
        states = {opt.id: checkbox_state_for_token(tok, CheckboxMode.MULTI) for opt, tok in zip(options, tokens)}
        value = None
        if any(state != DEFAULT_CHECKBOX_STATE[CheckboxMode.MULTI] for state in states.values()):
            value = CheckboxesValue(values=states)
        self.responses[PLAN_FIELD_ID] = FieldResponse.answered(value) if value else FieldResponse()
        logger.debug("Wrapped %d checklist items into plan field '%s'", len(options), PLAN_FIELD_ID)
        return fld

    # -- responses -----------------------------------------------------------

    def _response(self, el: _Element, fld: Any, value: Any, sentinel: Optional[Sentinel]) -> FieldResponse:
        declared = el.attrs.get("state")
        if declared is not None and declared not in _STATE_VALUES:
            raise el.error("invalid 'state'", expected=", ".join(sorted(_STATE_VALUES)), found=repr(declared))

        if sentinel is not None:
            if declared is not None and declared != sentinel.state.value:
                raise el.error(
                    f"state=\"{declared}\" conflicts with the {sentinel.state.value} sentinel in '{fld.id}'"
                )
            state = sentinel.state
        elif declared in ("skipped", "aborted"):
            state = AnswerState(declared)
        elif value is not None:
            state = AnswerState.ANSWERED
        elif declared == "answered":
            raise el.error(f"field '{fld.id}' is marked answered but has no value")
        else:
            state = AnswerState.UNANSWERED

        if state in (AnswerState.SKIPPED, AnswerState.ABORTED) and value is not None:
            raise el.error(f"{state.value} field '{fld.id}' cannot also carry a value")
        if state == AnswerState.SKIPPED and fld.required:
            raise el.error(f"required field '{fld.id}' cannot be skipped")

        reason = sentinel.reason if sentinel is not None else None
        if state == AnswerState.ANSWERED:
            return FieldResponse.answered(value)
        if state == AnswerState.SKIPPED:
            return FieldResponse.skipped(reason)
        if state == AnswerState.ABORTED:
            return FieldResponse.aborted(reason)
        return FieldResponse()

    # -- layout --------------------------------------------------------------

    def _prose_gaps(self, el: _Element) -> list[tuple[int, int]]:
        gaps = []
        pos = el.content_start
        for child in el.children:
            gaps.append((pos, child.start))
            pos = child.end
        gaps.append((pos, el.content_end))
        return gaps

    def _prose_node(self, start: int, end: int) -> Optional[LayoutNode]:
        gap = self.text[start:end]
        if not gap.strip():
            return None
        lead = len(gap) - len(gap.lstrip())
        text_start = start + lead
        tokens = {
            opt_id: offset - text_start
            for opt_id, offset in self.plan_tokens.items()
            if start <= offset < end
        }
        return LayoutNode(kind=LayoutKind.PROSE, text=gap.strip(), tokens=tokens)

    def _layout(self, el: _Element) -> list[LayoutNode]:
        nodes: list[LayoutNode] = []
        gaps = self._prose_gaps(el)
        for child, (gap_start, gap_end) in zip(el.children, gaps):
            prose = self._prose_node(gap_start, gap_end)
            if prose is not None:
                nodes.append(prose)
            if child.name == "group":
                nodes.append(LayoutNode(kind=LayoutKind.GROUP, ref=child.attrs["id"], children=self._layout(child)))
            elif child.name == "field":
                nodes.append(LayoutNode(kind=LayoutKind.FIELD, ref=child.attrs["id"]))
            else:
                nodes.append(LayoutNode(kind=LayoutKind.DOC, ref=str(self.doc_elements[child.start])))
        tail = self._prose_node(*gaps[-1])
        if tail is not None:
            nodes.append(tail)
        return nodes


def parse_form(text: str) -> FormDocument:
    """Parse *text* into a ``FormDocument`` (see ``FormParser.parse``)."""
    return FormParser().parse(text)
