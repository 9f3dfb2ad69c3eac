"""Marker attribute grammar.

Attributes are written ``key=value`` where a value is a double-quoted
string, a number, ``true`` / ``false`` / ``null``, an array ``[a, b]`` or an
object ``{key: value}``.  Also holds the table mapping marker attribute
names to field-model attributes, shared by the parser and the serializer.
"""

from __future__ import annotations

import math
import re
from typing import Any

from ..errors import ParseError


_KEY_RE = re.compile(r"[A-Za-z_][\w-]*")
_NUMBER_RE = re.compile(r"-?\d+(\.\d+)?([eE][+-]?\d+)?")
_INT_RE = re.compile(r"-?\d+")

_ESCAPES = {'"': '"', "\\": "\\", "n": "\n", "t": "\t"}

# Leading attributes keep a fixed position; everything else is alphabetical.
_LEADING_KEYS = ("kind", "id", "ref", "label", "title")


# ---------------------------------------------------------------------------
# Reading
# ---------------------------------------------------------------------------

class _AttributeReader:
    """Recursive-descent reader over the attribute text of one marker."""

    def __init__(self, text: str, line: int, column: int) -> None:
        self._text = text
        self._pos = 0
        self._line = line
        self._column = column

    def _error(self, message: str, *, expected: str | None = None) -> ParseError:
        before = self._text[: self._pos]
        newlines = before.count("\n")
        if newlines:
            column = len(before) - before.rfind("\n")
        else:
            column = self._column + len(before)
        found = self._text[self._pos: self._pos + 12] or "end of marker"
        return ParseError(
            message, line=self._line + newlines, column=column, expected=expected, found=found
        )

    def _skip_ws(self) -> None:
        while self._pos < len(self._text) and self._text[self._pos].isspace():
            self._pos += 1

    def _peek(self) -> str:
        return self._text[self._pos] if self._pos < len(self._text) else ""

    def read_all(self) -> dict[str, Any]:
        attrs: dict[str, Any] = {}
        while True:
            self._skip_ws()
            if self._pos >= len(self._text):
                return attrs
            m = _KEY_RE.match(self._text, self._pos)
            if not m:
                raise self._error("invalid attribute", expected="attribute name")
            key = m.group(0)
            self._pos = m.end()
            self._skip_ws()
            if self._peek() != "=":
                raise self._error(f"attribute '{key}' has no value", expected="=")
            self._pos += 1
            self._skip_ws()
            if key in attrs:
                raise self._error(f"duplicate attribute '{key}'")
            attrs[key] = self._read_value()

    def _read_value(self) -> Any:
        ch = self._peek()
        if ch == '"':
            return self._read_string()
        if ch == "[":
            return self._read_array()
        if ch == "{":
            return self._read_object()
        m = _NUMBER_RE.match(self._text, self._pos)
        if m:
            self._pos = m.end()
            raw = m.group(0)
            return int(raw) if _INT_RE.fullmatch(raw) else float(raw)
        for word, value in (("true", True), ("false", False), ("null", None)):
            if self._text.startswith(word, self._pos):
                end = self._pos + len(word)
                if end >= len(self._text) or not (self._text[end].isalnum() or self._text[end] == "_"):
                    self._pos = end
                    return value
        raise self._error("invalid attribute value", expected="string, number, boolean, array or object")

    def _read_string(self) -> str:
        self._pos += 1
        out: list[str] = []
        while self._pos < len(self._text):
            ch = self._text[self._pos]
            if ch == "\\":
                nxt = self._text[self._pos + 1: self._pos + 2]
                if nxt not in _ESCAPES:
                    raise self._error("invalid escape in string", expected='\\" \\\\ \\n or \\t')
                out.append(_ESCAPES[nxt])
                self._pos += 2
                continue
            if ch == '"':
                self._pos += 1
                return "".join(out)
            out.append(ch)
            self._pos += 1
        raise self._error("unterminated string", expected='"')

    def _read_array(self) -> list[Any]:
        self._pos += 1
        items: list[Any] = []
        while True:
            self._skip_ws()
            if self._peek() == "]":
                self._pos += 1
                return items
            items.append(self._read_value())
            self._skip_ws()
            if self._peek() == ",":
                self._pos += 1
            elif self._peek() != "]":
                raise self._error("unterminated array", expected="',' or ']'")

    def _read_object(self) -> dict[str, Any]:
        self._pos += 1
        obj: dict[str, Any] = {}
        while True:
            self._skip_ws()
            if self._peek() == "}":
                self._pos += 1
                return obj
            if self._peek() == '"':
                key = self._read_string()
            else:
                m = _KEY_RE.match(self._text, self._pos)
                if not m:
                    raise self._error("invalid object key", expected="key")
                key = m.group(0)
                self._pos = m.end()
            self._skip_ws()
            if self._peek() != ":":
                raise self._error("invalid object entry", expected=":")
            self._pos += 1
            self._skip_ws()
            obj[key] = self._read_value()
            self._skip_ws()
            if self._peek() == ",":
                self._pos += 1
            elif self._peek() != "}":
                raise self._error("unterminated object", expected="',' or '}'")


def parse_attributes(text: str, *, line: int = 1, column: int = 1) -> dict[str, Any]:
    """Parse the attribute text of a marker into a dict.

    *line* and *column* locate the start of *text* so errors point at the
    offending character.
    """
    return _AttributeReader(text, line, column).read_all()


# ---------------------------------------------------------------------------
# Writing
# ---------------------------------------------------------------------------

def format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"cannot write non-finite number {value!r}")
        return repr(value)
    if isinstance(value, str):
        escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n").replace("\t", "\\t")
        return f'"{escaped}"'
    if isinstance(value, (list, tuple)):
        return "[" + ", ".join(format_value(v) for v in value) + "]"
    if isinstance(value, dict):
        entries = ", ".join(f"{k}: {format_value(value[k])}" for k in sorted(value))
        return "{" + entries + "}"
    raise TypeError(f"unsupported attribute value {value!r}")


def format_attributes(attrs: dict[str, Any]) -> str:
    """Render attributes in canonical order; ``None`` values are dropped."""
    keys = [k for k in _LEADING_KEYS if k in attrs]
    keys += sorted(k for k in attrs if k not in _LEADING_KEYS)
    return " ".join(f"{k}={format_value(attrs[k])}" for k in keys if attrs[k] is not None)


# ---------------------------------------------------------------------------
# Field attribute table
# ---------------------------------------------------------------------------

# marker attribute -> (model attribute, value type)
COMMON_FIELD_ATTRIBUTES: dict[str, tuple[str, str]] = {
    "id": ("id", "str"),
    "label": ("label", "str"),
    "required": ("required", "bool"),
    "role": ("role", "str"),
    "priority": ("priority", "int"),
    "order": ("order", "int"),
    "parallel": ("parallel", "str"),
}

KIND_FIELD_ATTRIBUTES: dict[str, dict[str, tuple[str, str]]] = {
    "string": {
        "minLength": ("min_length", "int"),
        "maxLength": ("max_length", "int"),
        "pattern": ("pattern", "str"),
    },
    "number": {
        "min": ("min", "number"),
        "max": ("max", "number"),
        "integer": ("integer", "bool"),
    },
    "string_list": {
        "minItems": ("min_items", "int"),
        "maxItems": ("max_items", "int"),
        "itemMinLength": ("item_min_length", "int"),
        "itemMaxLength": ("item_max_length", "int"),
        "uniqueItems": ("unique_items", "bool"),
    },
    "single_select": {},
    "multi_select": {
        "minSelections": ("min_selections", "int"),
        "maxSelections": ("max_selections", "int"),
    },
    "checkboxes": {
        "checkboxMode": ("checkbox_mode", "str"),
        "minDone": ("min_done", "int"),
    },
    "url": {},
    "url_list": {
        "minItems": ("min_items", "int"),
        "maxItems": ("max_items", "int"),
        "uniqueItems": ("unique_items", "bool"),
    },
    "date": {
        "min": ("min", "str"),
        "max": ("max", "str"),
    },
    "year": {
        "min": ("min", "int"),
        "max": ("max", "int"),
    },
    "table": {
        "minRows": ("min_rows", "int"),
        "maxRows": ("max_rows", "int"),
    },
}

# Table column attributes are assembled into ``columns`` rather than mapped 1:1.
TABLE_COLUMN_ATTRIBUTES = ("columnIds", "columnLabels", "columnTypes")


def check_attribute_type(value: Any, type_name: str) -> bool:
    if type_name == "str":
        return isinstance(value, str)
    if type_name == "bool":
        return isinstance(value, bool)
    if type_name == "int":
        return isinstance(value, int) and not isinstance(value, bool)
    if type_name == "number":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    return False
