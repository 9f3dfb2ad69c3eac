"""Pipe tables inside table fields.

Uses *mistune 3.x* with the ``table`` plugin to split the table into header
and body cells, then types each cell by its column.  Writing goes the other
way: escaped cell text, a ``| --- |`` separator and one line per row.
"""

from __future__ import annotations

import math
import re
from typing import Any, Optional, Union

import mistune
from pydantic import ValidationError

from .models import AnswerState, Cell, ColumnType, TableColumn
from .sentinels import format_sentinel, parse_sentinel

_INT_RE = re.compile(r"[-+]?\d+")
_FLOAT_RE = re.compile(r"[-+]?(\d+\.\d*|\.\d+|\d+)([eE][-+]?\d+)?")


def parse_number(text: str) -> Optional[Union[int, float]]:
    """Parse an integer or decimal literal; ``None`` when *text* is not one."""
    text = text.strip()
    if _INT_RE.fullmatch(text):
        return int(text)
    if _FLOAT_RE.fullmatch(text):
        value = float(text)
        return value if math.isfinite(value) else None
    return None


# ---------------------------------------------------------------------------
# AST helpers
# ---------------------------------------------------------------------------

def _inline_markdown(node: Any) -> str:
    """Rebuild inline markdown text from a mistune AST node."""
    if isinstance(node, str):
        return node

    children = node.get("children")
    inner = ""
    if isinstance(children, list):
        inner = "".join(_inline_markdown(child) for child in children)
    elif isinstance(children, str):
        inner = children

    ntype = node.get("type", "")
    if ntype == "emphasis":
        return f"*{inner}*"
    if ntype == "strong":
        return f"**{inner}**"
    if ntype == "codespan":
        return f"`{node.get('raw', node.get('text', ''))}`"
    if ntype in ("link", "image"):
        url = node.get("attrs", {}).get("url", "")
        prefix = "!" if ntype == "image" else ""
        return f"{prefix}[{inner}]({url})"
    if ntype in ("softbreak", "linebreak"):
        return " "
    if "raw" in node:
        return node["raw"]
    if "text" in node:
        return node["text"]
    return inner


def _row_cells(row_children: list[dict]) -> list[str]:
    return [_inline_markdown(cell).strip() for cell in row_children]


class TableReader:
    """Split pipe-table text into header labels and raw body cells."""

    def __init__(self) -> None:
        self._md = mistune.create_markdown(renderer="ast", plugins=["table"])

    def read(self, text: str) -> tuple[list[str], list[list[str]]]:
        """Return ``(headers, rows)``.

        Raises ``ValueError`` when *text* is not exactly one well-formed table.
        """
        nodes = [n for n in self._md(text.rstrip("\n") + "\n") if n.get("type") != "blank_line"]
        if len(nodes) != 1 or nodes[0].get("type") != "table":
            raise ValueError("expected a single pipe table")

        headers: list[str] = []
        rows: list[list[str]] = []
        for child in nodes[0].get("children", []):
            ctype = child.get("type", "")
            child_children = child.get("children", [])
            if ctype in ("table_head", "thead"):
                # table_head holds table_cell nodes directly, or a table_row wrapper
                if child_children and child_children[0].get("type") == "table_cell":
                    headers = _row_cells(child_children)
                else:
                    for row in child_children:
                        headers = _row_cells(row.get("children", []))
            elif ctype in ("table_body", "tbody"):
                for row in child_children:
                    rows.append(_row_cells(row.get("children", [])))

        body_lines = [ln for ln in text.strip().splitlines() if ln.strip()][2:]
        if len(body_lines) != len(rows):
            raise ValueError("table rows do not match the header")
        return headers, rows


# ---------------------------------------------------------------------------
# Cells
# ---------------------------------------------------------------------------

def parse_cell_text(text: str, column: TableColumn) -> Optional[Cell]:
    """Type the raw text of one cell; empty text is an empty cell."""
    text = text.strip()
    if not text:
        return None
    sentinel = parse_sentinel(text)
    if sentinel is not None:
        return Cell(state=sentinel.state, reason=sentinel.reason)
    if column.type == ColumnType.NUMBER:
        number = parse_number(text)
        return Cell(value=number if number is not None else text)
    if column.type == ColumnType.YEAR and _INT_RE.fullmatch(text):
        return Cell(value=int(text))
    return Cell(value=text)


def coerce_cell(raw: Any, column: TableColumn) -> Optional[Cell]:
    """Turn a patch-supplied cell value into a ``Cell``.

    Accepts ``None``, a ``Cell``, a ``{"state": ..., "value": ..., "reason": ...}``
    mapping, a sentinel string, plain text, or a number for numeric columns.
    Raises ``ValueError`` on anything else.
    """
    if raw is None:
        return None
    if isinstance(raw, Cell):
        return raw
    if isinstance(raw, dict):
        try:
            return Cell(**raw)
        except ValidationError as exc:
            raise ValueError(f'invalid cell for column "{column.id}": {exc.errors()[0]["msg"]}') from exc
    if isinstance(raw, bool):
        raise ValueError(f'column "{column.id}" does not accept booleans')
    if isinstance(raw, (int, float)):
        if column.type not in (ColumnType.NUMBER, ColumnType.YEAR):
            raise ValueError(f'column "{column.id}" expects text, got a number')
        return Cell(value=raw)
    if isinstance(raw, str):
        if "\n" in raw:
            raise ValueError(f'cell for column "{column.id}" cannot span lines')
        return parse_cell_text(raw, column)
    raise ValueError(f'unsupported cell value for column "{column.id}": {raw!r}')


def escape_cell(text: str) -> str:
    return text.replace("|", "\\|")


def format_cell(cell: Optional[Cell]) -> str:
    if cell is None:
        return ""
    if cell.state in (AnswerState.SKIPPED, AnswerState.ABORTED):
        return escape_cell(format_sentinel(cell.state, cell.reason))
    value = cell.value
    if isinstance(value, float):
        return repr(value)
    return escape_cell(str(value))


def render_table(columns: list[TableColumn], rows: list[dict[str, Cell]]) -> str:
    """Render a header, separator and one line per row."""
    lines = [
        "| " + " | ".join(escape_cell(col.label) for col in columns) + " |",
        "| " + " | ".join("---" for _ in columns) + " |",
    ]
    for row in rows:
        lines.append("| " + " | ".join(format_cell(row.get(col.id)) for col in columns) + " |")
    return "\n".join(lines)
