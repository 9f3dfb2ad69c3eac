"""Structural markers in both concrete syntaxes.

Bracket-tag markers look like ``{% field id="x" %}`` / ``{% /field %}`` and
annotate options with ``{% #option_id %}``.  Inline-comment markers carry
the same content inside HTML comments: ``<!-- f:field id="x" -->``,
``<!-- /f:field -->`` and ``<!-- #option_id -->``.

Markers inside fenced code blocks or inline code spans are ordinary text.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..errors import ParseError
from .attributes import format_attributes
from .models import SyntaxStyle


class MarkerKind(str, Enum):
    OPEN = "open"
    CLOSE = "close"
    SELF_CLOSING = "self_closing"
    ANNOTATION = "annotation"


# Quoted attribute strings may contain the closing delimiter of either syntax.
_QUOTED = r'"(?:[^"\\\n]|\\.)*"'

_TAG_RE = re.compile(
    r"\{%\s*(?:#(?P<ann>[\w.-]+)\s*"
    r"|(?P<close>/)?(?P<name>[A-Za-z][\w-]*)(?P<attrs>(?:" + _QUOTED + r'|[^%"]|%(?!\}))*?)\s*(?P<self>/)?)%\}'
)
_COMMENT_RE = re.compile(
    r"<!--\s*(?:#(?P<ann>[\w.-]+)\s*"
    r"|(?P<close>/)?f:(?P<name>[A-Za-z][\w-]*)(?P<attrs>(?:" + _QUOTED + r'|[^-"]|-(?!->))*?)\s*(?P<self>/)?)-->'
)
_FENCE_OPEN_RE = re.compile(r"^ {0,3}(`{3,}|~{3,})(.*)$")
_INLINE_CODE_RE = re.compile(r"(`+)(?!`).*?(?<!`)\1(?!`)")


@dataclass
class Marker:
    """One structural marker found in the body text."""

    kind: MarkerKind
    name: str             # tag name, or the option id for annotations
    attrs_text: str
    style: SyntaxStyle
    start: int
    end: int
    line: int
    column: int

    @property
    def attrs_offset(self) -> int:
        """Column where the attribute text begins (for error positions)."""
        return self.column + len(self.name) + (7 if self.style == SyntaxStyle.COMMENTS else 3)

    def describe(self) -> str:
        return render_marker(
            self.style,
            self.name,
            closing=self.kind == MarkerKind.CLOSE,
        ) if self.kind != MarkerKind.ANNOTATION else render_annotation(self.style, self.name)


# ---------------------------------------------------------------------------
# Scanning
# ---------------------------------------------------------------------------

def line_and_column(text: str, offset: int) -> tuple[int, int]:
    """1-based line and column of *offset* in *text*."""
    line = text.count("\n", 0, offset) + 1
    column = offset - (text.rfind("\n", 0, offset) + 1) + 1
    return line, column


def code_regions(text: str, start: int = 0) -> list[tuple[int, int]]:
    """Offsets of fenced code blocks and inline code spans after *start*."""
    regions: list[tuple[int, int]] = []
    pos = start
    fence: tuple[str, int, int] | None = None     # (char, length, start offset)
    for raw_line in text[start:].splitlines(keepends=True):
        line = raw_line.rstrip("\n")
        line_end = pos + len(raw_line)
        if fence is not None:
            stripped = line.strip()
            if (
                len(line) - len(line.lstrip(" ")) <= 3
                and stripped
                and set(stripped) == {fence[0]}
                and len(stripped) >= fence[1]
            ):
                regions.append((fence[2], line_end))
                fence = None
        else:
            m = _FENCE_OPEN_RE.match(line)
            if m and not (m.group(1)[0] == "`" and "`" in m.group(2)):
                fence = (m.group(1)[0], len(m.group(1)), pos)
            else:
                for span in _INLINE_CODE_RE.finditer(line):
                    regions.append((pos + span.start(), pos + span.end()))
        pos = line_end
    if fence is not None:
        regions.append((fence[2], len(text)))
    return regions


def _inside(regions: list[tuple[int, int]], start: int, end: int) -> bool:
    return any(r_start < end and start < r_end for r_start, r_end in regions)


def scan_markers(text: str, start: int = 0) -> list[Marker]:
    """Find every structural marker of either syntax after offset *start*."""
    regions = code_regions(text, start)
    markers: list[Marker] = []
    for style, pattern in ((SyntaxStyle.TAGS, _TAG_RE), (SyntaxStyle.COMMENTS, _COMMENT_RE)):
        for m in pattern.finditer(text, start):
            if _inside(regions, m.start(), m.end()):
                continue
            line, column = line_and_column(text, m.start())
            if m.group("ann"):
                kind, name, attrs = MarkerKind.ANNOTATION, m.group("ann"), ""
            else:
                name, attrs = m.group("name"), m.group("attrs") or ""
                if m.group("close"):
                    kind = MarkerKind.CLOSE
                elif m.group("self"):
                    kind = MarkerKind.SELF_CLOSING
                else:
                    kind = MarkerKind.OPEN
            markers.append(Marker(kind, name, attrs, style, m.start(), m.end(), line, column))
    markers.sort(key=lambda mk: mk.start)
    # a marker of one syntax quoted inside an attribute of the other is text
    outer: list[Marker] = []
    for marker in markers:
        if outer and marker.start < outer[-1].end:
            continue
        outer.append(marker)
    return outer


def detect_syntax(markers: list[Marker]) -> SyntaxStyle:
    """The style of the first marker wins; a marker-free body counts as tags."""
    return markers[0].style if markers else SyntaxStyle.TAGS


def check_consistency(markers: list[Marker], style: SyntaxStyle) -> None:
    """Raise ``ParseError`` at the first marker written in the other syntax."""
    for marker in markers:
        if marker.style != style:
            expected = "{% ... %}" if style == SyntaxStyle.TAGS else "<!-- f:... -->"
            raise ParseError(
                f"document mixes marker syntaxes; it uses {style.value} syntax",
                line=marker.line,
                column=marker.column,
                expected=expected,
                found=marker.describe(),
            )


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

def render_marker(
    style: SyntaxStyle,
    name: str,
    attrs: dict[str, Any] | None = None,
    *,
    closing: bool = False,
    self_closing: bool = False,
) -> str:
    body = f"/{name}" if closing else name
    attr_text = format_attributes(attrs or {}) if not closing else ""
    if attr_text:
        body = f"{body} {attr_text}"
    if style == SyntaxStyle.COMMENTS:
        if closing:
            return f"<!-- /f:{name} -->"
        return f"<!-- f:{body} /-->" if self_closing else f"<!-- f:{body} -->"
    return f"{{% {body} /%}}" if self_closing else f"{{% {body} %}}"


def render_annotation(style: SyntaxStyle, option_id: str) -> str:
    if style == SyntaxStyle.COMMENTS:
        return f"<!-- #{option_id} -->"
    return f"{{% #{option_id} %}}"
