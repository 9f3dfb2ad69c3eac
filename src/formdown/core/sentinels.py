"""Skip / abort sentinels: ``%SKIP%`` and ``%ABORT%`` with an optional ``(reason)``."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from .models import AnswerState

SKIP_SENTINEL = "%SKIP%"
ABORT_SENTINEL = "%ABORT%"

_SENTINEL_RE = re.compile(r"^%(?P<tag>SKIP|ABORT)%(?:\s*\((?P<reason>.*)\))?$", re.DOTALL)
_TOKENS = {"SKIP": AnswerState.SKIPPED, "ABORT": AnswerState.ABORTED}


@dataclass(frozen=True)
class Sentinel:
    state: AnswerState
    reason: Optional[str] = None


def looks_like_sentinel(text: str) -> bool:
    stripped = text.strip()
    return stripped.startswith(SKIP_SENTINEL) or stripped.startswith(ABORT_SENTINEL)


def parse_sentinel(text: str) -> Optional[Sentinel]:
    """Return the sentinel in *text*, or ``None`` when *text* is a plain value.

    Raises ``ValueError`` when *text* starts like a sentinel but is not one.
    """
    stripped = text.strip()
    if not looks_like_sentinel(stripped):
        return None
    m = _SENTINEL_RE.match(stripped)
    if not m:
        raise ValueError(f"malformed sentinel {stripped!r}")
    reason = (m.group("reason") or "").strip() or None
    return Sentinel(_TOKENS[m.group("tag")], reason)


def format_sentinel(state: AnswerState, reason: Optional[str] = None) -> str:
    token = SKIP_SENTINEL if state == AnswerState.SKIPPED else ABORT_SENTINEL
    return f"{token} ({reason})" if reason else token
