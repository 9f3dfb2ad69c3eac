"""Fill records: the per-turn timeline of a harness run.

A record is saved next to the filled document as a JSON or YAML sidecar
(chosen by file suffix) so a run can be audited or replayed later.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger("formdown.record")


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class TurnRecord(BaseModel):
    """One inspect → delegate → apply cycle of one execution thread."""

    turn: int
    order: int = 0
    execution_id: str
    issues: list[dict[str, Any]] = Field(default_factory=list)
    patches: list[dict[str, Any]] = Field(default_factory=list)
    applied: bool = False
    rejections: list[dict[str, Any]] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    required_issues_after: int = 0
    stats: dict[str, Any] = Field(default_factory=dict)
    markdown_sha256: str = ""
    started_at: str = Field(default_factory=utc_now)
    completed_at: str = ""

    @property
    def patches_applied(self) -> int:
        return len(self.patches) if self.applied else 0

    @property
    def patches_rejected(self) -> int:
        return len(self.rejections)


class FillRecord(BaseModel):
    """The timeline and outcome of a whole fill run."""

    record_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    form_id: str = ""
    agent: str = ""
    config: dict[str, Any] = Field(default_factory=dict)
    started_at: str = Field(default_factory=utc_now)
    completed_at: str = ""
    status: str = ""
    turns: list[TurnRecord] = Field(default_factory=list)
    threads: dict[str, str] = Field(default_factory=dict)    # execution id -> outcome
    progress: dict[str, int] = Field(default_factory=dict)

    @property
    def total_turns(self) -> int:
        return len(self.turns)

    @property
    def total_patches(self) -> int:
        return sum(turn.patches_applied for turn in self.turns)

    @property
    def total_rejections(self) -> int:
        return sum(turn.patches_rejected for turn in self.turns)

    def turns_for(self, execution_id: str) -> list[TurnRecord]:
        return [turn for turn in self.turns if turn.execution_id == execution_id]

    def summary(self) -> dict[str, Any]:
        return {
            "form_id": self.form_id,
            "status": self.status,
            "turns": self.total_turns,
            "patches_applied": self.total_patches,
            "patches_rejected": self.total_rejections,
            "threads": dict(self.threads),
        }

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self, path: str | Path) -> Path:
        """Write the record as YAML (``.yaml``/``.yml``) or JSON (anything else)."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        data = self.model_dump(mode="json")
        if path.suffix in (".yaml", ".yml"):
            text = yaml.safe_dump(data, sort_keys=False, allow_unicode=True)
        else:
            text = json.dumps(data, indent=2, default=str) + "\n"
        path.write_text(text, encoding="utf-8")
        logger.info("Saved fill record → %s", path)
        return path

    @classmethod
    def load(cls, path: str | Path) -> "FillRecord":
        path = Path(path)
        raw = path.read_text(encoding="utf-8")
        if path.suffix in (".yaml", ".yml"):
            data = yaml.safe_load(raw) or {}
        else:
            data = json.loads(raw)
        return cls.model_validate(data)


def sidecar_path(form_path: str | Path, suffix: str = ".json") -> Path:
    """``report.form.md`` → ``report.fill.json``."""
    path = Path(form_path)
    stem = path.name
    for ending in (".form.md", ".md"):
        if stem.endswith(ending):
            stem = stem[: -len(ending)]
            break
    return path.with_name(f"{stem}.fill{suffix}")


class FillRecordStore:
    """Keeps fill records in one directory, one file per record."""

    def __init__(self, root: str | Path, *, suffix: str = ".json") -> None:
        self.root = Path(root)
        self.suffix = suffix

    def path_for(self, record_id: str) -> Path:
        return self.root / f"{record_id}{self.suffix}"

    def save(self, record: FillRecord) -> Path:
        return record.save(self.path_for(record.record_id))

    def load(self, record_id: str) -> FillRecord:
        path = self.path_for(record_id)
        if not path.exists():
            raise FileNotFoundError(f"Fill record not found: {path}")
        return FillRecord.load(path)

    def list_records(self, form_id: Optional[str] = None) -> list[dict[str, Any]]:
        """Summaries of stored records, oldest first."""
        if not self.root.exists():
            return []
        records = [FillRecord.load(p) for p in sorted(self.root.glob(f"*{self.suffix}"))]
        if form_id is not None:
            records = [r for r in records if r.form_id == form_id]
        records.sort(key=lambda r: r.started_at)
        return [{"id": r.record_id, **r.summary()} for r in records]
