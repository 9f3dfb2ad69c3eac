"""Execution plan: which groups run when, and which may run side by side.

Top-level items are explicit groups, or single fields of the implicit
group.  Items are bucketed by their order level; within a level, items
without a ``parallel`` key form the serial thread and items sharing a key
form a parallel batch with one thread per item.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict

from .models import FormSchema


class ExecutionId(BaseModel):
    """Identifies one logical thread of a fill run.

    ``str()`` renders ``serial:o0`` or ``batch:o0:research:1``.
    """

    model_config = ConfigDict(frozen=True)

    kind: Literal["serial", "batch"] = "serial"
    order: int = 0
    key: Optional[str] = None
    index: Optional[int] = None

    @classmethod
    def serial(cls, order: int) -> "ExecutionId":
        return cls(kind="serial", order=order)

    @classmethod
    def batch(cls, order: int, key: str, index: int) -> "ExecutionId":
        return cls(kind="batch", order=order, key=key, index=index)

    @classmethod
    def parse(cls, text: str) -> "ExecutionId":
        parts = text.split(":")
        if len(parts) == 2 and parts[0] == "serial" and parts[1].startswith("o"):
            return cls.serial(int(parts[1][1:]))
        if len(parts) == 4 and parts[0] == "batch" and parts[1].startswith("o"):
            return cls.batch(int(parts[1][1:]), parts[2], int(parts[3]))
        raise ValueError(f"not an execution id: {text!r}")

    def __str__(self) -> str:
        if self.kind == "serial":
            return f"serial:o{self.order}"
        return f"batch:o{self.order}:{self.key}:{self.index}"


@dataclass
class PlanItem:
    """A group, or a lone field of the implicit group."""

    item_id: str
    item_type: Literal["group", "field"]
    order: int
    parallel: Optional[str]
    field_ids: list[str]


@dataclass
class ExecutionThread:
    execution_id: ExecutionId
    items: list[PlanItem]

    @property
    def field_ids(self) -> list[str]:
        return [fid for item in self.items for fid in item.field_ids]


@dataclass
class OrderLevel:
    order: int
    serial_items: list[PlanItem] = field(default_factory=list)
    batches: dict[str, list[PlanItem]] = field(default_factory=dict)

    def threads(self) -> list[ExecutionThread]:
        """The serial thread (when there are serial items), then one thread per batch item."""
        threads = []
        if self.serial_items:
            threads.append(ExecutionThread(ExecutionId.serial(self.order), list(self.serial_items)))
        for key, items in self.batches.items():
            for index, item in enumerate(items):
                threads.append(ExecutionThread(ExecutionId.batch(self.order, key, index), [item]))
        return threads


@dataclass
class ExecutionPlan:
    levels: list[OrderLevel] = field(default_factory=list)

    @property
    def order_levels(self) -> list[int]:
        return [level.order for level in self.levels]

    @property
    def loose_serial(self) -> list[PlanItem]:
        return [item for level in self.levels for item in level.serial_items]

    @property
    def parallel_batches(self) -> dict[str, list[PlanItem]]:
        merged: dict[str, list[PlanItem]] = {}
        for level in self.levels:
            for key, items in level.batches.items():
                merged.setdefault(key, []).extend(items)
        return merged


def plan_items(form: FormSchema) -> list[PlanItem]:
    items = []
    for group in form.groups:
        if group.implicit:
            for fld in group.fields:
                items.append(PlanItem(fld.id, "field", fld.order or 0, fld.parallel, [fld.id]))
        else:
            items.append(
                PlanItem(group.id, "group", group.order, group.parallel, [fld.id for fld in group.fields])
            )
    return items


def build_execution_plan(form: FormSchema) -> ExecutionPlan:
    """Bucket the form's top-level items by order level, in document order."""
    levels: dict[int, OrderLevel] = {}
    for item in plan_items(form):
        level = levels.setdefault(item.order, OrderLevel(item.order))
        if item.parallel:
            level.batches.setdefault(item.parallel, []).append(item)
        else:
            level.serial_items.append(item)
    return ExecutionPlan(levels=[levels[order] for order in sorted(levels)])
