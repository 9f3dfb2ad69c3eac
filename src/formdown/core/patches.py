"""Typed patch operations and transactional application.

A batch is applied to a scratch copy of the responses one operation at a
time, so later operations see the effect of earlier ones.  The document is
only touched when every operation succeeds; otherwise each failing operation
is reported as a ``PatchRejection`` and the responses stay as they were.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any, Iterable, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictFloat, StrictInt, StrictStr, TypeAdapter, ValidationError

from ..errors import PatchApplicationError
from .inspector import InspectResult, inspect_form
from .models import (
    DEFAULT_CHECKBOX_STATE,
    MODE_STATES,
    AnswerState,
    Cell,
    CheckboxesValue,
    CheckboxMode,
    CheckboxState,
    DateValue,
    FieldResponse,
    FormDocument,
    FormField,
    IssueCategory,
    MultiSelectValue,
    NumberValue,
    SingleSelectValue,
    StringListValue,
    StringValue,
    TableValue,
    UrlListValue,
    UrlValue,
    YearValue,
)
from .sentinels import format_sentinel, looks_like_sentinel
from .tables import coerce_cell, parse_cell_text
from .validator import validate_field

logger = logging.getLogger("formdown.patches")


# ---------------------------------------------------------------------------
# Patch models
# ---------------------------------------------------------------------------

class _PatchBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    field_id: str = Field(alias="fieldId", min_length=1)


class SetStringPatch(_PatchBase):
    op: Literal["set_string"] = "set_string"
    value: StrictStr


class SetNumberPatch(_PatchBase):
    op: Literal["set_number"] = "set_number"
    value: Union[StrictInt, StrictFloat]


class SetStringListPatch(_PatchBase):
    op: Literal["set_string_list"] = "set_string_list"
    value: list[StrictStr]


class SetSingleSelectPatch(_PatchBase):
    op: Literal["set_single_select"] = "set_single_select"
    value: StrictStr


class SetMultiSelectPatch(_PatchBase):
    op: Literal["set_multi_select"] = "set_multi_select"
    value: list[StrictStr]


class SetCheckboxesPatch(_PatchBase):
    op: Literal["set_checkboxes"] = "set_checkboxes"
    value: dict[str, CheckboxState]


class SetUrlPatch(_PatchBase):
    op: Literal["set_url"] = "set_url"
    value: StrictStr


class SetUrlListPatch(_PatchBase):
    op: Literal["set_url_list"] = "set_url_list"
    value: list[StrictStr]


class SetDatePatch(_PatchBase):
    op: Literal["set_date"] = "set_date"
    value: StrictStr


class SetYearPatch(_PatchBase):
    op: Literal["set_year"] = "set_year"
    value: StrictInt


class SetTablePatch(_PatchBase):
    """Replace every row.  Each row maps column ids to cell values."""

    op: Literal["set_table"] = "set_table"
    value: list[dict[str, Any]]


class AppendTableRowsPatch(_PatchBase):
    op: Literal["append_table_rows"] = "append_table_rows"
    rows: list[dict[str, Any]] = Field(min_length=1)


class DeleteTableRowsPatch(_PatchBase):
    op: Literal["delete_table_rows"] = "delete_table_rows"
    indexes: list[StrictInt] = Field(min_length=1)


class ClearFieldPatch(_PatchBase):
    op: Literal["clear_field"] = "clear_field"


class SkipFieldPatch(_PatchBase):
    op: Literal["skip_field"] = "skip_field"
    reason: Optional[str] = None


class AbortFieldPatch(_PatchBase):
    op: Literal["abort_field"] = "abort_field"
    reason: Optional[str] = None


Patch = Annotated[
    Union[
        SetStringPatch,
        SetNumberPatch,
        SetStringListPatch,
        SetSingleSelectPatch,
        SetMultiSelectPatch,
        SetCheckboxesPatch,
        SetUrlPatch,
        SetUrlListPatch,
        SetDatePatch,
        SetYearPatch,
        SetTablePatch,
        AppendTableRowsPatch,
        DeleteTableRowsPatch,
        ClearFieldPatch,
        SkipFieldPatch,
        AbortFieldPatch,
    ],
    Field(discriminator="op"),
]

_PATCH_ADAPTER: TypeAdapter = TypeAdapter(Patch)

# Field kind each value-setting op applies to
OP_KINDS: dict[str, str] = {
    "set_string": "string",
    "set_number": "number",
    "set_string_list": "string_list",
    "set_single_select": "single_select",
    "set_multi_select": "multi_select",
    "set_checkboxes": "checkboxes",
    "set_url": "url",
    "set_url_list": "url_list",
    "set_date": "date",
    "set_year": "year",
    "set_table": "table",
    "append_table_rows": "table",
    "delete_table_rows": "table",
}
_KIND_OPS = {kind: op for op, kind in reversed(list(OP_KINDS.items()))}


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

class RejectionReason(str, Enum):
    UNKNOWN_FIELD = "unknown_field"
    KIND_MISMATCH = "kind_mismatch"
    INVALID_VALUE = "invalid_value"
    CONSTRAINT_VIOLATION = "constraint_violation"
    ROW_INDEX_OUT_OF_RANGE = "row_index_out_of_range"
    INVALID_PATCH = "invalid_patch"


@dataclass
class PatchRejection:
    patch_index: int
    op: str
    field_id: str
    reason: RejectionReason
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "patch_index": self.patch_index,
            "op": self.op,
            "field_id": self.field_id,
            "reason": self.reason.value,
            "message": self.message,
        }


@dataclass
class PatchWarning:
    """A wire-level coercion that was applied instead of rejecting the patch."""

    patch_index: int
    field_id: str
    coercion: str
    message: str


@dataclass
class ApplyResult:
    applied: bool
    patches: list[Any] = field(default_factory=list)
    rejections: list[PatchRejection] = field(default_factory=list)
    warnings: list[PatchWarning] = field(default_factory=list)
    inspection: Optional[InspectResult] = None

    @property
    def status(self) -> str:
        return "applied" if self.applied else "rejected"


class _Rejected(Exception):
    def __init__(self, reason: RejectionReason, message: str) -> None:
        super().__init__(message)
        self.reason = reason
        self.message = message


# ---------------------------------------------------------------------------
# Wire parsing
# ---------------------------------------------------------------------------

def _coerce_wire(raw: dict[str, Any], doc: Optional[FormDocument], index: int) -> tuple[dict, Optional[PatchWarning]]:
    """Fix up the common shape slips agents make, recording each one."""
    op = raw.get("op")
    field_id = raw.get("field_id", raw.get("fieldId"))
    value = raw.get("value")
    fld = doc.get_field(field_id) if doc is not None and isinstance(field_id, str) else None

    def warn(coercion: str, message: str) -> PatchWarning:
        return PatchWarning(patch_index=index, field_id=str(field_id), coercion=coercion, message=message)

    if op in ("set_string_list", "set_url_list", "set_multi_select") and isinstance(value, str):
        return {**raw, "value": [value]}, warn("value_to_list", f"Coerced single value to a list for {op}")
    if op == "set_checkboxes" and fld is not None and fld.kind == "checkboxes":
        explicit = fld.checkbox_mode == CheckboxMode.EXPLICIT
        if isinstance(value, list) and all(isinstance(item, str) for item in value):
            state = CheckboxState.YES if explicit else CheckboxState.DONE
            states = {item: state.value for item in value}
            return {**raw, "value": states}, warn(
                "list_to_checkboxes", f"Coerced option list to checkbox states ('{state.value}')"
            )
        if isinstance(value, dict) and any(isinstance(v, bool) for v in value.values()):
            on, off = (CheckboxState.YES, CheckboxState.NO) if explicit else (CheckboxState.DONE, CheckboxState.TODO)
            states = {k: ((on if v else off).value if isinstance(v, bool) else v) for k, v in value.items()}
            return {**raw, "value": states}, warn("boolean_to_checkbox", "Coerced booleans to checkbox states")
    return raw, None


def parse_patches(
    data: Iterable[Any],
    doc: Optional[FormDocument] = None,
) -> tuple[list[tuple[int, Any]], list[PatchRejection], list[PatchWarning]]:
    """Validate the wire shape of a patch batch.

    Returns ``(patches, rejections, warnings)`` where *patches* pairs each
    well-formed patch with its index in the batch.
    """
    patches: list[tuple[int, Any]] = []
    rejections: list[PatchRejection] = []
    warnings: list[PatchWarning] = []
    for index, item in enumerate(data):
        if isinstance(item, BaseModel):
            patches.append((index, item))
            continue
        if not isinstance(item, dict):
            rejections.append(
                PatchRejection(index, "", "", RejectionReason.INVALID_PATCH, f"Patch must be an object, got {type(item).__name__}")
            )
            continue
        raw, warning = _coerce_wire(item, doc, index)
        try:
            patch = _PATCH_ADAPTER.validate_python(raw)
        except ValidationError as exc:
            err = exc.errors()[0]
            where = ".".join(str(p) for p in err.get("loc", ()))
            rejections.append(
                PatchRejection(
                    index,
                    str(item.get("op", "")),
                    str(item.get("field_id", item.get("fieldId", ""))),
                    RejectionReason.INVALID_PATCH,
                    f"{where}: {err['msg']}" if where else err["msg"],
                )
            )
            continue
        if warning is not None:
            warnings.append(warning)
        patches.append((index, patch))
    return patches, rejections, warnings


# ---------------------------------------------------------------------------
# Per-op value builders
# ---------------------------------------------------------------------------

def _invalid(message: str) -> _Rejected:
    return _Rejected(RejectionReason.INVALID_VALUE, message)


def _text(fld: Any, value: str, *, single_line: bool = False) -> str:
    if not value.strip():
        raise _invalid(f'Value for "{fld.id}" is empty; use clear_field to unset it')
    if looks_like_sentinel(value):
        raise _invalid(
            f'Value for "{fld.id}" contains a skip/abort sentinel; use skip_field or abort_field instead'
        )
    if single_line and "\n" in value.strip():
        raise _invalid(f'Value for "{fld.id}" must be a single line')
    return value


def _items(fld: Any, values: list[str]) -> list[str]:
    if not values:
        raise _invalid(f'List for "{fld.id}" is empty; use clear_field to unset it')
    items = []
    for position, item in enumerate(values, start=1):
        if "\n" in item.strip():
            raise _invalid(f'Item {position} of "{fld.id}" spans lines')
        if not item.strip():
            raise _invalid(f'Item {position} of "{fld.id}" is empty')
        if looks_like_sentinel(item):
            raise _invalid(f'Item {position} of "{fld.id}" is a skip/abort sentinel')
        items.append(item.strip())
    return items


def _checkboxes(fld: Any, current: FieldResponse, states: dict[str, CheckboxState]) -> FieldResponse:
    known = [opt.id for opt in fld.options]
    allowed = MODE_STATES[fld.checkbox_mode]
    for option_id, state in states.items():
        if option_id not in known:
            raise _invalid(f'"{fld.id}" has no option "{option_id}" (options: {", ".join(known)})')
        if state not in allowed:
            raise _invalid(
                f'State "{state.value}" is not valid in {fld.checkbox_mode.value} mode '
                f'(allowed: {", ".join(s.value for s in allowed)})'
            )
    default = DEFAULT_CHECKBOX_STATE[fld.checkbox_mode]
    existing = current.value.values if current.value is not None else {}
    merged = {oid: states.get(oid, existing.get(oid, default)) for oid in known}
    if all(state == default for state in merged.values()):
        return FieldResponse()
    return FieldResponse.answered(CheckboxesValue(values=merged))


def _rows(fld: Any, rows: list[dict[str, Any]], first_index: int = 0) -> list[dict[str, Cell]]:
    known = {col.id for col in fld.columns}
    out = []
    for position, raw_row in enumerate(rows, start=first_index + 1):
        unknown = sorted(set(raw_row) - known)
        if unknown:
            raise _invalid(
                f'Row {position} of "{fld.id}" has unknown column(s) {", ".join(unknown)} '
                f'(columns: {", ".join(col.id for col in fld.columns)})'
            )
        row: dict[str, Cell] = {}
        for col in fld.columns:
            raw = raw_row.get(col.id)
            if isinstance(raw, float) and not math.isfinite(raw):
                raise _invalid(f'Row {position}, column "{col.id}" is not a finite number')
            try:
                cell = coerce_cell(raw, col)
                if cell is not None and cell.state == AnswerState.ANSWERED and isinstance(cell.value, str):
                    cell = parse_cell_text(cell.value, col)
            except ValueError as exc:
                raise _invalid(f'Row {position} of "{fld.id}": {exc}') from None
            if cell is None:
                continue
            if "\n" in (cell.reason or ""):
                raise _invalid(f'Row {position}, column "{col.id}": reason cannot span lines')
            row[col.id] = cell
        if not row:
            raise _invalid(f'Row {position} of "{fld.id}" has no cells')
        out.append(row)
    return out


def _current_rows(current: FieldResponse) -> list[dict[str, Cell]]:
    if current.value is None:
        return []
    return [dict(row) for row in current.value.rows]


def _build_response(fld: Any, current: FieldResponse, patch: Any) -> FieldResponse:
    op = patch.op
    if op == "set_string":
        return FieldResponse.answered(StringValue(value=_text(fld, patch.value).replace("\r\n", "\n")))
    if op == "set_number":
        if not math.isfinite(patch.value):
            raise _invalid(f'Value for "{fld.id}" must be a finite number')
        return FieldResponse.answered(NumberValue(value=patch.value))
    if op == "set_string_list":
        return FieldResponse.answered(StringListValue(items=_items(fld, patch.value)))
    if op == "set_url_list":
        return FieldResponse.answered(UrlListValue(items=_items(fld, patch.value)))
    if op == "set_url":
        return FieldResponse.answered(UrlValue(value=_text(fld, patch.value, single_line=True).strip()))
    if op == "set_date":
        return FieldResponse.answered(DateValue(value=_text(fld, patch.value, single_line=True).strip()))
    if op == "set_year":
        return FieldResponse.answered(YearValue(value=patch.value))
    if op == "set_single_select":
        known = [opt.id for opt in fld.options]
        if patch.value not in known:
            raise _invalid(f'"{fld.id}" has no option "{patch.value}" (options: {", ".join(known)})')
        return FieldResponse.answered(SingleSelectValue(selected=patch.value))
    if op == "set_multi_select":
        known = [opt.id for opt in fld.options]
        unknown = [oid for oid in patch.value if oid not in known]
        if unknown:
            raise _invalid(f'"{fld.id}" has no option(s) {", ".join(unknown)} (options: {", ".join(known)})')
        if not patch.value:
            raise _invalid(f'No options selected for "{fld.id}"; use clear_field to unset it')
        chosen = set(patch.value)
        return FieldResponse.answered(MultiSelectValue(selected=[oid for oid in known if oid in chosen]))
    if op == "set_checkboxes":
        return _checkboxes(fld, current, patch.value)
    if op == "set_table":
        if not patch.value:
            raise _invalid(f'No rows given for "{fld.id}"; use clear_field to unset it')
        return FieldResponse.answered(TableValue(rows=_rows(fld, patch.value)))
    if op == "append_table_rows":
        rows = _current_rows(current)
        rows.extend(_rows(fld, patch.rows, first_index=len(rows)))
        return FieldResponse.answered(TableValue(rows=rows))
    if op == "delete_table_rows":
        rows = _current_rows(current)
        bad = [i for i in patch.indexes if i < 0 or i >= len(rows)]
        if bad:
            raise _Rejected(
                RejectionReason.ROW_INDEX_OUT_OF_RANGE,
                f'Row index {bad[0]} is out of range for "{fld.id}" ({len(rows)} rows)',
            )
        drop = set(patch.indexes)
        kept = [row for i, row in enumerate(rows) if i not in drop]
        return FieldResponse.answered(TableValue(rows=kept)) if kept else FieldResponse()
    raise _Rejected(RejectionReason.INVALID_PATCH, f"Unsupported operation {op}")


def _apply_one(doc: FormDocument, scratch: dict[str, FieldResponse], patch: Any) -> FieldResponse:
    fld = doc.get_field(patch.field_id)
    if fld is None:
        raise _Rejected(RejectionReason.UNKNOWN_FIELD, f'Field "{patch.field_id}" not found')
    op = patch.op
    synthetic = fld.kind == "checkboxes" and fld.implicit

    if op == "clear_field":
        return FieldResponse()
    if op in ("skip_field", "abort_field"):
        if synthetic:
            raise _Rejected(
                RejectionReason.CONSTRAINT_VIOLATION, f'Checklist "{fld.id}" cannot be skipped or aborted'
            )
        if op == "skip_field" and fld.required:
            raise _Rejected(RejectionReason.CONSTRAINT_VIOLATION, f'Required field "{fld.id}" cannot be skipped')
        reason = (patch.reason or "").strip() or None
        if reason is not None and looks_like_sentinel(reason):
            raise _invalid(f'Reason for "{fld.id}" cannot be a sentinel')
        if op == "skip_field":
            return FieldResponse.skipped(reason)
        return FieldResponse.aborted(reason)

    if OP_KINDS.get(op) != fld.kind:
        raise _Rejected(RejectionReason.KIND_MISMATCH, f'Cannot apply {op} to {fld.kind} field "{fld.id}"')

    response = _build_response(fld, scratch[fld.id], patch)
    problems = [i for i in validate_field(fld, response) if i.category == IssueCategory.MALFORMED]
    if problems:
        raise _Rejected(RejectionReason.CONSTRAINT_VIOLATION, "; ".join(p.message for p in problems))
    return response


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def apply_patches(doc: FormDocument, patches: Iterable[Any]) -> ApplyResult:
    """Apply *patches* to *doc* as one transaction.

    Parameters
    ----------
    doc
        The document to mutate.  Its responses change only when the whole
        batch succeeds.
    patches
        Patch models or their JSON-shaped dicts, applied in order.
    """
    field_ids = {fld.id for fld in doc.form.fields}
    if set(doc.responses) != field_ids:
        raise PatchApplicationError(
            f"responses of '{doc.form.id}' do not match its schema; re-parse the document before patching"
        )

    parsed, rejections, warnings = parse_patches(patches, doc)
    total = len(parsed) + len(rejections)
    scratch = {fid: response.model_copy(deep=True) for fid, response in doc.responses.items()}
    applied: list[Any] = []
    for index, patch in parsed:
        try:
            scratch[patch.field_id] = _apply_one(doc, scratch, patch)
        except _Rejected as exc:
            rejections.append(PatchRejection(index, patch.op, patch.field_id, exc.reason, exc.message))
            continue
        applied.append(patch)

    if rejections:
        rejections.sort(key=lambda r: r.patch_index)
        logger.info(
            "Rejected patch batch for '%s': %d of %d operations failed",
            doc.form.id, len(rejections), total,
        )
        return ApplyResult(applied=False, rejections=rejections, warnings=warnings, inspection=inspect_form(doc))

    doc.responses = scratch
    logger.debug("Applied %d patches to '%s'", len(applied), doc.form.id)
    return ApplyResult(applied=True, patches=applied, warnings=warnings, inspection=inspect_form(doc))


# ---------------------------------------------------------------------------
# Response → patch
# ---------------------------------------------------------------------------

def _cell_wire(cell: Cell) -> Any:
    if cell.state == AnswerState.ANSWERED:
        return cell.value
    return format_sentinel(cell.state, cell.reason)


def patch_for_response(fld: FormField, response: FieldResponse) -> Any:
    """The single patch that sets *fld* to *response*."""
    if response.state == AnswerState.SKIPPED:
        return SkipFieldPatch(field_id=fld.id, reason=response.reason)
    if response.state == AnswerState.ABORTED:
        return AbortFieldPatch(field_id=fld.id, reason=response.reason)
    if response.state == AnswerState.UNANSWERED or response.value is None:
        return ClearFieldPatch(field_id=fld.id)

    value = response.value
    op = _KIND_OPS[fld.kind]
    if fld.kind in ("string_list", "url_list"):
        payload: Any = list(value.items)
    elif fld.kind == "single_select":
        payload = value.selected
    elif fld.kind == "multi_select":
        payload = list(value.selected)
    elif fld.kind == "checkboxes":
        payload = dict(value.values)
    elif fld.kind == "table":
        payload = [{cid: _cell_wire(cell) for cid, cell in row.items()} for row in value.rows]
    else:
        payload = value.value
    return _PATCH_ADAPTER.validate_python({"op": op, "field_id": fld.id, "value": payload})
