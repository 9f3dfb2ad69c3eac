"""Per-kind constraint checks for answered field values.

``validate_field`` looks only at the value itself: it reports ``malformed``
values and the ``incomplete_*`` categories.  Whether an unanswered field is
missing is the inspector's call.
"""

from __future__ import annotations

import re
from datetime import date
from typing import Any, Callable, Optional
from urllib.parse import urlparse

from .models import (
    DEFAULT_CHECKBOX_STATE,
    MODE_STATES,
    CheckboxMode,
    CheckboxState,
    ColumnType,
    FieldResponse,
    FormField,
    Issue,
    IssueCategory,
    IssueScope,
    IssueSeverity,
)

ValidationIssue = Issue

_DATE_RE = re.compile(r"\d{4}-\d{2}-\d{2}")
_TERMINAL_MULTI = {CheckboxState.DONE, CheckboxState.NA}


def is_valid_url(text: str) -> bool:
    parsed = urlparse(text)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc) and " " not in text


def is_valid_date(text: str) -> bool:
    if not _DATE_RE.fullmatch(text):
        return False
    try:
        date.fromisoformat(text)
    except ValueError:
        return False
    return True


class _Collector:
    """Builds issues for one field."""

    def __init__(self, fld: Any) -> None:
        self.fld = fld
        self.issues: list[Issue] = []
        self.severity = IssueSeverity.REQUIRED if fld.required else IssueSeverity.RECOMMENDED

    def add(
        self,
        category: IssueCategory,
        message: str,
        *,
        scope: IssueScope = IssueScope.FIELD,
        sub: Optional[str] = None,
    ) -> None:
        ref = f"{self.fld.id}.{sub}" if sub else self.fld.id
        self.issues.append(
            Issue(
                ref=ref,
                field_id=self.fld.id,
                scope=scope,
                severity=self.severity,
                priority=self.fld.priority,
                category=category,
                message=message,
            )
        )

    def malformed(self, message: str, **kwargs: Any) -> None:
        self.add(IssueCategory.MALFORMED, message, **kwargs)


# ---------------------------------------------------------------------------
# Per-kind checks
# ---------------------------------------------------------------------------

def _check_string(out: _Collector, fld: Any, value: Any) -> None:
    text = value.value
    if fld.min_length is not None and len(text) < fld.min_length:
        out.malformed(f'"{fld.label}" must be at least {fld.min_length} characters (got {len(text)})')
    if fld.max_length is not None and len(text) > fld.max_length:
        out.malformed(f'"{fld.label}" must be at most {fld.max_length} characters (got {len(text)})')
    if fld.pattern is not None and re.search(fld.pattern, text) is None:
        out.malformed(f'"{fld.label}" does not match pattern {fld.pattern}')


def _check_number(out: _Collector, fld: Any, value: Any) -> None:
    number = value.value
    if fld.integer and not float(number).is_integer():
        out.malformed(f'"{fld.label}" must be a whole number (got {number})')
    if fld.min is not None and number < fld.min:
        out.malformed(f'"{fld.label}" must be at least {fld.min} (got {number})')
    if fld.max is not None and number > fld.max:
        out.malformed(f'"{fld.label}" must be at most {fld.max} (got {number})')


def _check_items(
    out: _Collector,
    fld: Any,
    items: list[str],
    item_check: Optional[Callable[[str], Optional[str]]] = None,
) -> None:
    count = len(items)
    if fld.min_items is not None and count < fld.min_items:
        out.malformed(f'"{fld.label}" needs at least {fld.min_items} items (got {count})')
    if fld.max_items is not None and count > fld.max_items:
        out.malformed(f'"{fld.label}" allows at most {fld.max_items} items (got {count})')
    if fld.unique_items and len(set(items)) != count:
        out.malformed(f'"{fld.label}" items must be unique')
    for index, item in enumerate(items, start=1):
        if not item.strip():
            out.malformed(f'"{fld.label}" item {index} is empty')
            continue
        if item_check is not None:
            problem = item_check(item)
            if problem:
                out.malformed(f'"{fld.label}" item {index}: {problem}')


def _check_string_list(out: _Collector, fld: Any, value: Any) -> None:
    def item_check(item: str) -> Optional[str]:
        if fld.item_min_length is not None and len(item) < fld.item_min_length:
            return f"must be at least {fld.item_min_length} characters"
        if fld.item_max_length is not None and len(item) > fld.item_max_length:
            return f"must be at most {fld.item_max_length} characters"
        return None

    _check_items(out, fld, value.items, item_check)


def _check_url_list(out: _Collector, fld: Any, value: Any) -> None:
    _check_items(out, fld, value.items, lambda item: None if is_valid_url(item) else f"{item!r} is not a valid URL")


def _check_single_select(out: _Collector, fld: Any, value: Any) -> None:
    if value.selected not in {opt.id for opt in fld.options}:
        out.malformed(f'"{fld.label}" has no option "{value.selected}"', scope=IssueScope.OPTION, sub=value.selected)


def _check_multi_select(out: _Collector, fld: Any, value: Any) -> None:
    known = {opt.id for opt in fld.options}
    for option_id in value.selected:
        if option_id not in known:
            out.malformed(f'"{fld.label}" has no option "{option_id}"', scope=IssueScope.OPTION, sub=option_id)
    if len(set(value.selected)) != len(value.selected):
        out.malformed(f'"{fld.label}" selects an option more than once')
    count = len(set(value.selected))
    if fld.max_selections is not None and count > fld.max_selections:
        out.malformed(f'"{fld.label}" allows at most {fld.max_selections} selections (got {count})')
    if fld.min_selections is not None and count < fld.min_selections:
        out.add(
            IssueCategory.INCOMPLETE_SELECTION,
            f'"{fld.label}" needs at least {fld.min_selections} selections (got {count})',
        )


def checkbox_states(fld: Any, response: FieldResponse) -> dict[str, CheckboxState]:
    """Full option → state map with defaults filled in."""
    default = DEFAULT_CHECKBOX_STATE[fld.checkbox_mode]
    given = response.value.values if response.value is not None else {}
    return {opt.id: given.get(opt.id, default) for opt in fld.options}


def _check_checkboxes(out: _Collector, fld: Any, value: Any) -> None:
    known = {opt.id for opt in fld.options}
    allowed = MODE_STATES[fld.checkbox_mode]
    for option_id, state in value.values.items():
        if option_id not in known:
            out.malformed(f'"{fld.label}" has no option "{option_id}"', scope=IssueScope.OPTION, sub=option_id)
        elif state not in allowed:
            out.malformed(
                f'"{fld.label}" option "{option_id}" cannot be {state.value} in {fld.checkbox_mode.value} mode',
                scope=IssueScope.OPTION,
                sub=option_id,
            )

    states = checkbox_states(fld, FieldResponse.answered(value))
    mode = fld.checkbox_mode
    if mode == CheckboxMode.MULTI:
        pending = [oid for oid, state in states.items() if state not in _TERMINAL_MULTI]
    elif mode == CheckboxMode.SIMPLE:
        pending = [oid for oid, state in states.items() if state != CheckboxState.DONE]
    else:
        pending = [oid for oid, state in states.items() if state == CheckboxState.UNFILLED]
    if mode == CheckboxMode.EXPLICIT:
        for option_id in pending:
            out.add(
                IssueCategory.INCOMPLETE_CHECKLIST,
                f'"{fld.label}" option "{option_id}" needs a yes or no answer',
                scope=IssueScope.OPTION,
                sub=option_id,
            )
    elif pending:
        out.add(
            IssueCategory.INCOMPLETE_CHECKLIST,
            f'"{fld.label}" has {len(pending)} unfinished item(s): {", ".join(pending)}',
        )

    if fld.min_done is not None:
        counted = {CheckboxState.DONE}
        if mode == CheckboxMode.MULTI:
            counted = _TERMINAL_MULTI
        elif mode == CheckboxMode.EXPLICIT:
            counted = {CheckboxState.YES, CheckboxState.NO}
        done = sum(1 for state in states.values() if state in counted)
        if done < fld.min_done:
            out.add(
                IssueCategory.INCOMPLETE_CHECKLIST,
                f'"{fld.label}" needs at least {fld.min_done} done item(s) (got {done})',
            )


def _check_url(out: _Collector, fld: Any, value: Any) -> None:
    if not is_valid_url(value.value):
        out.malformed(f'"{fld.label}" is not a valid http(s) URL: {value.value!r}')


def _check_date(out: _Collector, fld: Any, value: Any) -> None:
    text = value.value
    if not is_valid_date(text):
        out.malformed(f'"{fld.label}" must be a YYYY-MM-DD date (got {text!r})')
        return
    if fld.min is not None and text < fld.min:
        out.malformed(f'"{fld.label}" must be on or after {fld.min}')
    if fld.max is not None and text > fld.max:
        out.malformed(f'"{fld.label}" must be on or before {fld.max}')


def _check_year(out: _Collector, fld: Any, value: Any) -> None:
    year = value.value
    if fld.min is not None and year < fld.min:
        out.malformed(f'"{fld.label}" must be {fld.min} or later (got {year})')
    if fld.max is not None and year > fld.max:
        out.malformed(f'"{fld.label}" must be {fld.max} or earlier (got {year})')


def cell_problem(cell_value: Any, column_type: ColumnType) -> Optional[str]:
    """Why an answered cell value does not fit its column type, if it does not."""
    if column_type == ColumnType.NUMBER:
        if isinstance(cell_value, bool) or not isinstance(cell_value, (int, float)):
            return f"{cell_value!r} is not a number"
    elif column_type == ColumnType.YEAR:
        if isinstance(cell_value, bool) or not isinstance(cell_value, int):
            return f"{cell_value!r} is not a year"
    elif not isinstance(cell_value, str) or not cell_value.strip():
        return f"{cell_value!r} is not text"
    elif column_type == ColumnType.URL and not is_valid_url(cell_value):
        return f"{cell_value!r} is not a valid URL"
    elif column_type == ColumnType.DATE and not is_valid_date(cell_value):
        return f"{cell_value!r} is not a YYYY-MM-DD date"
    return None


def _check_table(out: _Collector, fld: Any, value: Any) -> None:
    count = len(value.rows)
    if fld.max_rows is not None and count > fld.max_rows:
        out.malformed(f'"{fld.label}" allows at most {fld.max_rows} rows (got {count})')
    known = {col.id for col in fld.columns}
    for index, row in enumerate(value.rows, start=1):
        for column_id in row:
            if column_id not in known:
                out.malformed(
                    f'"{fld.label}" row {index} has unknown column "{column_id}"',
                    scope=IssueScope.COLUMN, sub=column_id,
                )
        for col in fld.columns:
            cell = row.get(col.id)
            if cell is None:
                if col.required:
                    out.malformed(
                        f'"{fld.label}" row {index} is missing required column "{col.label}"',
                        scope=IssueScope.COLUMN, sub=col.id,
                    )
                continue
            if cell.value is None:
                continue
            problem = cell_problem(cell.value, col.type)
            if problem:
                out.malformed(
                    f'"{fld.label}" row {index}, column "{col.label}": {problem}',
                    scope=IssueScope.COLUMN, sub=col.id,
                )
    if fld.min_rows is not None and count < fld.min_rows:
        out.add(
            IssueCategory.INCOMPLETE_TABLE,
            f'"{fld.label}" needs at least {fld.min_rows} rows (got {count})',
        )


_CHECKS: dict[str, Callable[[_Collector, Any, Any], None]] = {
    "string": _check_string,
    "number": _check_number,
    "string_list": _check_string_list,
    "single_select": _check_single_select,
    "multi_select": _check_multi_select,
    "checkboxes": _check_checkboxes,
    "url": _check_url,
    "url_list": _check_url_list,
    "date": _check_date,
    "year": _check_year,
    "table": _check_table,
}


def validate_field(fld: FormField, response: FieldResponse) -> list[Issue]:
    """Constraint issues for the value of one field; empty when it has none."""
    if response.value is None:
        return []
    out = _Collector(fld)
    _CHECKS[fld.kind](out, fld, response.value)
    return out.issues

