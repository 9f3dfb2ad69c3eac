"""Inspection: prioritized issues, progress counts and the completion verdict."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional

from .models import (
    ALL_ROLES,
    AnswerState,
    FormDocument,
    FormField,
    Issue,
    IssueCategory,
    IssueScope,
    IssueSeverity,
)
from .validator import validate_field

logger = logging.getLogger("formdown.inspector")

_CATEGORY_RANK = {
    IssueCategory.MISSING: 0,
    IssueCategory.MALFORMED: 1,
    IssueCategory.INCOMPLETE_SELECTION: 2,
    IssueCategory.INCOMPLETE_CHECKLIST: 2,
    IssueCategory.INCOMPLETE_TABLE: 2,
    IssueCategory.OPTIONAL_EMPTY: 3,
}


class ProgressState(str, Enum):
    EMPTY = "empty"
    INCOMPLETE = "incomplete"
    INVALID = "invalid"
    COMPLETE = "complete"


@dataclass
class ProgressSummary:
    """Field counts along three independent dimensions."""

    total_fields: int = 0
    required_fields: int = 0
    # answer state
    unanswered_fields: int = 0
    answered_fields: int = 0
    skipped_fields: int = 0
    aborted_fields: int = 0
    # validity
    valid_fields: int = 0
    invalid_fields: int = 0
    # value presence
    empty_fields: int = 0
    filled_fields: int = 0
    empty_required_fields: int = 0

    def to_dict(self) -> dict[str, int]:
        return dict(self.__dict__)


@dataclass
class InspectResult:
    issues: list[Issue] = field(default_factory=list)
    progress: ProgressSummary = field(default_factory=ProgressSummary)
    is_complete: bool = False
    form_state: ProgressState = ProgressState.EMPTY

    @property
    def required_issues(self) -> list[Issue]:
        return [issue for issue in self.issues if issue.is_required]

    def to_dict(self) -> dict:
        return {
            "is_complete": self.is_complete,
            "form_state": self.form_state.value,
            "progress": self.progress.to_dict(),
            "issues": [issue.model_dump(mode="json") for issue in self.issues],
        }


def fields_for_roles(doc: FormDocument, roles: Optional[Iterable[str]]) -> list[FormField]:
    """Fields targeted at *roles*; ``None`` or ``"*"`` selects every field."""
    fields = doc.form.fields
    if roles is None:
        return fields
    wanted = set(roles)
    if ALL_ROLES in wanted:
        return fields
    return [fld for fld in fields if fld.role in wanted]


def field_issues(doc: FormDocument, fld: FormField) -> list[Issue]:
    """All issues for one field: missing/empty, or whatever its value violates."""
    response = doc.response_for(fld.id)
    if response.state == AnswerState.UNANSWERED:
        if fld.required:
            return [
                Issue(
                    ref=fld.id,
                    field_id=fld.id,
                    severity=IssueSeverity.REQUIRED,
                    priority=fld.priority,
                    category=IssueCategory.MISSING,
                    message=f'Required field "{fld.label}" has no value',
                )
            ]
        return [
            Issue(
                ref=fld.id,
                field_id=fld.id,
                severity=IssueSeverity.RECOMMENDED,
                priority=fld.priority,
                category=IssueCategory.OPTIONAL_EMPTY,
                message=f'Optional field "{fld.label}" has no value',
            )
        ]
    return validate_field(fld, response)


def _sub_index(doc: FormDocument, issue: Issue) -> int:
    if issue.scope == IssueScope.FIELD:
        return -1
    fld = doc.get_field(issue.field_id)
    sub = issue.ref[len(issue.field_id) + 1:]
    ids = [opt.id for opt in getattr(fld, "options", [])] or [col.id for col in getattr(fld, "columns", [])]
    return ids.index(sub) if sub in ids else len(ids)


def sort_issues(doc: FormDocument, issues: list[Issue]) -> list[Issue]:
    """Priority first, then declaration order; stable for everything else."""
    return sorted(
        issues,
        key=lambda issue: (
            issue.priority,
            doc.form.position(issue.field_id),
            _sub_index(doc, issue),
            _CATEGORY_RANK[issue.category],
        ),
    )


def _progress(doc: FormDocument, fields: list[FormField], issues: list[Issue]) -> ProgressSummary:
    invalid = {issue.field_id for issue in issues if issue.category == IssueCategory.MALFORMED}
    summary = ProgressSummary()
    for fld in fields:
        response = doc.response_for(fld.id)
        summary.total_fields += 1
        if fld.required:
            summary.required_fields += 1
        state = response.state
        if state == AnswerState.ANSWERED:
            summary.answered_fields += 1
        elif state == AnswerState.SKIPPED:
            summary.skipped_fields += 1
        elif state == AnswerState.ABORTED:
            summary.aborted_fields += 1
        else:
            summary.unanswered_fields += 1
        if fld.id in invalid:
            summary.invalid_fields += 1
        else:
            summary.valid_fields += 1
        if response.value is None:
            summary.empty_fields += 1
            if fld.required and state == AnswerState.UNANSWERED:
                summary.empty_required_fields += 1
        else:
            summary.filled_fields += 1
    return summary


def _form_state(progress: ProgressSummary, is_complete: bool) -> ProgressState:
    if progress.invalid_fields:
        return ProgressState.INVALID
    if is_complete:
        return ProgressState.COMPLETE
    if progress.answered_fields or progress.skipped_fields or progress.aborted_fields:
        return ProgressState.INCOMPLETE
    return ProgressState.EMPTY


def inspect_form(
    doc: FormDocument,
    *,
    roles: Optional[Iterable[str]] = None,
    field_ids: Optional[Iterable[str]] = None,
) -> InspectResult:
    """Inspect *doc* and return its sorted issues and completion verdict.

    Parameters
    ----------
    doc
        The document to inspect.
    roles
        Restrict inspection to fields targeted at these roles; ``"*"`` (or
        ``None``) means every role.
    field_ids
        Further restrict inspection to these fields (used by the harness to
        scope a turn to one group or batch item).
    """
    fields = fields_for_roles(doc, roles)
    if field_ids is not None:
        scope = set(field_ids)
        fields = [fld for fld in fields if fld.id in scope]

    issues: list[Issue] = []
    for fld in fields:
        issues.extend(field_issues(doc, fld))
    issues = sort_issues(doc, issues)

    is_complete = not any(issue.is_required for issue in issues)
    progress = _progress(doc, fields, issues)
    result = InspectResult(
        issues=issues,
        progress=progress,
        is_complete=is_complete,
        form_state=_form_state(progress, is_complete),
    )
    logger.debug(
        "Inspected '%s': %d issues (%d required), complete=%s",
        doc.form.id, len(issues), len(result.required_issues), is_complete,
    )
    return result
