"""Document engine for formdown.

Modules
-------
models          - Schema, responses, issues and the parsed document
syntax          - Marker scanning for the tag and comment syntaxes
attributes      - Marker attribute grammar and canonical rendering
sentinels       - ``%SKIP%`` / ``%ABORT%`` value sentinels
tables          - Typed pipe-table cells
parser          - Text → ``FormDocument``
serializer      - ``FormDocument`` → text (splice or canonical)
validator       - Per-kind constraint checks
inspector       - Sorted issues, progress and completion
patches         - Typed patches and transactional apply
execution_plan  - Order levels and parallel batches
exports         - Plain values and readable reports
"""

from .execution_plan import ExecutionId, ExecutionPlan, build_execution_plan
from .exports import export_values, render_report
from .inspector import InspectResult, ProgressState, ProgressSummary, inspect_form
from .models import AnswerState, FieldResponse, FormDocument, FormSchema, Issue, SyntaxStyle
from .parser import FormParser, parse_form
from .patches import ApplyResult, PatchRejection, apply_patches, parse_patches
from .serializer import serialize_form
from .validator import ValidationIssue, validate_field

__all__ = [
    "AnswerState",
    "ApplyResult",
    "ExecutionId",
    "ExecutionPlan",
    "FieldResponse",
    "FormDocument",
    "FormParser",
    "FormSchema",
    "InspectResult",
    "Issue",
    "PatchRejection",
    "ProgressState",
    "ProgressSummary",
    "SyntaxStyle",
    "ValidationIssue",
    "apply_patches",
    "build_execution_plan",
    "export_values",
    "inspect_form",
    "parse_form",
    "parse_patches",
    "render_report",
    "serialize_form",
    "validate_field",
]
