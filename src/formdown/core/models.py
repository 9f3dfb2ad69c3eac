"""Document model for structured form documents.

A parsed document is a ``FormSchema`` (immutable structure: form, groups,
fields, options, columns) plus a mutable map of ``FieldResponse`` objects
keyed by field id.  Field definitions and response values are closed
tagged unions discriminated on ``kind``.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, model_validator

from ..errors import ResponseKindError


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class FieldKind(str, Enum):
    """Semantic type of a form field."""
    STRING = "string"
    NUMBER = "number"
    STRING_LIST = "string_list"
    SINGLE_SELECT = "single_select"
    MULTI_SELECT = "multi_select"
    CHECKBOXES = "checkboxes"
    URL = "url"
    URL_LIST = "url_list"
    DATE = "date"
    YEAR = "year"
    TABLE = "table"


class AnswerState(str, Enum):
    UNANSWERED = "unanswered"
    ANSWERED = "answered"
    SKIPPED = "skipped"
    ABORTED = "aborted"


class CheckboxMode(str, Enum):
    MULTI = "multi"
    SIMPLE = "simple"
    EXPLICIT = "explicit"


class CheckboxState(str, Enum):
    TODO = "todo"
    DONE = "done"
    INCOMPLETE = "incomplete"
    ACTIVE = "active"
    NA = "na"
    UNFILLED = "unfilled"
    YES = "yes"
    NO = "no"


class ColumnType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    URL = "url"
    DATE = "date"
    YEAR = "year"


class SyntaxStyle(str, Enum):
    """Concrete marker syntax a document was written in."""
    TAGS = "tags"            # {% field ... %}
    COMMENTS = "comments"    # <!-- f:field ... -->


class DocTag(str, Enum):
    DESCRIPTION = "description"
    INSTRUCTIONS = "instructions"
    DOCUMENTATION = "documentation"


class IssueSeverity(str, Enum):
    REQUIRED = "required"
    RECOMMENDED = "recommended"


class IssueCategory(str, Enum):
    MISSING = "missing"
    MALFORMED = "malformed"
    INCOMPLETE_SELECTION = "incomplete_selection"
    INCOMPLETE_CHECKLIST = "incomplete_checklist"
    INCOMPLETE_TABLE = "incomplete_table"
    OPTIONAL_EMPTY = "optional_empty"


class IssueScope(str, Enum):
    FIELD = "field"
    OPTION = "option"
    COLUMN = "column"


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

AGENT_ROLE = "agent"
USER_ROLE = "user"
DEFAULT_ROLES = [USER_ROLE, AGENT_ROLE]
ALL_ROLES = "*"
DEFAULT_PRIORITY = 2
IMPLICIT_GROUP_ID = "default"
PLAN_FIELD_ID = "checkboxes"
PLAN_FIELD_LABEL = "Checkboxes"

MODE_STATES: dict[CheckboxMode, tuple[CheckboxState, ...]] = {
    CheckboxMode.MULTI: (
        CheckboxState.TODO,
        CheckboxState.DONE,
        CheckboxState.INCOMPLETE,
        CheckboxState.ACTIVE,
        CheckboxState.NA,
    ),
    CheckboxMode.SIMPLE: (CheckboxState.TODO, CheckboxState.DONE),
    CheckboxMode.EXPLICIT: (CheckboxState.UNFILLED, CheckboxState.YES, CheckboxState.NO),
}

DEFAULT_CHECKBOX_STATE: dict[CheckboxMode, CheckboxState] = {
    CheckboxMode.MULTI: CheckboxState.TODO,
    CheckboxMode.SIMPLE: CheckboxState.TODO,
    CheckboxMode.EXPLICIT: CheckboxState.UNFILLED,
}


# ---------------------------------------------------------------------------
# Schema: options, columns, fields
# ---------------------------------------------------------------------------

class Option(BaseModel):
    id: str
    label: str


class TableColumn(BaseModel):
    id: str
    label: str
    type: ColumnType = ColumnType.STRING
    required: bool = False


class FieldBase(BaseModel):
    """Attributes shared by every field kind."""

    id: str
    label: str
    required: bool = False
    role: str = AGENT_ROLE
    priority: int = Field(default=DEFAULT_PRIORITY, ge=1, le=4)
    order: Optional[int] = None       # only for fields outside explicit groups
    parallel: Optional[str] = None    # only for fields outside explicit groups


class StringField(FieldBase):
    kind: Literal["string"] = "string"
    min_length: Optional[int] = Field(default=None, ge=0)
    max_length: Optional[int] = Field(default=None, ge=0)
    pattern: Optional[str] = None


class NumberField(FieldBase):
    kind: Literal["number"] = "number"
    min: Optional[Union[int, float]] = None
    max: Optional[Union[int, float]] = None
    integer: bool = False


class StringListField(FieldBase):
    kind: Literal["string_list"] = "string_list"
    min_items: Optional[int] = Field(default=None, ge=0)
    max_items: Optional[int] = Field(default=None, ge=0)
    item_min_length: Optional[int] = Field(default=None, ge=0)
    item_max_length: Optional[int] = Field(default=None, ge=0)
    unique_items: bool = False


class SingleSelectField(FieldBase):
    kind: Literal["single_select"] = "single_select"
    options: list[Option] = Field(default_factory=list)


class MultiSelectField(FieldBase):
    kind: Literal["multi_select"] = "multi_select"
    options: list[Option] = Field(default_factory=list)
    min_selections: Optional[int] = Field(default=None, ge=0)
    max_selections: Optional[int] = Field(default=None, ge=0)


class CheckboxesField(FieldBase):
    kind: Literal["checkboxes"] = "checkboxes"
    options: list[Option] = Field(default_factory=list)
    checkbox_mode: CheckboxMode = CheckboxMode.MULTI
    min_done: Optional[int] = Field(default=None, ge=0)
    implicit: bool = False    # synthetic plan-document checklist


class UrlField(FieldBase):
    kind: Literal["url"] = "url"


class UrlListField(FieldBase):
    kind: Literal["url_list"] = "url_list"
    min_items: Optional[int] = Field(default=None, ge=0)
    max_items: Optional[int] = Field(default=None, ge=0)
    unique_items: bool = False


class DateField(FieldBase):
    kind: Literal["date"] = "date"
    min: Optional[str] = None    # YYYY-MM-DD
    max: Optional[str] = None


class YearField(FieldBase):
    kind: Literal["year"] = "year"
    min: Optional[int] = None
    max: Optional[int] = None


class TableField(FieldBase):
    kind: Literal["table"] = "table"
    columns: list[TableColumn] = Field(default_factory=list)
    min_rows: Optional[int] = Field(default=None, ge=0)
    max_rows: Optional[int] = Field(default=None, ge=0)

    def column(self, column_id: str) -> Optional[TableColumn]:
        for col in self.columns:
            if col.id == column_id:
                return col
        return None


FormField = Annotated[
    Union[
        StringField,
        NumberField,
        StringListField,
        SingleSelectField,
        MultiSelectField,
        CheckboxesField,
        UrlField,
        UrlListField,
        DateField,
        YearField,
        TableField,
    ],
    Field(discriminator="kind"),
]

SelectorField = Union[SingleSelectField, MultiSelectField, CheckboxesField]


class Group(BaseModel):
    """An ordered run of fields processed together by the harness."""

    id: str
    title: str = ""
    order: int = 0
    parallel: Optional[str] = None
    implicit: bool = False
    fields: list[FormField] = Field(default_factory=list)


class FormSchema(BaseModel):
    """Immutable structure of one form, rebuilt wholesale on re-parse."""

    id: str
    title: str = ""
    groups: list[Group] = Field(default_factory=list)
    roles: list[str] = Field(default_factory=lambda: list(DEFAULT_ROLES))
    role_instructions: dict[str, str] = Field(default_factory=dict)
    harness_hints: dict[str, int] = Field(default_factory=dict)

    _fields_by_id: dict[str, Any] = PrivateAttr(default_factory=dict)
    _group_by_field: dict[str, Group] = PrivateAttr(default_factory=dict)
    _position: dict[str, int] = PrivateAttr(default_factory=dict)

    def model_post_init(self, __context: Any) -> None:
        for group in self.groups:
            for fld in group.fields:
                self._fields_by_id[fld.id] = fld
                self._group_by_field[fld.id] = group
                self._position[fld.id] = len(self._position)

    @property
    def fields(self) -> list[FormField]:
        """All fields in declaration order."""
        return [fld for group in self.groups for fld in group.fields]

    def get_field(self, field_id: str) -> Optional[FormField]:
        return self._fields_by_id.get(field_id)

    def group_of(self, field_id: str) -> Optional[Group]:
        return self._group_by_field.get(field_id)

    def position(self, field_id: str) -> int:
        """Declaration index of a field; unknown ids sort last."""
        return self._position.get(field_id, len(self._position))

    def get_group(self, group_id: str) -> Optional[Group]:
        for group in self.groups:
            if group.id == group_id:
                return group
        return None


# ---------------------------------------------------------------------------
# Response values
# ---------------------------------------------------------------------------

class StringValue(BaseModel):
    kind: Literal["string"] = "string"
    value: str


class NumberValue(BaseModel):
    kind: Literal["number"] = "number"
    value: Union[int, float]


class StringListValue(BaseModel):
    kind: Literal["string_list"] = "string_list"
    items: list[str]


class SingleSelectValue(BaseModel):
    kind: Literal["single_select"] = "single_select"
    selected: str


class MultiSelectValue(BaseModel):
    kind: Literal["multi_select"] = "multi_select"
    selected: list[str]


class CheckboxesValue(BaseModel):
    kind: Literal["checkboxes"] = "checkboxes"
    values: dict[str, CheckboxState]


class UrlValue(BaseModel):
    kind: Literal["url"] = "url"
    value: str


class UrlListValue(BaseModel):
    kind: Literal["url_list"] = "url_list"
    items: list[str]


class DateValue(BaseModel):
    kind: Literal["date"] = "date"
    value: str


class YearValue(BaseModel):
    kind: Literal["year"] = "year"
    value: int


class Cell(BaseModel):
    """One table cell.  Empty cells are absent from their row."""

    state: AnswerState = AnswerState.ANSWERED
    value: Union[int, float, str, None] = None
    reason: Optional[str] = None

    @model_validator(mode="after")
    def _check_state(self) -> "Cell":
        if self.state == AnswerState.UNANSWERED:
            raise ValueError("table cells are answered, skipped or aborted")
        if self.state == AnswerState.ANSWERED and self.value is None:
            raise ValueError("answered cell needs a value")
        if self.state != AnswerState.ANSWERED and self.value is not None:
            raise ValueError(f"{self.state.value} cell cannot carry a value")
        return self


class TableValue(BaseModel):
    kind: Literal["table"] = "table"
    rows: list[dict[str, Cell]]


FieldValue = Annotated[
    Union[
        StringValue,
        NumberValue,
        StringListValue,
        SingleSelectValue,
        MultiSelectValue,
        CheckboxesValue,
        UrlValue,
        UrlListValue,
        DateValue,
        YearValue,
        TableValue,
    ],
    Field(discriminator="kind"),
]


class FieldResponse(BaseModel):
    """Fill state of one field."""

    state: AnswerState = AnswerState.UNANSWERED
    value: Optional[FieldValue] = None
    reason: Optional[str] = None

    @model_validator(mode="after")
    def _check_state(self) -> "FieldResponse":
        if self.state == AnswerState.ANSWERED and self.value is None:
            raise ValueError("answered response needs a value")
        if self.state != AnswerState.ANSWERED and self.value is not None:
            raise ValueError(f"{self.state.value} response cannot carry a value")
        if self.reason is not None and self.state not in (AnswerState.SKIPPED, AnswerState.ABORTED):
            raise ValueError("only skipped or aborted responses carry a reason")
        return self

    @classmethod
    def unanswered(cls) -> "FieldResponse":
        return cls()

    @classmethod
    def answered(cls, value: Any) -> "FieldResponse":
        return cls(state=AnswerState.ANSWERED, value=value)

    @classmethod
    def skipped(cls, reason: Optional[str] = None) -> "FieldResponse":
        return cls(state=AnswerState.SKIPPED, reason=reason or None)

    @classmethod
    def aborted(cls, reason: Optional[str] = None) -> "FieldResponse":
        return cls(state=AnswerState.ABORTED, reason=reason or None)

    @property
    def is_resolved(self) -> bool:
        return self.state != AnswerState.UNANSWERED


def bind_response(fld: FieldBase, response: FieldResponse) -> FieldResponse:
    """Return *response* after checking its value variant matches *fld*."""
    if response.value is not None and response.value.kind != getattr(fld, "kind", None):
        raise ResponseKindError(
            f'{response.value.kind} value cannot be stored in {fld.kind} field "{fld.id}"'
        )
    return response


# ---------------------------------------------------------------------------
# Documentation blocks and layout
# ---------------------------------------------------------------------------

class DocBlock(BaseModel):
    """Free-form description / instructions / documentation attached to an id."""

    tag: DocTag
    ref: str
    body: str = ""


class LayoutKind(str, Enum):
    PROSE = "prose"
    GROUP = "group"
    FIELD = "field"
    DOC = "doc"


class LayoutNode(BaseModel):
    """One block in the body of a form, in document order.

    ``ref`` is a group or field id, or the index of a doc block.  Prose nodes
    carry their text and, in plan documents, the offsets of checklist tokens
    within that text.
    """

    kind: LayoutKind
    ref: str = ""
    text: str = ""
    tokens: dict[str, int] = Field(default_factory=dict)    # option id -> offset in text
    children: list["LayoutNode"] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Issues
# ---------------------------------------------------------------------------

class Issue(BaseModel):
    """Why a field is not yet resolved.  Derived on demand, never persisted."""

    ref: str                          # field id, or "field.option" / "field.column"
    field_id: str
    scope: IssueScope = IssueScope.FIELD
    severity: IssueSeverity
    priority: int
    category: IssueCategory
    message: str

    @property
    def is_required(self) -> bool:
        return self.severity == IssueSeverity.REQUIRED


# ---------------------------------------------------------------------------
# Document
# ---------------------------------------------------------------------------

class FormDocument(BaseModel):
    """A parsed form: schema, responses, and everything needed to write it back."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    form: FormSchema
    responses: dict[str, FieldResponse] = Field(default_factory=dict)
    docs: list[DocBlock] = Field(default_factory=list)
    syntax: SyntaxStyle = SyntaxStyle.TAGS
    frontmatter: dict[str, Any] = Field(default_factory=dict)
    preamble: str = ""
    postamble: str = ""
    layout: list[LayoutNode] = Field(default_factory=list)

    # Source bookkeeping for verbatim write-back
    source: Optional[str] = None
    baseline: dict[str, FieldResponse] = Field(default_factory=dict)
    field_spans: dict[str, tuple[int, int]] = Field(default_factory=dict)
    plan_tokens: dict[str, int] = Field(default_factory=dict)

    def model_post_init(self, __context: Any) -> None:
        for fld in self.form.fields:
            response = self.responses.setdefault(fld.id, FieldResponse())
            bind_response(fld, response)

    def get_field(self, field_id: str) -> Optional[FormField]:
        return self.form.get_field(field_id)

    def response_for(self, field_id: str) -> FieldResponse:
        return self.responses.get(field_id) or FieldResponse()

    def set_response(self, field_id: str, response: FieldResponse) -> None:
        fld = self.form.get_field(field_id)
        if fld is None:
            raise KeyError(field_id)
        self.responses[field_id] = bind_response(fld, response)

    def doc_for(self, tag: DocTag, ref: str) -> Optional[DocBlock]:
        for block in self.docs:
            if block.tag == tag and block.ref == ref:
                return block
        return None


# ---------------------------------------------------------------------------
# Checklist tokens
# ---------------------------------------------------------------------------

SELECT_TOKENS: dict[str, bool] = {"[ ]": False, "[x]": True, "[X]": True}

CHECKBOX_TOKENS: dict[str, CheckboxState] = {
    "[ ]": CheckboxState.TODO,
    "[x]": CheckboxState.DONE,
    "[X]": CheckboxState.DONE,
    "[/]": CheckboxState.INCOMPLETE,
    "[*]": CheckboxState.ACTIVE,
    "[-]": CheckboxState.NA,
    "[y]": CheckboxState.YES,
    "[Y]": CheckboxState.YES,
    "[n]": CheckboxState.NO,
    "[N]": CheckboxState.NO,
}

TOKEN_FOR_STATE: dict[CheckboxState, str] = {
    CheckboxState.TODO: "[ ]",
    CheckboxState.UNFILLED: "[ ]",
    CheckboxState.DONE: "[x]",
    CheckboxState.INCOMPLETE: "[/]",
    CheckboxState.ACTIVE: "[*]",
    CheckboxState.NA: "[-]",
    CheckboxState.YES: "[y]",
    CheckboxState.NO: "[n]",
}


def checkbox_state_for_token(token: str, mode: CheckboxMode) -> Optional[CheckboxState]:
    """Map a bracket token to a state in *mode*; ``None`` if the mode forbids it."""
    state = CHECKBOX_TOKENS.get(token)
    if state == CheckboxState.TODO and mode == CheckboxMode.EXPLICIT:
        state = CheckboxState.UNFILLED
    if state is None or state not in MODE_STATES[mode]:
        return None
    return state
