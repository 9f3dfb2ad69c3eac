"""Fill agents: the delegate the harness hands issues to each turn.

Every agent inherits from ``FillAgent`` and answers a ``FillRequest`` with a
``FillResponse``.  The harness never cares how patches are produced: a mock
replaying a completed document, a scripted list of batches, a human behind a
callback, or a live model behind an adapter all look the same from here.
"""

from __future__ import annotations

import inspect
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

from ..core.execution_plan import ExecutionId
from ..core.models import AnswerState, FieldResponse, FormDocument, Issue
from ..core.patches import PatchRejection, SetStringPatch, patch_for_response

logger = logging.getLogger("formdown.agents")


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------

@dataclass
class TurnStats:
    """Optional usage reported by an agent for one turn."""

    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    tool_calls: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "tool_calls": dict(self.tool_calls),
        }


@dataclass
class FillRequest:
    """Everything an agent sees for one turn of one execution thread."""

    execution_id: ExecutionId
    turn: int
    issues: list[Issue]
    document: FormDocument
    markdown: str
    max_patches: int
    previous_rejections: list[PatchRejection] = field(default_factory=list)
    role_instructions: dict[str, str] = field(default_factory=dict)
    field_ids: Optional[list[str]] = None


@dataclass
class FillResponse:
    patches: list[Any] = field(default_factory=list)
    stats: Optional[TurnStats] = None


# ---------------------------------------------------------------------------
# Abstract base agent
# ---------------------------------------------------------------------------

class FillAgent(ABC):
    """Base class for fill agents.

    Subclasses implement ``fill()``.  One instance may serve several
    execution threads at once when the harness runs a parallel batch, unless
    the caller passes an ``agent_factory`` to the harness.
    """

    name: str = "agent"

    @abstractmethod
    async def fill(self, request: FillRequest) -> FillResponse:
        """Return the patches for *request*'s issues."""
        ...


def _issue_field_ids(issues: list[Issue]) -> list[str]:
    """Field ids in first-seen order."""
    seen: dict[str, None] = {}
    for issue in issues:
        seen.setdefault(issue.field_id, None)
    return list(seen)


# ---------------------------------------------------------------------------
# Mock agents
# ---------------------------------------------------------------------------

class MockAgent(FillAgent):
    """Fills fields by copying responses from an already-completed document.

    Optional fields the completed document leaves unanswered are skipped;
    required ones are left alone so the harness sees the lack of progress.
    """

    name = "mock"

    def __init__(self, completed: FormDocument) -> None:
        self.completed = completed

    def patch_for(self, field_id: str) -> Optional[Any]:
        fld = self.completed.get_field(field_id)
        if fld is None:
            return None
        response = self.completed.response_for(field_id)
        if response.state == AnswerState.UNANSWERED:
            if fld.required:
                return None
            if fld.kind == "checkboxes" and fld.implicit:
                return None
            return patch_for_response(fld, FieldResponse.skipped("No value in completed form"))
        return patch_for_response(fld, response)

    async def fill(self, request: FillRequest) -> FillResponse:
        patches = []
        for field_id in _issue_field_ids(request.issues):
            if len(patches) >= request.max_patches:
                break
            patch = self.patch_for(field_id)
            if patch is not None:
                patches.append(patch)
        logger.debug("%s: %d patches for %s", self.name, len(patches), request.execution_id)
        return FillResponse(patches=patches)


class RejectionMockAgent(MockAgent):
    """A mock that gets non-string fields wrong until told about it.

    The first patch for each non-string field is a ``set_string``, which the
    patch engine rejects as a kind mismatch.  Once the rejection comes back
    in ``previous_rejections`` the correct patch is sent instead.
    """

    name = "rejection-mock"

    def __init__(self, completed: FormDocument) -> None:
        super().__init__(completed)
        self.rejected_field_ids: set[str] = set()

    async def fill(self, request: FillRequest) -> FillResponse:
        for rejection in request.previous_rejections:
            if rejection.field_id:
                self.rejected_field_ids.add(rejection.field_id)

        patches = []
        for field_id in _issue_field_ids(request.issues):
            if len(patches) >= request.max_patches:
                break
            fld = self.completed.get_field(field_id)
            if fld is None:
                continue
            if fld.kind != "string" and field_id not in self.rejected_field_ids:
                patches.append(SetStringPatch(field_id=field_id, value="wrong kind on purpose"))
                continue
            patch = self.patch_for(field_id)
            if patch is not None:
                patches.append(patch)
        return FillResponse(patches=patches)


class ScriptedAgent(FillAgent):
    """Replays a fixed list of patch batches, one per call.

    Once the script runs out every further call returns no patches.
    """

    name = "scripted"

    def __init__(self, batches: list[list[Any]]) -> None:
        self.batches = [list(batch) for batch in batches]
        self.calls = 0

    async def fill(self, request: FillRequest) -> FillResponse:
        index = self.calls
        self.calls += 1
        if index >= len(self.batches):
            return FillResponse()
        return FillResponse(patches=self.batches[index])


FillCallback = Callable[[FillRequest], Union[list[Any], FillResponse, Awaitable[Any]]]


class CallbackAgent(FillAgent):
    """Wraps a plain function (sync or async), e.g. a human at a prompt.

    The callable may return a ``FillResponse`` or just a list of patches.
    """

    name = "callback"

    def __init__(self, callback: FillCallback) -> None:
        self.callback = callback

    async def fill(self, request: FillRequest) -> FillResponse:
        result = self.callback(request)
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, FillResponse):
            return result
        return FillResponse(patches=list(result or []))
