"""The fill harness: inspect → delegate → apply → record, turn after turn.

Two drivers share the same budgets:

* ``FormHarness`` is the manual protocol.  A caller alternates ``step()``
  (get the next issue batch) and ``apply(patches)`` (commit a patch batch)
  and decides for itself who produces the patches.
* ``FillHarness`` is the async driving loop.  It walks the execution plan
  one order level at a time; within a level, the serial thread and every
  parallel batch item run as separate execution threads, bounded by
  ``max_parallel_agents``.  Commits go through one lock so the document
  only ever sees one patch batch at a time.

Termination is data (``TerminationStatus``), never an exception.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import BaseModel

from ..core.execution_plan import ExecutionId, ExecutionThread, build_execution_plan
from ..core.inspector import InspectResult, inspect_form
from ..core.models import FormDocument, Issue
from ..core.patches import ApplyResult, PatchRejection, apply_patches
from ..core.serializer import serialize_form
from ..errors import HarnessError
from .agents import FillAgent, FillRequest, FillResponse
from .config import HarnessConfig
from .record import FillRecord, TurnRecord, utc_now

logger = logging.getLogger("formdown.harness")


# ---------------------------------------------------------------------------
# Enums and results
# ---------------------------------------------------------------------------

class TerminationStatus(str, Enum):
    COMPLETE = "complete"
    INCOMPLETE_BUDGET_EXHAUSTED = "incomplete_budget_exhausted"
    INCOMPLETE_NO_PROGRESS = "incomplete_no_progress"


class ThreadOutcome(str, Enum):
    COMPLETE = "complete"
    BUDGET_EXHAUSTED = "budget_exhausted"
    NO_PROGRESS = "no_progress"


class HarnessPhase(str, Enum):
    INIT = "init"
    STEP = "step"
    WAIT = "wait"
    COMPLETE = "complete"


@dataclass
class StepResult:
    """What the manual harness hands back after ``step()`` or ``apply()``."""

    turn: int
    issues: list[Issue] = field(default_factory=list)
    step_budget: int = 0
    is_complete: bool = False
    inspection: Optional[InspectResult] = None
    apply_result: Optional[ApplyResult] = None
    termination: Optional[TerminationStatus] = None

    @property
    def rejections(self) -> list[PatchRejection]:
        return self.apply_result.rejections if self.apply_result else []


@dataclass
class FillResult:
    status: TerminationStatus
    document: FormDocument
    inspection: InspectResult
    record: FillRecord
    threads: dict[str, ThreadOutcome] = field(default_factory=dict)

    @property
    def is_complete(self) -> bool:
        return self.status == TerminationStatus.COMPLETE

    @property
    def markdown(self) -> str:
        return serialize_form(self.document)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def markdown_digest(doc: FormDocument) -> str:
    return hashlib.sha256(serialize_form(doc).encode("utf-8")).hexdigest()


def _patch_dict(patch: Any) -> dict[str, Any]:
    if isinstance(patch, BaseModel):
        return patch.model_dump(mode="json")
    if isinstance(patch, dict):
        return dict(patch)
    return {"invalid": repr(patch)}


def _cap(issues: list[Issue], limit: int) -> list[Issue]:
    return issues[:limit]


def _step_budget(issues: list[Issue], config: HarnessConfig) -> int:
    return min(config.max_patches_per_turn, sum(1 for issue in issues if issue.is_required))


def _turn_record(
    turn: int,
    execution_id: ExecutionId,
    issues: list[Issue],
    patches: list[Any],
    result: Optional[ApplyResult],
    doc: FormDocument,
    started_at: str,
    stats: Optional[dict[str, Any]] = None,
) -> TurnRecord:
    inspection = result.inspection if result and result.inspection else None
    return TurnRecord(
        turn=turn,
        order=execution_id.order,
        execution_id=str(execution_id),
        issues=[issue.model_dump(mode="json") for issue in issues],
        patches=[_patch_dict(p) for p in patches],
        applied=bool(result and result.applied),
        rejections=[r.to_dict() for r in result.rejections] if result else [],
        warnings=[w.message for w in result.warnings] if result else [],
        required_issues_after=len(inspection.required_issues) if inspection else 0,
        stats=stats or {},
        markdown_sha256=markdown_digest(doc),
        started_at=started_at,
        completed_at=utc_now(),
    )


# ---------------------------------------------------------------------------
# Manual harness
# ---------------------------------------------------------------------------

class FormHarness:
    """Manual step/apply protocol over one document.

    Usage::

        harness = FormHarness(doc)
        step = harness.step()
        while not step.is_complete and step.termination is None:
            step = harness.apply(make_patches(step.issues))
            if step.termination is None and not step.is_complete:
                step = harness.step()
    """

    def __init__(
        self,
        doc: FormDocument,
        config: Optional[HarnessConfig] = None,
        *,
        execution_id: Optional[ExecutionId] = None,
    ) -> None:
        self.doc = doc
        self.config = config or HarnessConfig()
        self.execution_id = execution_id or ExecutionId.serial(0)
        self.phase = HarnessPhase.INIT
        self.turn = 0
        self.termination: Optional[TerminationStatus] = None
        self.record = FillRecord(form_id=doc.form.id, agent="manual", config=self.config.model_dump())
        self._issues: list[Issue] = []
        self._started_at = ""

    def _inspect(self) -> InspectResult:
        return inspect_form(self.doc, roles=self.config.target_roles)

    def _finish(self, status: TerminationStatus) -> None:
        self.phase = HarnessPhase.COMPLETE
        self.termination = status
        self.record.status = status.value
        self.record.completed_at = utc_now()
        self.record.progress = self._inspect().progress.to_dict()
        logger.info("Harness for '%s' finished: %s after %d turns", self.doc.form.id, status.value, self.turn)

    def step(self) -> StepResult:
        """Start the next turn and return the issues to work on."""
        if self.phase == HarnessPhase.COMPLETE:
            raise HarnessError("harness is complete; cannot step")
        if self.phase == HarnessPhase.WAIT:
            raise HarnessError("apply() the pending turn before stepping again")

        inspection = self._inspect()
        if inspection.is_complete:
            self._finish(TerminationStatus.COMPLETE)
            return StepResult(self.turn, is_complete=True, inspection=inspection, termination=self.termination)
        if self.turn >= self.config.max_turns:
            self._finish(TerminationStatus.INCOMPLETE_BUDGET_EXHAUSTED)
            return StepResult(self.turn, inspection=inspection, termination=self.termination)

        self.turn += 1
        self._issues = _cap(inspection.issues, self.config.max_issues_per_turn)
        self._started_at = utc_now()
        self.phase = HarnessPhase.WAIT
        return StepResult(
            self.turn,
            issues=list(self._issues),
            step_budget=_step_budget(self._issues, self.config),
            inspection=inspection,
        )

    def apply(self, patches: list[Any], stats: Optional[dict[str, Any]] = None) -> StepResult:
        """Commit one patch batch for the pending turn."""
        if self.phase != HarnessPhase.WAIT:
            raise HarnessError(f"cannot apply in phase '{self.phase.value}'")

        patches = list(patches)
        if not patches:
            self.record.turns.append(
                _turn_record(self.turn, self.execution_id, self._issues, [], None, self.doc, self._started_at, stats)
            )
            self._finish(TerminationStatus.INCOMPLETE_NO_PROGRESS)
            return StepResult(self.turn, inspection=self._inspect(), termination=self.termination)
        if len(patches) > self.config.max_patches_per_turn:
            logger.warning(
                "Turn %d sent %d patches (limit %d)", self.turn, len(patches), self.config.max_patches_per_turn
            )
            self.record.turns.append(
                _turn_record(self.turn, self.execution_id, self._issues, patches, None, self.doc, self._started_at, stats)
            )
            self._finish(TerminationStatus.INCOMPLETE_BUDGET_EXHAUSTED)
            return StepResult(self.turn, inspection=self._inspect(), termination=self.termination)

        result = apply_patches(self.doc, patches)
        self.record.turns.append(
            _turn_record(self.turn, self.execution_id, self._issues, patches, result, self.doc, self._started_at, stats)
        )
        inspection = self._inspect()
        issues = _cap(inspection.issues, self.config.max_issues_per_turn)
        step = StepResult(
            self.turn,
            issues=issues,
            step_budget=_step_budget(issues, self.config),
            is_complete=inspection.is_complete,
            inspection=inspection,
            apply_result=result,
        )
        if inspection.is_complete:
            self._finish(TerminationStatus.COMPLETE)
        elif self.turn >= self.config.max_turns:
            self._finish(TerminationStatus.INCOMPLETE_BUDGET_EXHAUSTED)
        else:
            self.phase = HarnessPhase.STEP
        step.termination = self.termination
        return step

    @property
    def markdown(self) -> str:
        return serialize_form(self.doc)


# ---------------------------------------------------------------------------
# Async driving loop
# ---------------------------------------------------------------------------

AgentFactory = Callable[[ExecutionThread], FillAgent]


class FillHarness:
    """Drive an agent over a document until it is complete or a budget runs out.

    Parameters
    ----------
    doc
        The document to fill; mutated in place through the patch engine.
    config
        Budgets and targeting (``HarnessConfig`` defaults when omitted).
    """

    def __init__(self, doc: FormDocument, config: Optional[HarnessConfig] = None) -> None:
        self.doc = doc
        self.config = config or HarnessConfig()
        self.plan = build_execution_plan(doc.form)
        self.turns_taken = 0
        self.record = FillRecord(form_id=doc.form.id, config=self.config.model_dump())
        self._lock: Optional[asyncio.Lock] = None
        self._semaphore: Optional[asyncio.Semaphore] = None

    def _inspect(self, field_ids: Optional[list[str]] = None) -> InspectResult:
        return inspect_form(self.doc, roles=self.config.target_roles, field_ids=field_ids)

    async def run(self, agent: FillAgent, agent_factory: Optional[AgentFactory] = None) -> FillResult:
        """Fill the document and return how the run ended.

        Parameters
        ----------
        agent
            Delegate for the serial thread of each level, and for batch
            items too unless *agent_factory* is given.
        agent_factory
            Optional callable returning a fresh agent for each parallel
            batch thread.
        """
        self._lock = asyncio.Lock()
        self._semaphore = asyncio.Semaphore(self.config.max_parallel_agents)
        self.record.agent = agent.name
        outcomes: dict[str, ThreadOutcome] = {}
        status: Optional[TerminationStatus] = None

        logger.info(
            "Filling '%s': %d order level(s), budget %d turns",
            self.doc.form.id, len(self.plan.levels), self.config.max_turns,
        )
        for level in self.plan.levels:
            threads = level.threads()
            agents = []
            for thread in threads:
                thread_agent = agent
                if agent_factory is not None and thread.execution_id.kind == "batch":
                    thread_agent = agent_factory(thread)
                agents.append(thread_agent)

            if self.config.concurrent:
                level_outcomes = await self._run_concurrently(threads, agents)
            else:
                level_outcomes = [await self._run_thread(t, a) for t, a in zip(threads, agents)]

            for thread, outcome in zip(threads, level_outcomes):
                outcomes[str(thread.execution_id)] = outcome
            logger.debug("Order level %d finished: %s", level.order, [o.value for o in level_outcomes])

            if ThreadOutcome.BUDGET_EXHAUSTED in level_outcomes:
                status = TerminationStatus.INCOMPLETE_BUDGET_EXHAUSTED
                break
            if ThreadOutcome.NO_PROGRESS in level_outcomes:
                status = TerminationStatus.INCOMPLETE_NO_PROGRESS
                break

        inspection = self._inspect()
        if inspection.is_complete:
            status = TerminationStatus.COMPLETE
        elif status is None:
            status = TerminationStatus.INCOMPLETE_NO_PROGRESS

        self.record.status = status.value
        self.record.threads = {key: outcome.value for key, outcome in outcomes.items()}
        self.record.progress = inspection.progress.to_dict()
        self.record.completed_at = utc_now()
        logger.info("Fill of '%s' ended %s after %d turns", self.doc.form.id, status.value, self.turns_taken)
        return FillResult(
            status=status,
            document=self.doc,
            inspection=inspection,
            record=self.record,
            threads=outcomes,
        )

    async def _run_concurrently(
        self, threads: list[ExecutionThread], agents: list[FillAgent]
    ) -> list[ThreadOutcome]:
        """Run a level's threads together; a failing thread cancels its siblings."""
        tasks = [asyncio.ensure_future(self._run_thread(t, a)) for t, a in zip(threads, agents)]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.warning("Level aborted; cancelled %d sibling thread(s)", sum(t.cancelled() for t in tasks))
            raise

    async def _run_thread(self, thread: ExecutionThread, agent: FillAgent) -> ThreadOutcome:
        """Run one execution thread to a terminal outcome."""
        assert self._lock is not None and self._semaphore is not None
        execution_id = thread.execution_id
        field_ids = thread.field_ids
        rejections: list[PatchRejection] = []

        while True:
            async with self._lock:
                inspection = self._inspect(field_ids)
                if inspection.is_complete:
                    return ThreadOutcome.COMPLETE
                if self.turns_taken >= self.config.max_turns:
                    logger.info("%s: turn budget exhausted", execution_id)
                    return ThreadOutcome.BUDGET_EXHAUSTED
                self.turns_taken += 1
                turn = self.turns_taken
                issues = _cap(inspection.issues, self.config.max_issues_per_turn)
                request = FillRequest(
                    execution_id=execution_id,
                    turn=turn,
                    issues=issues,
                    document=self.doc,
                    markdown=serialize_form(self.doc),
                    max_patches=self.config.max_patches_per_turn,
                    previous_rejections=rejections,
                    role_instructions=dict(self.doc.form.role_instructions),
                    field_ids=list(field_ids),
                )
            started_at = utc_now()

            async with self._semaphore:
                response: FillResponse = await agent.fill(request)
            patches = list(response.patches)
            stats = response.stats.to_dict() if response.stats else {}

            async with self._lock:
                if not patches:
                    self.record.turns.append(
                        _turn_record(turn, execution_id, issues, [], None, self.doc, started_at, stats)
                    )
                    logger.info("%s: turn %d produced no patches", execution_id, turn)
                    return ThreadOutcome.NO_PROGRESS
                if len(patches) > self.config.max_patches_per_turn:
                    self.record.turns.append(
                        _turn_record(turn, execution_id, issues, patches, None, self.doc, started_at, stats)
                    )
                    logger.warning(
                        "%s: turn %d sent %d patches (limit %d)",
                        execution_id, turn, len(patches), self.config.max_patches_per_turn,
                    )
                    return ThreadOutcome.BUDGET_EXHAUSTED

                result = apply_patches(self.doc, patches)
                self.record.turns.append(
                    _turn_record(turn, execution_id, issues, patches, result, self.doc, started_at, stats)
                )
                rejections = list(result.rejections)
                logger.debug(
                    "%s: turn %d %s %d patches", execution_id, turn, result.status, len(patches),
                )


async def fill_form(
    doc: FormDocument,
    agent: FillAgent,
    config: Optional[HarnessConfig] = None,
    *,
    agent_factory: Optional[AgentFactory] = None,
) -> FillResult:
    """Convenience wrapper: ``FillHarness(doc, config).run(agent)``."""
    return await FillHarness(doc, config).run(agent, agent_factory)
