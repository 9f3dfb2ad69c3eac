"""Fill harness: drives an agent over a document turn by turn.

Modules
-------
config   - ``HarnessConfig`` and its resolution
agents   - ``FillAgent`` contract and the mock/scripted/callback agents
harness  - ``FormHarness`` (manual) and ``FillHarness`` (async loop)
record   - Per-turn fill records and their persistence
"""

from .agents import CallbackAgent, FillAgent, FillRequest, FillResponse, MockAgent, RejectionMockAgent, ScriptedAgent, TurnStats
from .config import HarnessConfig, load_harness_config
from .harness import FillHarness, FillResult, FormHarness, HarnessPhase, StepResult, TerminationStatus, ThreadOutcome, fill_form
from .record import FillRecord, FillRecordStore, TurnRecord

__all__ = [
    "CallbackAgent",
    "FillAgent",
    "FillHarness",
    "FillRecord",
    "FillRecordStore",
    "FillRequest",
    "FillResponse",
    "FillResult",
    "FormHarness",
    "HarnessConfig",
    "HarnessPhase",
    "MockAgent",
    "RejectionMockAgent",
    "ScriptedAgent",
    "StepResult",
    "TerminationStatus",
    "ThreadOutcome",
    "TurnRecord",
    "TurnStats",
    "fill_form",
    "load_harness_config",
]
