"""formdown: typed, fillable forms written in markdown.

Parse a form, inspect what is missing, apply patches transactionally, and
let an agent fill it turn by turn through the harness.
"""

from .core import (
    ApplyResult,
    FormDocument,
    InspectResult,
    apply_patches,
    export_values,
    inspect_form,
    parse_form,
    render_report,
    serialize_form,
)
from .errors import ConfigError, FormdownError, HarnessError, ParseError, PatchApplicationError
from .harness import FillHarness, FormHarness, HarnessConfig, MockAgent, TerminationStatus, fill_form

__version__ = "0.1.0"

__all__ = [
    "ApplyResult",
    "ConfigError",
    "FillHarness",
    "FormDocument",
    "FormHarness",
    "FormdownError",
    "HarnessConfig",
    "HarnessError",
    "InspectResult",
    "MockAgent",
    "ParseError",
    "PatchApplicationError",
    "TerminationStatus",
    "apply_patches",
    "export_values",
    "fill_form",
    "inspect_form",
    "parse_form",
    "render_report",
    "serialize_form",
]
