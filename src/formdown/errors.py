"""Exception hierarchy for formdown.

Only unrecoverable conditions raise. Validation issues, patch rejections and
harness termination outcomes are returned as data.
"""

from __future__ import annotations

from typing import Optional


class FormdownError(Exception):
    """Base class for every error raised by formdown."""


class ParseError(FormdownError):
    """Document text could not be turned into a form.

    Always fatal to the parse call. Carries the offending position and,
    where it applies, the marker that was expected and the one found.
    """

    def __init__(
        self,
        message: str,
        *,
        line: Optional[int] = None,
        column: Optional[int] = None,
        expected: Optional[str] = None,
        found: Optional[str] = None,
    ) -> None:
        self.message = message
        self.line = line
        self.column = column
        self.expected = expected
        self.found = found
        super().__init__(str(self))

    def __str__(self) -> str:
        where = ""
        if self.line is not None:
            where = f"line {self.line}"
            if self.column is not None:
                where += f", column {self.column}"
            where += ": "
        detail = ""
        if self.expected is not None or self.found is not None:
            detail = f" (expected {self.expected or 'nothing'}, found {self.found or 'nothing'})"
        return f"{where}{self.message}{detail}"


class ResponseKindError(FormdownError, TypeError):
    """A response value does not match the kind of its field."""


class PatchApplicationError(FormdownError):
    """Patches were applied to a document whose schema does not match its responses."""


class HarnessError(FormdownError):
    """The manual harness protocol was driven out of order."""


class ConfigError(FormdownError):
    """A harness configuration file could not be read."""
