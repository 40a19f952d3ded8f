"""
Error taxonomy shared by every pipeline stage.

  validation  -> ReportValidationError, ConnectionResolutionError
  ambiguity   -> surfaced as prompts, never raised
  execution   -> ReportExecutionError (raised only by report generation;
                 the QueryExecutor itself returns structured results)
  translation -> TranslationError
"""
from __future__ import annotations


class CopilotError(Exception):
    """Base class for all domain errors."""

    suggestion: str = "Try rephrasing your query to be more specific."

    def to_dict(self) -> dict:
        return {"type": type(self).__name__, "message": str(self), "suggestion": self.suggestion}


class ReportValidationError(CopilotError, ValueError):
    """A required report parameter is missing or invalid."""

    suggestion = "Provide the missing parameter and run the report again."

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field


class ConnectionResolutionError(CopilotError, ValueError):
    """The fully qualified table reference could not be resolved."""

    suggestion = "Check the project, dataset and table configured for this session."


class TranslationError(CopilotError, RuntimeError):
    """The text-understanding step failed or timed out."""

    suggestion = "Try again in a moment, or ask a simpler question."


class ReportExecutionError(CopilotError, RuntimeError):
    """A report query failed after all retries."""

    suggestion = "Try narrowing the date range or removing filters."
