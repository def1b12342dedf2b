"""
Pipeline error taxonomy.

  ValidationError    — prerequisite data missing, no external call made
  ProviderError      — external call / poll failed or timed out
  ParseError         — structured output unusable after repair + one retry
  StageFailure       — every unit of a batch failed
  InvalidTransition  — status edge not in the adjacency list
  CancellationSignal — user abort; deliberately NOT a PipelineError
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for failures that mark a stage as failed."""


class ValidationError(PipelineError):
    pass


class ProviderError(PipelineError):
    def __init__(self, provider: str, message: str, status_code: Optional[int] = None):
        self.provider = provider
        self.status_code = status_code
        super().__init__(f"{provider}: {message}")


class ParseError(PipelineError):
    def __init__(self, first_error: str, retry_error: str, first_raw: str, retry_raw: str):
        self.first_error = first_error
        self.retry_error = retry_error
        self.first_raw = first_raw
        self.retry_raw = retry_raw
        super().__init__(
            "Failed to parse structured output after repair + retry. "
            f"Initial error: {first_error}. Retry error: {retry_error}. "
            "Full responses logged to generation_log."
        )


class StageFailure(PipelineError):
    pass


class InvalidTransition(PipelineError):
    def __init__(self, from_status: str, to_status: str):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Invalid status transition: {from_status} → {to_status}")


class ProjectNotFound(PipelineError):
    pass


class AssetNotFound(PipelineError):
    pass


class CancellationSignal(Exception):
    """Raised at a poll boundary once the project has a cancel request."""

    def __init__(self, project_id: str = ""):
        self.project_id = project_id
        super().__init__(f"Generation cancelled for project {project_id}")
