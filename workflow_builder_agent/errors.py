"""Error taxonomy shared by the reasoning layer and the generation pipeline.

Every terminal failure surfaced to a caller is a PipelineError carrying a
machine-readable ``kind`` and, once the coordinator has seen it, the name of
the stage it came from.

Kinds:
  collaborator_unavailable — the completion service could not be reached
                             (missing key, auth failure, retries exhausted)
  malformed_response       — the collaborator answered with unparseable or
                             schema-violating output
  structural_violation     — a graph failed structural validation
  degenerate_output        — recoverable; only logged, never terminal
  timeout                  — a stage exceeded its time limit
  cancelled                — the caller cancelled the run
  invalid_request          — the inbound request itself is unusable (e.g. empty)
  internal                 — unexpected exception inside a stage or the run loop
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    COLLABORATOR_UNAVAILABLE = "collaborator_unavailable"
    MALFORMED_RESPONSE = "malformed_response"
    STRUCTURAL_VIOLATION = "structural_violation"
    DEGENERATE_OUTPUT = "degenerate_output"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    INVALID_REQUEST = "invalid_request"
    INTERNAL = "internal"


class PipelineError(Exception):
    """Base class for every error the pipeline reports to its caller."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str, *, stage: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.stage = stage

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "stage": self.stage, "message": self.message}

    def __str__(self) -> str:
        if self.stage:
            return f"[{self.stage}] {self.message}"
        return self.message


class CollaboratorUnavailableError(PipelineError):
    kind = ErrorKind.COLLABORATOR_UNAVAILABLE


class CompletionServiceError(CollaboratorUnavailableError):
    """Transient transport failure (connection, rate limit, 5xx).

    Retried by the pipeline's completion helper; once retries are exhausted it
    surfaces to the caller as collaborator-unavailable.
    """


class MalformedResponseError(PipelineError):
    kind = ErrorKind.MALFORMED_RESPONSE


class StructuralViolationError(PipelineError):
    """Raised when a graph fails structural validation.

    Attributes:
        errors: list of human-readable violation strings.
    """

    kind = ErrorKind.STRUCTURAL_VIOLATION

    def __init__(self, errors: list[str], *, stage: str | None = None) -> None:
        self.errors = list(errors)
        summary = "; ".join(self.errors[:5])
        if len(self.errors) > 5:
            summary += f" (+{len(self.errors) - 5} more)"
        super().__init__(f"Workflow failed structural validation: {summary}", stage=stage)


class StageTimeoutError(PipelineError):
    kind = ErrorKind.TIMEOUT


class PipelineCancelledError(PipelineError):
    kind = ErrorKind.CANCELLED


class InvalidRequestError(PipelineError):
    kind = ErrorKind.INVALID_REQUEST


_ERROR_CLASSES: dict[ErrorKind, type[PipelineError]] = {
    ErrorKind.COLLABORATOR_UNAVAILABLE: CollaboratorUnavailableError,
    ErrorKind.MALFORMED_RESPONSE: MalformedResponseError,
    ErrorKind.TIMEOUT: StageTimeoutError,
    ErrorKind.CANCELLED: PipelineCancelledError,
}


def error_from_kind(
    kind: ErrorKind,
    message: str,
    *,
    stage: str | None = None,
    details: list[str] | None = None,
) -> PipelineError:
    """Build the matching PipelineError subclass for a failed StepResult."""
    if kind is ErrorKind.STRUCTURAL_VIOLATION:
        return StructuralViolationError(details or [message], stage=stage)
    cls = _ERROR_CLASSES.get(kind)
    if cls is None:
        err = PipelineError(message, stage=stage)
        err.kind = kind
        return err
    return cls(message, stage=stage)
