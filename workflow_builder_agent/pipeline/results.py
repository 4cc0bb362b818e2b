"""Stage outcome and accounting records.

StepResult    — what every stage returns (never raised for expected failures).
TokenUsage    — input/output token pair; summed by the coordinator.
StepMetadata  — per-stage timing/usage record kept by the coordinator.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from workflow_builder_agent.errors import ErrorKind

T = TypeVar("T")


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    def __add__(self, other: TokenUsage | None) -> TokenUsage:
        if other is None:
            return TokenUsage(self.input_tokens, self.output_tokens)
        return TokenUsage(
            self.input_tokens + other.input_tokens,
            self.output_tokens + other.output_tokens,
        )

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_dict(self) -> dict[str, int]:
        return {"inputTokens": self.input_tokens, "outputTokens": self.output_tokens}


@dataclass
class StepResult(Generic[T]):
    """Outcome of one stage.

    success=True  → ``data`` holds the stage product.
    success=False → ``error`` / ``error_kind`` describe the failure; ``details``
                    carries individual violations for structural failures.
    ``warnings`` collects advisory findings that did not stop the stage.
    """

    success: bool
    data: T | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    details: list[str] = field(default_factory=list)
    token_usage: TokenUsage | None = None
    warnings: list[str] = field(default_factory=list)

    @classmethod
    def ok(
        cls,
        data: T,
        usage: TokenUsage | None = None,
        warnings: list[str] | None = None,
    ) -> StepResult[T]:
        return cls(success=True, data=data, token_usage=usage, warnings=list(warnings or []))

    @classmethod
    def fail(
        cls,
        kind: ErrorKind,
        error: str,
        usage: TokenUsage | None = None,
        details: list[str] | None = None,
    ) -> StepResult[T]:
        return cls(
            success=False,
            error=error,
            error_kind=kind,
            token_usage=usage,
            details=list(details or []),
        )


@dataclass
class StepMetadata:
    """Coordinator-internal record of one stage execution."""

    step_name: str
    step_number: int
    model: str
    execution_time_ms: float = 0.0
    token_usage: TokenUsage | None = None
    success: bool = False
    error: str | None = None
    skipped: bool = False

    def to_dict(self) -> dict[str, Any]:
        d = dataclasses.asdict(self)
        d["token_usage"] = self.token_usage.to_dict() if self.token_usage else None
        return d
