"""Per-stage timing and usage telemetry, plus the end-of-run summary.

StageMetricsCollector — async context manager; produces a StepMetadata on exit.
run_summary()         — JSON-serialisable dict aggregating a run's StepMetadata.
format_run_summary()  — the same summary as a multi-line log message.

Usage::

    async with StageMetricsCollector("intent-analysis", 1, "gpt-4o-mini") as m:
        result = await run_intent_stage(...)
        m.record(result)
    metadata = m.result   # StepMetadata
"""

from __future__ import annotations

import time
from collections import Counter
from typing import Any

from workflow_builder_agent.pipeline.results import StepMetadata, StepResult, TokenUsage


class StageMetricsCollector:
    """Async context manager that times one stage and captures its outcome.

    The collector never swallows exceptions; if the body raises, ``result`` is
    still populated (success=False, error from the exception) before the
    exception propagates.
    """

    def __init__(self, step_name: str, step_number: int, model: str) -> None:
        self.step_name = step_name
        self.step_number = step_number
        self.model = model
        self.token_usage: TokenUsage | None = None
        self.success: bool = False
        self.error: str | None = None
        self.skipped: bool = False
        self._start: float = 0.0
        self._result: StepMetadata | None = None

    def record(self, result: StepResult[Any]) -> None:
        self.success = result.success
        self.error = result.error
        self.token_usage = result.token_usage

    def mark_skipped(self) -> None:
        self.success = True
        self.skipped = True
        self.token_usage = TokenUsage()

    async def __aenter__(self) -> StageMetricsCollector:
        self._start = time.perf_counter()
        return self

    async def __aexit__(self, exc_type: type[BaseException] | None, exc: BaseException | None, _tb: object) -> None:
        if exc is not None:
            self.success = False
            self.error = self.error or f"{type(exc).__name__}: {exc}"
        self._result = StepMetadata(
            step_name=self.step_name,
            step_number=self.step_number,
            model=self.model,
            execution_time_ms=(time.perf_counter() - self._start) * 1000,
            token_usage=self.token_usage,
            success=self.success,
            error=self.error,
            skipped=self.skipped,
        )

    @property
    def result(self) -> StepMetadata | None:
        """Finalized StepMetadata after the context manager exits, else None."""
        return self._result


def total_usage(steps: list[StepMetadata]) -> TokenUsage:
    usage = TokenUsage()
    for step in steps:
        usage = usage + step.token_usage
    return usage


def run_summary(steps: list[StepMetadata], total_time_ms: float, success: bool) -> dict[str, Any]:
    """Aggregate a run's StepMetadata into one JSON-serialisable dict."""
    usage = total_usage(steps)
    model_usage: Counter[str] = Counter()
    for step in steps:
        if not step.skipped:
            model_usage[step.model] += 1
    return {
        "success": success,
        "totalTimeMs": round(total_time_ms, 1),
        "tokenUsage": {**usage.to_dict(), "totalTokens": usage.total},
        "steps": [
            {
                "stepName": s.step_name,
                "stepNumber": s.step_number,
                "model": s.model,
                "executionTimeMs": round(s.execution_time_ms, 1),
                "percentOfTotal": round(100 * s.execution_time_ms / total_time_ms, 1) if total_time_ms else 0.0,
                "tokenUsage": s.token_usage.to_dict() if s.token_usage else None,
                "success": s.success,
                "skipped": s.skipped,
                "error": s.error,
            }
            for s in steps
        ],
        "modelUsage": dict(model_usage),
        "counts": {
            "succeeded": sum(1 for s in steps if s.success and not s.skipped),
            "failed": sum(1 for s in steps if not s.success),
            "skipped": sum(1 for s in steps if s.skipped),
        },
    }


def format_run_summary(summary: dict[str, Any]) -> str:
    lines = [
        f"[PIPELINE] Run {'completed' if summary['success'] else 'FAILED'} "
        f"in {summary['totalTimeMs'] / 1000:.2f}s",
    ]
    for step in summary["steps"]:
        if step["skipped"]:
            status = "skipped"
        elif step["success"]:
            status = "ok"
        else:
            status = f"failed ({step['error']})"
        usage = step["tokenUsage"] or {"inputTokens": 0, "outputTokens": 0}
        lines.append(
            f"  {step['stepNumber']}. {step['stepName']:<20} {step['executionTimeMs']:>9.1f}ms "
            f"({step['percentOfTotal']:>5.1f}%)  in={usage['inputTokens']} out={usage['outputTokens']}  "
            f"[{step['model']}] {status}"
        )
    tokens = summary["tokenUsage"]
    lines.append(
        f"  tokens: in={tokens['inputTokens']} out={tokens['outputTokens']} total={tokens['totalTokens']}"
    )
    lines.append("  models: " + ", ".join(f"{m} x{n}" for m, n in summary["modelUsage"].items()))
    counts = summary["counts"]
    lines.append(f"  steps: {counts['succeeded']} ok, {counts['failed']} failed, {counts['skipped']} skipped")
    return "\n".join(lines)
