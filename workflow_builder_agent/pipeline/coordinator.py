"""PipelineCoordinator — inbound entry point of the generation pipeline.

One call to run() drives one request through the compiled stage graph:

  - creates the run's PipelineContext (never shared between runs)
  - forwards progress and structure chunk events to the caller's sink
  - sums token usage and per-stage timing
  - invokes exactly one of on_complete / on_error
  - logs one run summary

stream() wraps run() as an async iterator of event dicts for transports
that pull (SSE, CLI).
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from workflow_builder_agent.catalogue.library import CapabilityLibrary
from workflow_builder_agent.errors import (
    ErrorKind,
    InvalidRequestError,
    PipelineCancelledError,
    PipelineError,
    error_from_kind,
)
from workflow_builder_agent.pipeline.context import PipelineContext
from workflow_builder_agent.pipeline.graph import TOTAL_STEPS, ProgressSink, RunHandles, build_graph
from workflow_builder_agent.pipeline.metrics import format_run_summary, run_summary
from workflow_builder_agent.pipeline.models import WorkflowGraph
from workflow_builder_agent.pipeline.results import StepMetadata, TokenUsage
from workflow_builder_agent.pipeline.settings import PipelineSettings
from workflow_builder_agent.pipeline.state import initial_state
from workflow_builder_agent.reasoning import ReasoningEngine

logger = logging.getLogger("workflow_builder_agent.pipeline")

CompleteCallback = Callable[[WorkflowGraph, TokenUsage], Awaitable[None]]
ErrorCallback = Callable[[PipelineError], Awaitable[None]]


@dataclass
class PipelineOutcome:
    success: bool
    workflow: WorkflowGraph | None = None
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    error: PipelineError | None = None
    steps: list[StepMetadata] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    summary: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "workflow": self.workflow.to_wire() if self.workflow is not None else None,
            "tokenUsage": self.token_usage.to_dict(),
            "error": self.error.to_dict() if self.error is not None else None,
            "warnings": self.warnings,
            "summary": self.summary,
        }


class PipelineCoordinator:
    """Sequences the six stages for any number of independent runs.

    The compiled graph is built once per coordinator and holds no run state,
    so concurrent run() calls on one coordinator are safe.
    """

    def __init__(
        self,
        engine: ReasoningEngine,
        settings: PipelineSettings | None = None,
        library: CapabilityLibrary | None = None,
        fast_model: str | None = None,
        model: str | None = None,
    ) -> None:
        self._engine = engine
        self._settings = settings or PipelineSettings()
        self._library = library if library is not None else CapabilityLibrary(self._settings.catalogue_path)
        self._graph = build_graph(engine, self._settings, fast_model=fast_model, model=model)

    @property
    def library(self) -> CapabilityLibrary:
        return self._library

    @property
    def engine(self) -> ReasoningEngine:
        return self._engine

    async def run(
        self,
        request: str,
        *,
        existing_graph: WorkflowGraph | None = None,
        integration_context: dict[str, Any] | None = None,
        library: CapabilityLibrary | None = None,
        on_progress: ProgressSink | None = None,
        on_complete: CompleteCallback | None = None,
        on_error: ErrorCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> PipelineOutcome:
        """Run the pipeline for one request. Returns once Complete or Failed.

        Task cancellation is reported to on_error as a cancelled failure and
        then re-raised.
        """
        ctx = PipelineContext(
            request=request,
            library=library if library is not None else self._library,
            existing_graph=existing_graph,
            integration_context=dict(integration_context or {}),
        )
        handles = RunHandles(context=ctx, progress=on_progress, cancel_event=cancel_event or asyncio.Event())

        logger.info("[PIPELINE] Starting run (%d chars of request)", len(request))
        started = time.perf_counter()
        final: dict[str, Any] = {}
        failure: PipelineError | None = None
        cancelled: asyncio.CancelledError | None = None

        if not request or not request.strip():
            failure = InvalidRequestError("Request is empty")
        else:
            try:
                final = await self._graph.ainvoke(
                    initial_state(),
                    config={"configurable": {"run": handles}, "recursion_limit": 4 * TOTAL_STEPS},
                )
                failure = final.get("failure")
            except asyncio.CancelledError as exc:
                cancelled = exc
                failure = PipelineCancelledError("Run cancelled")
            except Exception as exc:
                logger.exception("[PIPELINE] Run aborted outside a stage")
                failure = error_from_kind(ErrorKind.INTERNAL, f"Run aborted: {exc}")

        steps: list[StepMetadata] = list(final.get("steps") or [])
        usage = TokenUsage(final.get("input_tokens", 0), final.get("output_tokens", 0))
        total_ms = (time.perf_counter() - started) * 1000
        summary = run_summary(steps, total_ms, success=failure is None)
        if failure is None:
            logger.info(format_run_summary(summary))
        else:
            logger.error(format_run_summary(summary))

        outcome = PipelineOutcome(
            success=failure is None,
            workflow=ctx.workflow if failure is None else None,
            token_usage=usage,
            error=failure,
            steps=steps,
            warnings=list(final.get("warnings") or []),
            summary=summary,
        )

        if failure is None:
            if on_complete is not None:
                await on_complete(outcome.workflow, usage)
        elif on_error is not None:
            await on_error(failure)

        if cancelled is not None:
            raise cancelled
        return outcome

    async def stream(
        self,
        request: str,
        *,
        existing_graph: WorkflowGraph | None = None,
        integration_context: dict[str, Any] | None = None,
        library: CapabilityLibrary | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """Run the pipeline, yielding progress/chunk events and one terminal event.

        Terminal events:
          {"type": "complete", "workflow": {...}, "tokenUsage": {...}, "summary": {...}}
          {"type": "error", "error": {"kind": ..., "stage": ..., "message": ...}}

        Closing the iterator early cancels the run.
        """
        queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()

        async def _progress(event: dict[str, Any]) -> None:
            await queue.put(event)

        async def _drive() -> None:
            try:
                outcome = await self.run(
                    request,
                    existing_graph=existing_graph,
                    integration_context=integration_context,
                    library=library,
                    on_progress=_progress,
                    cancel_event=cancel_event,
                )
                if outcome.success:
                    await queue.put({
                        "type": "complete",
                        "workflow": outcome.workflow.to_wire(),
                        "tokenUsage": outcome.token_usage.to_dict(),
                        "warnings": outcome.warnings,
                        "summary": outcome.summary,
                    })
                else:
                    await queue.put({"type": "error", "error": outcome.error.to_dict()})
            finally:
                await queue.put(None)

        task = asyncio.create_task(_drive())
        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield event
            await task
        finally:
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
