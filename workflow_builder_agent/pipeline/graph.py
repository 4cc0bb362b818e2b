"""LangGraph wiring of the six pipeline stages.

Graph topology:

    START → intent → matching → structure → configuration
          ─(some generated node lacks code)→ custom_code ─┐
          ─(otherwise)───────────────────→ skip_custom_code┴→ validation → END

Any stage that fails routes straight to END; no later stage runs.

Per-run objects (the PipelineContext, the progress sink and the cancellation
event) are passed through ``config["configurable"]["run"]`` so the compiled
graph holds no run state and can be shared between concurrent runs.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from langchain_core.runnables import RunnableConfig
from langgraph.graph import END, START, StateGraph

from workflow_builder_agent.errors import (
    ErrorKind,
    PipelineCancelledError,
    StageTimeoutError,
    error_from_kind,
)
from workflow_builder_agent.pipeline.context import PipelineContext
from workflow_builder_agent.pipeline.metrics import StageMetricsCollector
from workflow_builder_agent.pipeline.results import StepResult
from workflow_builder_agent.pipeline.settings import PipelineSettings
from workflow_builder_agent.pipeline.stages import configuration, custom_code, intent, matching, structure, validation
from workflow_builder_agent.pipeline.state import PipelineState
from workflow_builder_agent.reasoning import ReasoningEngine

logger = logging.getLogger("workflow_builder_agent.pipeline.graph")

TOTAL_STEPS = 6

ProgressSink = Callable[[dict[str, Any]], Awaitable[None]]


@dataclass
class RunHandles:
    """Everything a node needs about the current run, passed via RunnableConfig."""

    context: PipelineContext
    progress: ProgressSink | None = None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    async def emit(self, event: dict[str, Any]) -> None:
        if self.progress is not None:
            await self.progress(event)

    async def emit_chunk(self, text: str, complete: bool) -> None:
        await self.emit({"type": "chunk", "text": text, "complete": complete})


@dataclass(frozen=True)
class StageSpec:
    node: str
    step_name: str
    step_number: int
    run: Callable[..., Awaitable[StepResult[Any]]]
    attach: str          # PipelineContext attribute the product is stored on
    fast_tier: bool      # run on the fast model


STAGES: tuple[StageSpec, ...] = (
    StageSpec("intent", intent.STEP_NAME, 1, intent.run_intent_stage, "intent", True),
    StageSpec("matching", matching.STEP_NAME, 2, matching.run_matching_stage, "plan", True),
    StageSpec("structure", structure.STEP_NAME, 3, structure.run_structure_stage, "workflow", False),
    StageSpec("configuration", configuration.STEP_NAME, 4, configuration.run_configuration_stage, "workflow", False),
    StageSpec("custom_code", custom_code.STEP_NAME, 5, custom_code.run_custom_code_stage, "workflow", False),
    StageSpec("validation", validation.STEP_NAME, 6, validation.run_validation_stage, "workflow", True),
)
_CUSTOM_CODE = STAGES[4]


def _handles(config: RunnableConfig) -> RunHandles:
    return config["configurable"]["run"]


async def _guarded(coro: Awaitable[StepResult[Any]], timeout: float, cancel_event: asyncio.Event, stage: str) -> StepResult[Any]:
    """Await coro, racing it against the stage timeout and the caller's cancel event."""
    stage_task = asyncio.ensure_future(coro)
    cancel_task = asyncio.ensure_future(cancel_event.wait())
    try:
        done, _ = await asyncio.wait(
            {stage_task, cancel_task}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED,
        )
    finally:
        cancel_task.cancel()
        if not stage_task.done():
            stage_task.cancel()
    if stage_task in done:
        return stage_task.result()
    await asyncio.gather(stage_task, return_exceptions=True)
    if cancel_task in done:
        raise PipelineCancelledError("Run cancelled by caller", stage=stage)
    raise StageTimeoutError(f"Stage exceeded its {timeout:.0f}s time limit", stage=stage)


# ---------------------------------------------------------------------------
# Node factories
# ---------------------------------------------------------------------------


def _make_stage_node(
    engine: ReasoningEngine,
    settings: PipelineSettings,
    spec: StageSpec,
    models: dict[bool, str | None],
):
    """Return the LangGraph node function for one stage."""

    async def stage_node(state: PipelineState, config: RunnableConfig) -> dict:
        run = _handles(config)
        ctx = run.context
        model = models[spec.fast_tier]

        if run.cancel_event.is_set():
            return {"failure": PipelineCancelledError("Run cancelled by caller", stage=spec.step_name)}

        await run.emit({
            "type": "progress",
            "stepName": spec.step_name,
            "stepNumber": spec.step_number,
            "totalSteps": TOTAL_STEPS,
        })
        logger.info("[PIPELINE] Step %d/%d: %s", spec.step_number, TOTAL_STEPS, spec.step_name)

        extra: dict[str, Any] = {}
        if spec.node == "structure" and run.progress is not None:
            extra["on_chunk"] = run.emit_chunk

        failure = None
        async with StageMetricsCollector(spec.step_name, spec.step_number, model or engine.default_model) as m:
            try:
                result = await _guarded(
                    spec.run(engine, ctx, settings, model=model, **extra),
                    settings.stage_timeout_s,
                    run.cancel_event,
                    spec.step_name,
                )
            except (StageTimeoutError, PipelineCancelledError) as exc:
                logger.error("[PIPELINE] %s", exc)
                result = StepResult.fail(exc.kind, exc.message)
            m.record(result)

        update: dict[str, Any] = {
            "steps": [m.result],
            "warnings": result.warnings,
            "input_tokens": result.token_usage.input_tokens if result.token_usage else 0,
            "output_tokens": result.token_usage.output_tokens if result.token_usage else 0,
        }
        if result.success:
            setattr(ctx, spec.attach, result.data)
        else:
            failure = error_from_kind(
                result.error_kind or ErrorKind.INTERNAL,
                result.error or "stage failed",
                stage=spec.step_name,
                details=result.details,
            )
            update["failure"] = failure
        if spec.node == "configuration" and result.success:
            update["needs_custom_code"] = any(custom_code.needs_code(n) for n in ctx.workflow.nodes)
        return update

    stage_node.__name__ = f"{spec.node}_node"
    return stage_node


def _make_skip_custom_code_node(engine: ReasoningEngine, models: dict[bool, str | None]):
    """Record the custom-code stage as skipped when no generated node lacks code."""

    async def skip_custom_code_node(state: PipelineState, config: RunnableConfig) -> dict:
        run = _handles(config)
        await run.emit({
            "type": "progress",
            "stepName": _CUSTOM_CODE.step_name,
            "stepNumber": _CUSTOM_CODE.step_number,
            "totalSteps": TOTAL_STEPS,
        })
        async with StageMetricsCollector(
            _CUSTOM_CODE.step_name, _CUSTOM_CODE.step_number, models[False] or engine.default_model,
        ) as m:
            m.mark_skipped()
        logger.info("[PIPELINE] Step %d/%d: %s skipped (no generated nodes need code)",
                    _CUSTOM_CODE.step_number, TOTAL_STEPS, _CUSTOM_CODE.step_name)
        return {"steps": [m.result]}

    return skip_custom_code_node


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------


def _route_on_failure(next_node: str):
    def route(state: PipelineState) -> str:
        return END if state.get("failure") is not None else next_node
    return route


def _route_after_configuration(state: PipelineState) -> str:
    if state.get("failure") is not None:
        return END
    return "custom_code" if state.get("needs_custom_code") else "skip_custom_code"


# ---------------------------------------------------------------------------
# Graph builder
# ---------------------------------------------------------------------------


def build_graph(
    engine: ReasoningEngine,
    settings: PipelineSettings,
    fast_model: str | None = None,
    model: str | None = None,
):
    """Construct and compile the pipeline graph.

    Args:
        engine:     Reasoning engine (LLM provider). Use create_engine(settings).
        settings:   PipelineSettings (timeouts, retries, advisory validation).
        fast_model: Model for intent, matching and validation; engine default when None.
        model:      Model for the remaining stages; engine default when None.

    Returns:
        Compiled LangGraph graph. Invoke with
        ``config={"configurable": {"run": RunHandles(...)}}``.
    """
    models = {True: fast_model, False: model}
    builder = StateGraph(PipelineState)

    for spec in STAGES:
        builder.add_node(spec.node, _make_stage_node(engine, settings, spec, models))
    builder.add_node("skip_custom_code", _make_skip_custom_code_node(engine, models))

    builder.add_edge(START, "intent")
    builder.add_conditional_edges("intent", _route_on_failure("matching"), {"matching": "matching", END: END})
    builder.add_conditional_edges("matching", _route_on_failure("structure"), {"structure": "structure", END: END})
    builder.add_conditional_edges(
        "structure", _route_on_failure("configuration"), {"configuration": "configuration", END: END},
    )
    builder.add_conditional_edges(
        "configuration",
        _route_after_configuration,
        {"custom_code": "custom_code", "skip_custom_code": "skip_custom_code", END: END},
    )
    builder.add_conditional_edges("custom_code", _route_on_failure("validation"), {"validation": "validation", END: END})
    builder.add_edge("skip_custom_code", "validation")
    builder.add_edge("validation", END)

    return builder.compile()
