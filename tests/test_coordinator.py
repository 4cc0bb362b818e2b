"""End-to-end pipeline runs through PipelineCoordinator with a scripted engine.

Verifies:
  1. Sheet → email request completes; custom-code stage recorded as skipped
  2. Token usage is the sum over all collaborator calls
  3. Progress events cover steps 1..6 in order; on_complete called once, on_error never
  4. A generated node runs through custom-code synthesis
  5. Malformed intent → on_error once, no later stage runs
  6. Stage timeout → timeout failure naming the stage
  7. cancel_event → cancelled failure; task cancellation re-raises after on_error
  8. Empty request → invalid_request without any collaborator call
  9. stream(): progress, chunk and one terminal event
  10. A progress sink that raises → internal failure, on_error once, summary still logged
"""

from __future__ import annotations

import asyncio
import json
import logging
from unittest.mock import AsyncMock

import pytest

from conftest import COMPLETE_IN, COMPLETE_OUT, STREAM_IN, STREAM_OUT, ScriptedEngine
from workflow_builder_agent.errors import ErrorKind
from workflow_builder_agent.pipeline.coordinator import PipelineCoordinator

_SHEET_INTENT = {
    "goal": "Email me each new lead",
    "triggers": ["new row in Leads sheet"],
    "actions": ["send email"],
}
_SHEET_PLAN = {
    "libraryNodes": [
        {"id": "new-row-in-google-sheet", "role": "trigger", "reason": "new leads"},
        {"id": "send-email", "role": "action", "reason": "notify"},
    ],
    "connections": [{"from": "new-row-in-google-sheet", "to": "send-email"}],
    "dataFlow": [{"source": "new-row-in-google-sheet", "target": "send-email", "field": "row"}],
}
_SHEET_WORKFLOW = {
    "workflowName": "Lead alerts",
    "reasoning": "Watches the sheet and emails each row.",
    "nodes": [
        {"id": "node-1", "type": "workflow-node", "position": {"x": 0, "y": 0},
         "data": {"nodeId": "new-row-in-google-sheet", "label": "New lead", "description": "Watch the Leads sheet"}},
        {"id": "node-2", "type": "workflow-node", "position": {"x": 0, "y": 0},
         "data": {"nodeId": "send-email", "label": "Email me", "description": "Send the row",
                  "config": {"body": "{{inputData.row}}"}}},
    ],
    "edges": [{"id": "edge-1", "source": "node-1", "target": "node-2", "type": "buttonedge", "animated": True}],
}
_SHEET_CONFIG = {"configurations": [
    {"nodeId": "node-1", "config": {"sheetName": "Leads", "google_sheets_connection": "leak"}},
    {"nodeId": "node-2", "config": {"to": "me@example.com", "subject": "New lead"}},
]}


def _sheet_script() -> list:
    return [_SHEET_INTENT, _SHEET_PLAN, _SHEET_WORKFLOW, _SHEET_CONFIG]


@pytest.mark.asyncio
async def test_sheet_to_email_completes(settings, library):
    settings.stream_structure = False
    engine = ScriptedEngine(_sheet_script())
    coordinator = PipelineCoordinator(engine, settings=settings, library=library, fast_model="fast-model")
    events: list[dict] = []
    on_progress = AsyncMock(side_effect=events.append)
    on_complete = AsyncMock()
    on_error = AsyncMock()

    outcome = await coordinator.run(
        "When a new row is added to my Leads sheet, email me",
        on_progress=on_progress,
        on_complete=on_complete,
        on_error=on_error,
    )

    assert outcome.success, outcome.error
    on_error.assert_not_awaited()
    on_complete.assert_awaited_once()
    workflow, usage = on_complete.await_args.args
    assert workflow.node_ids() == ["node-1", "node-2"]
    assert workflow.get_node("node-1").data.config == {"sheetName": "Leads"}
    assert workflow.get_node("node-2").data.config == {
        "body": "{{inputData.row}}", "to": "me@example.com", "subject": "New lead",
    }

    # four completions; structure streaming is off for this run
    assert len(engine.calls) == 4
    assert usage.input_tokens == 4 * COMPLETE_IN
    assert usage.output_tokens == 4 * COMPLETE_OUT

    progress = [e for e in events if e["type"] == "progress"]
    assert [e["stepNumber"] for e in progress] == [1, 2, 3, 4, 5, 6]
    assert all(e["totalSteps"] == 6 for e in progress)

    steps = {s.step_name: s for s in outcome.steps}
    assert steps["code-generation"].skipped
    assert outcome.summary["counts"] == {"succeeded": 5, "failed": 0, "skipped": 1}


@pytest.mark.asyncio
async def test_fast_tier_model_used_for_intent_and_matching(settings, library):
    engine = ScriptedEngine(_sheet_script())
    coordinator = PipelineCoordinator(engine, settings=settings, library=library, fast_model="fast-model")
    await coordinator.run("When a new row is added to my Leads sheet, email me")

    assert [c.model for c in engine.calls] == ["fast-model", "fast-model", None, None]


@pytest.mark.asyncio
async def test_generated_node_goes_through_custom_code(settings, library):
    workflow = {
        "nodes": [
            {"id": "node-1", "data": {"nodeId": "manual-trigger", "label": "Start", "description": "Run"}},
            {"id": "node-2", "data": {"nodeId": "CUSTOM_GENERATED", "label": "Fetch Weather", "description": "Weather"}},
        ],
        "edges": [{"id": "edge-1", "source": "node-1", "target": "node-2"}],
        "reasoning": "Fetches weather.",
    }
    code = "async (inputData, config) => { const r = await fetch(`https://wttr.in/${config.city}`); return { ok: r.ok }; }"
    engine = ScriptedEngine([
        {"goal": "weather", "triggers": ["manual"], "actions": ["fetch weather"],
         "customRequirements": ["fetch weather for a city"]},
        {"libraryNodes": [{"id": "manual-trigger", "role": "trigger"}],
         "customNodes": [{"name": "Fetch Weather", "type": "action", "requirements": "weather for config.city"}],
         "connections": [{"from": "manual-trigger", "to": "Fetch Weather"}]},
        workflow,
        # no configuration call: nothing is fillable yet
        {"customCode": code, "configSchema": {"city": {"type": "string", "label": "City"}},
         "outputs": [{"name": "ok", "type": "boolean"}]},
    ])
    outcome = await PipelineCoordinator(engine, settings=settings, library=library).run("Fetch the weather")

    assert outcome.success, outcome.error
    generated = outcome.workflow.get_node("node-2").data
    assert generated.custom_code == code
    assert list(generated.config_schema) == ["city"]
    assert generated.metadata["requirements"] == "weather for config.city"
    assert not any(s.skipped for s in outcome.steps)
    assert len(engine.calls) == 4


@pytest.mark.asyncio
async def test_malformed_intent_stops_run(settings, library):
    engine = ScriptedEngine(["definitely not json"])
    on_complete, on_error = AsyncMock(), AsyncMock()
    outcome = await PipelineCoordinator(engine, settings=settings, library=library).run(
        "anything", on_complete=on_complete, on_error=on_error,
    )

    assert not outcome.success
    on_complete.assert_not_awaited()
    on_error.assert_awaited_once()
    err = on_error.await_args.args[0]
    assert err.kind is ErrorKind.MALFORMED_RESPONSE
    assert err.stage == "intent-analysis"
    assert len(engine.calls) == 1
    assert [s.step_name for s in outcome.steps] == ["intent-analysis"]
    assert outcome.token_usage.input_tokens == COMPLETE_IN


@pytest.mark.asyncio
async def test_structural_violation_carries_errors(settings, library):
    bad_workflow = {**_SHEET_WORKFLOW, "edges": [{"id": "edge-1", "source": "node-1", "target": "nowhere"}]}
    engine = ScriptedEngine([_SHEET_INTENT, _SHEET_PLAN, bad_workflow, _SHEET_CONFIG])
    outcome = await PipelineCoordinator(engine, settings=settings, library=library).run("sheet to email")

    assert outcome.error.kind is ErrorKind.STRUCTURAL_VIOLATION
    assert outcome.error.stage == "validation"
    assert outcome.error.errors == ["edge-1: target 'nowhere' does not resolve to a node"]


class _SlowEngine(ScriptedEngine):
    async def complete(self, *args, **kwargs):
        await asyncio.sleep(30)


@pytest.mark.asyncio
async def test_stage_timeout(settings, library):
    settings.stage_timeout_s = 0.05
    on_error = AsyncMock()
    outcome = await PipelineCoordinator(_SlowEngine(), settings=settings, library=library).run(
        "anything", on_error=on_error,
    )

    assert outcome.error.kind is ErrorKind.TIMEOUT
    assert outcome.error.stage == "intent-analysis"
    on_error.assert_awaited_once()


@pytest.mark.asyncio
async def test_cancel_event_stops_run(settings, library):
    cancel = asyncio.Event()
    engine = ScriptedEngine(_sheet_script())

    async def on_progress(event):
        if event.get("stepNumber") == 2:
            cancel.set()

    outcome = await PipelineCoordinator(engine, settings=settings, library=library).run(
        "sheet to email", on_progress=on_progress, cancel_event=cancel,
    )

    assert outcome.error.kind is ErrorKind.CANCELLED
    assert len(engine.calls) <= 2
    assert outcome.workflow is None


@pytest.mark.asyncio
async def test_task_cancellation_reports_then_reraises(settings, library):
    settings.stage_timeout_s = 60
    on_error = AsyncMock()
    coordinator = PipelineCoordinator(_SlowEngine(), settings=settings, library=library)
    task = asyncio.create_task(coordinator.run("anything", on_error=on_error))
    await asyncio.sleep(0.05)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    on_error.assert_awaited_once()
    assert on_error.await_args.args[0].kind is ErrorKind.CANCELLED


@pytest.mark.asyncio
async def test_failing_progress_sink_reports_error_and_summary(settings, library, caplog):
    engine = ScriptedEngine(_sheet_script())
    on_progress = AsyncMock(side_effect=RuntimeError("sink closed"))
    on_complete, on_error = AsyncMock(), AsyncMock()

    with caplog.at_level(logging.INFO, logger="workflow_builder_agent.pipeline"):
        outcome = await PipelineCoordinator(engine, settings=settings, library=library).run(
            "sheet to email", on_progress=on_progress, on_complete=on_complete, on_error=on_error,
        )

    assert not outcome.success
    assert outcome.error.kind is ErrorKind.INTERNAL
    assert "sink closed" in outcome.error.message
    on_complete.assert_not_awaited()
    on_error.assert_awaited_once()
    assert any("[PIPELINE] Run FAILED" in r.getMessage() for r in caplog.records)


@pytest.mark.asyncio
async def test_empty_request_is_invalid(settings, library):
    engine = ScriptedEngine()
    on_error = AsyncMock()
    outcome = await PipelineCoordinator(engine, settings=settings, library=library).run("   ", on_error=on_error)

    assert outcome.error.kind is ErrorKind.INVALID_REQUEST
    on_error.assert_awaited_once()
    assert engine.calls == []


@pytest.mark.asyncio
async def test_runs_do_not_share_context(settings, library):
    engine = ScriptedEngine(_sheet_script() + _sheet_script())
    coordinator = PipelineCoordinator(engine, settings=settings, library=library)
    first = await coordinator.run("sheet to email")
    second = await coordinator.run("sheet to email")

    assert first.success and second.success
    assert first.workflow is not second.workflow
    assert first.token_usage == second.token_usage


@pytest.mark.asyncio
async def test_stream_yields_progress_chunks_and_complete(settings, library):
    text = json.dumps(_SHEET_WORKFLOW)
    engine = ScriptedEngine(
        [_SHEET_INTENT, _SHEET_PLAN, _SHEET_CONFIG],
        streams=[[text[:50], text[50:]]],
    )
    coordinator = PipelineCoordinator(engine, settings=settings, library=library)
    events = [e async for e in coordinator.stream("sheet to email")]

    kinds = [e["type"] for e in events]
    assert kinds[-1] == "complete"
    assert kinds.count("complete") == 1 and "error" not in kinds

    chunks = [e for e in events if e["type"] == "chunk"]
    assert [c["complete"] for c in chunks] == [False, False, True]
    assert chunks[-1]["text"] == text
    # chunks arrive between the structure progress event and the configuration one
    first_chunk = kinds.index("chunk")
    assert events[first_chunk - 1]["stepName"] == "workflow-generation"

    complete = events[-1]
    assert complete["workflow"]["workflowName"] == "Lead alerts"
    assert complete["tokenUsage"] == {
        "inputTokens": 3 * COMPLETE_IN + STREAM_IN,
        "outputTokens": 3 * COMPLETE_OUT + STREAM_OUT,
    }


@pytest.mark.asyncio
async def test_stream_reports_error_event(settings, library):
    coordinator = PipelineCoordinator(ScriptedEngine(["nope"]), settings=settings, library=library)
    events = [e async for e in coordinator.stream("anything")]

    assert events[-1] == {
        "type": "error",
        "error": {"kind": "malformed_response", "stage": "intent-analysis", "message": events[-1]["error"]["message"]},
    }
    assert [e["type"] for e in events] == ["progress", "error"]
