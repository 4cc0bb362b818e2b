"""Capability matching: deterministic plan rewrites and the stage wrapper."""

from __future__ import annotations

import pytest

from conftest import ScriptedEngine
from workflow_builder_agent.errors import ErrorKind
from workflow_builder_agent.pipeline.models import CapabilityPlan, IntentDescriptor
from workflow_builder_agent.pipeline.stages.matching import enforce_plan_rules, run_matching_stage


def _plan(**kwargs) -> CapabilityPlan:
    return CapabilityPlan.model_validate(kwargs)


def test_trigger_only_capability_used_as_action_is_removed(library):
    plan = _plan(
        libraryNodes=[
            {"id": "manual-trigger", "role": "trigger"},
            {"id": "new-row-in-google-sheet", "role": "action"},
            {"id": "send-email", "role": "action"},
        ],
        connections=[
            {"from": "manual-trigger", "to": "new-row-in-google-sheet"},
            {"from": "new-row-in-google-sheet", "to": "send-email"},
        ],
        dataFlow=[{"source": "new-row-in-google-sheet", "target": "send-email", "field": "row"}],
    )
    fixed, warnings = enforce_plan_rules(plan, library)

    assert [n.id for n in fixed.library_nodes] == ["manual-trigger", "send-email"]
    assert fixed.connections == []
    assert fixed.data_flow == []
    assert any("trigger-only" in w for w in warnings)


def test_only_first_trigger_survives_library_before_custom(library):
    plan = _plan(
        libraryNodes=[
            {"id": "webhook-trigger", "role": "trigger"},
            {"id": "scheduled-time-trigger", "role": "TRIGGER"},
            {"id": "send-email", "role": "action"},
        ],
        customNodes=[{"name": "Poll CRM", "type": "trigger", "requirements": "poll every hour"}],
        connections=[
            {"from": "webhook-trigger", "to": "send-email"},
            {"from": "scheduled-time-trigger", "to": "send-email"},
            {"from": "Poll CRM", "to": "send-email"},
        ],
    )
    fixed, warnings = enforce_plan_rules(plan, library)

    assert fixed.trigger_count() == 1
    assert [n.id for n in fixed.library_nodes] == ["webhook-trigger", "send-email"]
    assert fixed.custom_nodes == []
    assert [(c.from_, c.to) for c in fixed.connections] == [("webhook-trigger", "send-email")]
    assert len([w for w in warnings if "extra trigger" in w]) == 2


def test_custom_trigger_kept_when_library_has_none(library):
    plan = _plan(
        libraryNodes=[{"id": "send-email", "role": "action"}],
        customNodes=[{"name": "Poll CRM", "type": "trigger"}],
        connections=[{"from": "Poll CRM", "to": "send-email"}],
    )
    fixed, _ = enforce_plan_rules(plan, library)
    assert [c.name for c in fixed.custom_nodes] == ["Poll CRM"]
    assert len(fixed.connections) == 1


def test_custom_node_resembling_library_capability_is_flagged_not_removed(library):
    plan = _plan(
        libraryNodes=[{"id": "manual-trigger", "role": "trigger"}],
        customNodes=[{"name": "Summarizer", "type": "action", "requirements": "summarize the article text"}],
    )
    fixed, warnings = enforce_plan_rules(plan, library)

    assert len(fixed.custom_nodes) == 1
    assert any("generate-summary-with-ai" in w for w in warnings)


def test_unknown_capability_is_warned_and_kept(library):
    plan = _plan(libraryNodes=[
        {"id": "manual-trigger", "role": "trigger"},
        {"id": "launch-rocket", "role": "action"},
    ])
    fixed, warnings = enforce_plan_rules(plan, library)

    assert [n.id for n in fixed.library_nodes] == ["manual-trigger", "launch-rocket"]
    assert "capability not found in catalogue: launch-rocket" in warnings


@pytest.fixture
def intent_ctx(make_ctx):
    ctx = make_ctx()
    ctx.intent = IntentDescriptor(goal="email leads", triggers=["new row"], actions=["send email"])
    return ctx


@pytest.mark.asyncio
async def test_stage_returns_rewritten_plan(settings, intent_ctx):
    engine = ScriptedEngine([{
        "libraryNodes": [
            {"id": "new-row-in-google-sheet", "role": "trigger"},
            {"id": "send-email", "role": "action"},
        ],
        "connections": [{"from": "new-row-in-google-sheet", "to": "send-email"}],
    }])
    result = await run_matching_stage(engine, intent_ctx, settings)

    assert result.success
    assert len(result.data.library_nodes) == 2
    prompt = engine.calls[0].messages[0].content
    assert "TRIGGER: New Row in Google Sheet (ID: new-row-in-google-sheet)" in prompt
    assert "google_sheets_connection" not in prompt


@pytest.mark.asyncio
async def test_stage_fails_on_empty_plan(settings, intent_ctx):
    result = await run_matching_stage(ScriptedEngine([{"libraryNodes": []}]), intent_ctx, settings)
    assert result.error_kind is ErrorKind.MALFORMED_RESPONSE


@pytest.mark.asyncio
async def test_stage_fails_on_invalid_role(settings, intent_ctx):
    engine = ScriptedEngine([{"libraryNodes": [{"id": "send-email", "role": "sidekick"}]}])
    result = await run_matching_stage(engine, intent_ctx, settings)
    assert result.error_kind is ErrorKind.MALFORMED_RESPONSE
