"""Field configuration stage and its deterministic post-pass."""

from __future__ import annotations

import pytest

from conftest import ScriptedEngine, edge, graph, node
from workflow_builder_agent.errors import ErrorKind
from workflow_builder_agent.pipeline.models import ConfigField, IntentDescriptor
from workflow_builder_agent.pipeline.stages.configuration import (
    fillable_fields,
    flatten_webhook_references,
    normalize_schedules,
    run_configuration_stage,
)


@pytest.fixture
def sheet_to_email_ctx(make_ctx):
    ctx = make_ctx(integration_context={"google-sheets": {"spreadsheets": [{"id": "sheet-42", "name": "Leads"}]}})
    ctx.workflow = graph(
        [
            node("node-1", "new-row-in-google-sheet"),
            node("node-2", "send-email", config={"body": "{{inputData.row}}"}),
        ],
        [edge("edge-1", "node-1", "node-2")],
    )
    return ctx


def test_credential_bound_fields_are_not_fillable(sheet_to_email_ctx):
    trigger = sheet_to_email_ctx.workflow.get_node("node-1")
    assert set(fillable_fields(trigger, sheet_to_email_ctx)) == {"spreadsheetId", "sheetName"}


def test_generated_node_uses_embedded_schema(make_ctx):
    custom = node("n", "CUSTOM_GENERATED", config_schema={
        "city": ConfigField(label="City"),
        "weather_connection": ConfigField(type="integration"),
        "token": ConfigField(credential_type="api_token"),
    })
    assert set(fillable_fields(custom, make_ctx())) == {"city"}


@pytest.mark.asyncio
async def test_merge_respects_schema_and_existing_references(settings, sheet_to_email_ctx):
    engine = ScriptedEngine([{"configurations": [
        {"nodeId": "node-1", "config": {
            "google_sheets_connection": "conn-1",
            "spreadsheetId": "sheet-42",
            "sheetName": "Leads",
            "inventedField": "x",
        }},
        {"nodeId": "node-2", "config": {"to": "me@example.com", "subject": "", "body": "Hello"}},
    ]}])
    result = await run_configuration_stage(engine, sheet_to_email_ctx, settings)

    assert result.success
    trigger = result.data.get_node("node-1").data.config
    assert trigger == {"spreadsheetId": "sheet-42", "sheetName": "Leads"}
    email = result.data.get_node("node-2").data.config
    assert email == {"body": "{{inputData.row}}", "to": "me@example.com"}

    prompt = engine.calls[0].messages[0].content
    assert "google_sheets_connection" not in prompt
    assert "sheet-42" in prompt  # integration context offered


@pytest.mark.asyncio
async def test_nothing_fillable_makes_no_collaborator_call(settings, make_ctx):
    ctx = make_ctx()
    ctx.workflow = graph([node("node-1", "manual-trigger")])
    engine = ScriptedEngine()
    result = await run_configuration_stage(engine, ctx, settings)

    assert result.success
    assert result.data is ctx.workflow
    assert result.token_usage.total == 0
    assert engine.calls == []


@pytest.mark.asyncio
async def test_prose_schedule_becomes_cron(settings, make_ctx):
    ctx = make_ctx("Every weekday at 9am send me a summary")
    ctx.workflow = graph([node("node-1", "scheduled-time-trigger"), node("node-2", "send-email")])
    engine = ScriptedEngine([{"configurations": [
        {"nodeId": "node-1", "config": {"schedule": "every weekday at 9am", "timezone": "Europe/Paris"}},
    ]}])
    result = await run_configuration_stage(engine, ctx, settings)

    assert result.data.get_node("node-1").data.config == {"schedule": "0 9 * * 1-5", "timezone": "Europe/Paris"}


def test_unconvertible_schedule_is_dropped_with_warning():
    wf = graph([node("node-1", "scheduled-time-trigger", config={"schedule": "whenever it feels right"})])
    fixed, warnings = normalize_schedules(wf)

    assert fixed.get_node("node-1").data.config == {}
    assert len(warnings) == 1
    assert wf.get_node("node-1").data.config == {"schedule": "whenever it feels right"}


def test_valid_cron_is_left_alone():
    wf = graph([node("node-1", "scheduled-time-trigger", config={"schedule": "0 9 * * 1"})])
    fixed, warnings = normalize_schedules(wf)
    assert fixed.get_node("node-1").data.config == {"schedule": "0 9 * * 1"}
    assert warnings == []


def test_webhook_payload_references_are_flattened():
    wf = graph([
        node("node-1", "webhook-trigger"),
        node("node-2", "send-email", config={
            "to": "{{inputData.payload.email}}",
            "body": "Hi {{ inputData.body.name }}, order {{inputData.orderId}}",
        }),
    ])
    fixed, warnings = flatten_webhook_references(wf)
    assert fixed.get_node("node-2").data.config == {
        "to": "{{inputData.email}}",
        "body": "Hi {{inputData.name}}, order {{inputData.orderId}}",
    }
    assert warnings == []


def test_deep_webhook_references_reduce_to_one_level():
    wf = graph([
        node("node-1", "webhook-trigger"),
        node("node-2", "send-email", config={
            "to": "{{inputData.payload.user.email}}",
            "subject": "{{inputData.data.items[0].title}}",
        }),
    ])
    fixed, warnings = flatten_webhook_references(wf)
    assert fixed.get_node("node-2").data.config == {
        "to": "{{inputData.email}}",
        "subject": "{{inputData.title}}",
    }
    assert warnings == []


def test_other_nested_references_are_reported():
    wf = graph([
        node("node-1", "webhook-trigger"),
        node("node-2", "send-email", config={"to": "{{inputData.customer.email}}"}),
    ])
    fixed, warnings = flatten_webhook_references(wf)
    assert fixed.get_node("node-2").data.config == {"to": "{{inputData.customer.email}}"}
    assert warnings == ["nested reference on node-2: {{inputData.customer.email}}"]


def test_references_untouched_without_webhook_trigger():
    wf = graph([
        node("node-1", "manual-trigger"),
        node("node-2", "send-email", config={"to": "{{inputData.payload.email}}"}),
    ])
    fixed, warnings = flatten_webhook_references(wf)
    assert fixed is wf
    assert warnings == []


@pytest.mark.asyncio
async def test_extracted_intent_reaches_prompt(settings, sheet_to_email_ctx):
    sheet_to_email_ctx.intent = IntentDescriptor(
        goal="Email each new lead to the sales inbox",
        triggers=["new-row-in-google-sheet"],
        actions=["send-email"],
        custom_requirements=["score the lead"],
    )
    engine = ScriptedEngine([{"configurations": []}])
    await run_configuration_stage(engine, sheet_to_email_ctx, settings)

    prompt = engine.calls[0].messages[0].content
    assert "Extracted intent:" in prompt
    assert "Email each new lead to the sales inbox" in prompt
    assert "score the lead" in prompt
    assert prompt.index("Extracted intent:") < prompt.index("Nodes to configure:")


@pytest.mark.asyncio
async def test_malformed_reply_fails_stage(settings, sheet_to_email_ctx):
    result = await run_configuration_stage(ScriptedEngine(["no json here"]), sheet_to_email_ctx, settings)
    assert result.error_kind is ErrorKind.MALFORMED_RESPONSE
