"""Validation & repair stage."""

from __future__ import annotations

import pytest

from conftest import ScriptedEngine, edge, graph, node
from workflow_builder_agent.errors import CollaboratorUnavailableError, ErrorKind
from workflow_builder_agent.pipeline.models import EdgeRecord, NodeData, NodeRecord, Position, WorkflowGraph
from workflow_builder_agent.pipeline.normalize import normalize_graph
from workflow_builder_agent.pipeline.stages.validation import (
    merge_textual_refinement,
    run_validation_stage,
    validate_workflow,
)


def _valid_graph() -> WorkflowGraph:
    return normalize_graph(graph(
        [node("node-1", "manual-trigger"), node("node-2", "send-email")],
        [edge("edge-1", "node-1", "node-2")],
        workflow_name="Ping",
    ))


def test_valid_graph_passes(library):
    report = validate_workflow(_valid_graph(), library)
    assert report == {"valid": True, "errors": [], "warnings": []}


def test_structural_errors_are_reported():
    wf = WorkflowGraph(
        nodes=[
            node("node-1", "manual-trigger"),
            node("node-1", "send-email"),
            NodeRecord(id="node-3", data=NodeData(capability_id="CUSTOM_GENERATED", label="x", description="y")),
        ],
        edges=[EdgeRecord(id="edge-1", source="node-1", target="node-9")],
    )
    errors = validate_workflow(wf)["errors"]

    assert "node-1: duplicate node id" in errors
    assert any("node-3: type must be" in e for e in errors)
    assert "node-3: missing position" in errors
    assert "node-3: generated node has no customCode" in errors
    assert "node-3: generated node has no configSchema" in errors
    assert "edge-1: target 'node-9' does not resolve to a node" in errors
    assert any("edge-1: type must be" in e for e in errors)
    assert "edge-1: animated must be true" in errors


def test_unknown_capability_is_only_a_warning(library):
    wf = normalize_graph(graph([node("node-1", "manual-trigger"), node("node-2", "launch-rocket")]))
    report = validate_workflow(wf, library)
    assert report["valid"]
    assert report["warnings"] == ["node-2: capability 'launch-rocket' not in catalogue"]


def test_normalize_graph_is_idempotent_and_fills_description():
    wf = WorkflowGraph(
        nodes=[NodeRecord(id="n1", data=NodeData(capability_id="manual-trigger"))],
        edges=[],
    )
    once = normalize_graph(wf)
    assert once.nodes[0].data.description == "Node: manual-trigger"
    assert once.nodes[0].position == Position()
    assert normalize_graph(once) == once
    assert wf.nodes[0].position is None


@pytest.mark.asyncio
async def test_stage_is_idempotent_without_advisory(settings, make_ctx):
    ctx = make_ctx()
    ctx.workflow = _valid_graph()
    engine = ScriptedEngine()

    first = await run_validation_stage(engine, ctx, settings)
    ctx.workflow = first.data
    second = await run_validation_stage(engine, ctx, settings)

    assert first.success and second.success
    assert second.data.to_wire() == first.data.to_wire()
    assert engine.calls == []


@pytest.mark.asyncio
async def test_invalid_graph_fails_with_details(settings, make_ctx):
    ctx = make_ctx()
    ctx.workflow = graph([node("node-1", "manual-trigger")], [edge("edge-1", "node-1", "ghost")])
    result = await run_validation_stage(ScriptedEngine(), ctx, settings)

    assert result.error_kind is ErrorKind.STRUCTURAL_VIOLATION
    assert result.details == ["edge-1: target 'ghost' does not resolve to a node"]


@pytest.mark.asyncio
async def test_advisory_wording_is_applied(settings, make_ctx):
    settings.advisory_validation = True
    ctx = make_ctx()
    ctx.workflow = _valid_graph()
    refined = ctx.workflow.to_wire()
    refined["workflowName"] = "Ping me"
    refined["nodes"][1]["data"]["label"] = "Email me"
    refined["nodes"][1]["data"]["config"] = {"to": "attacker@example.com"}

    result = await run_validation_stage(ScriptedEngine([refined]), ctx, settings)

    assert result.success
    assert result.data.workflow_name == "Ping me"
    assert result.data.get_node("node-2").data.label == "Email me"
    assert result.data.get_node("node-2").data.config == {}


@pytest.mark.asyncio
async def test_advisory_structure_change_is_ignored(settings, make_ctx):
    settings.advisory_validation = True
    ctx = make_ctx()
    ctx.workflow = _valid_graph()
    refined = ctx.workflow.to_wire()
    refined["nodes"].append({"id": "node-3", "type": "workflow-node", "data": {"nodeId": "send-email"}})

    result = await run_validation_stage(ScriptedEngine([refined]), ctx, settings)

    assert result.success
    assert result.data.node_ids() == ["node-1", "node-2"]
    assert "advisory refinement ignored: structure changed" in result.warnings


@pytest.mark.asyncio
async def test_advisory_collaborator_failure_never_fails_stage(settings, make_ctx):
    settings.advisory_validation = True
    ctx = make_ctx()
    ctx.workflow = _valid_graph()
    result = await run_validation_stage(ScriptedEngine([CollaboratorUnavailableError("down")]), ctx, settings)

    assert result.success
    assert any("advisory refinement skipped" in w for w in result.warnings)


def test_merge_refinement_rejects_renamed_edges():
    wf = _valid_graph()
    refined = wf.model_copy(update={
        "edges": [e.model_copy(update={"id": "edge-renamed"}) for e in wf.edges],
    })
    assert merge_textual_refinement(wf, refined) is None
