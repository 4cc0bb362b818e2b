"""Stage 6 — validation and repair.

Order of operations:
  1. validate_workflow()      structural check; any error is fatal
  2. advisory refinement      optional collaborator pass that may improve
                              descriptions/labels/reasoning. Its answer is used
                              only if node and edge ids are unchanged, and only
                              textual fields are taken from it. Any problem with
                              it is logged and ignored.
  3. normalize_graph()        deterministic defaults (idempotent)
  4. validate_workflow()      final check on the repaired graph

With the advisory pass disabled the stage is idempotent: running it on its
own output returns the same graph.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from pydantic import ValidationError

from workflow_builder_agent.catalogue.library import CapabilityLibrary
from workflow_builder_agent.errors import ErrorKind, MalformedResponseError, PipelineError
from workflow_builder_agent.pipeline.context import PipelineContext
from workflow_builder_agent.pipeline.llm import complete_with_retry, parse_json_object, usage_of
from workflow_builder_agent.pipeline.models import EDGE_KIND, NODE_KIND, WorkflowGraph
from workflow_builder_agent.pipeline.normalize import normalize_graph
from workflow_builder_agent.pipeline.results import StepResult, TokenUsage
from workflow_builder_agent.pipeline.settings import PipelineSettings
from workflow_builder_agent.pipeline.stages._common import stage_boundary
from workflow_builder_agent.reasoning import ReasoningEngine

logger = logging.getLogger("workflow_builder_agent.pipeline.validation")

STEP_NAME = "validation"
TEMPERATURE = 0.1

SYSTEM_PROMPT = """\
You review a finished automation workflow and polish its wording.

You may rewrite: workflowName, reasoning, and each node's data.label and
data.description so that a non-technical user understands them.
You must NOT add, remove or rename nodes or edges, and must not touch ids,
nodeId, config, customCode or configSchema.

Return the complete workflow as a JSON object with keys
"workflowName", "reasoning", "nodes", "edges".
"""


# ---------------------------------------------------------------------------
# Structural validation
# ---------------------------------------------------------------------------


def validate_workflow(graph: WorkflowGraph, library: CapabilityLibrary | None = None) -> dict[str, Any]:
    """Check a workflow graph for structural errors.

    Returns {"valid": bool, "errors": [...], "warnings": [...]}. Unknown
    catalogue ids are warnings, never errors.
    """
    errors: list[str] = []
    warnings: list[str] = []

    if not isinstance(graph.reasoning, str):
        errors.append("reasoning must be a string")
    if not graph.nodes:
        errors.append("Workflow has no nodes")

    seen_nodes: set[str] = set()
    for i, node in enumerate(graph.nodes):
        label = node.id or f"nodes[{i}]"
        if not node.id:
            errors.append(f"{label}: missing id")
        elif node.id in seen_nodes:
            errors.append(f"{label}: duplicate node id")
        seen_nodes.add(node.id)

        if node.kind != NODE_KIND:
            errors.append(f"{label}: type must be {NODE_KIND!r}, got {node.kind!r}")
        if node.position is None:
            errors.append(f"{label}: missing position")
        if not node.data.capability_id:
            errors.append(f"{label}: missing data.nodeId")
        if not node.data.description.strip():
            errors.append(f"{label}: missing data.description")

        if node.data.is_generated:
            if not (node.data.custom_code or "").strip():
                errors.append(f"{label}: generated node has no customCode")
            if node.data.config_schema is None:
                errors.append(f"{label}: generated node has no configSchema")
        elif node.data.capability_id and library is not None and not library.contains(node.data.capability_id):
            warnings.append(f"{label}: capability {node.data.capability_id!r} not in catalogue")

    seen_edges: set[str] = set()
    for i, edge in enumerate(graph.edges):
        label = edge.id or f"edges[{i}]"
        if not edge.id:
            errors.append(f"{label}: missing id")
        elif edge.id in seen_edges:
            errors.append(f"{label}: duplicate edge id")
        seen_edges.add(edge.id)

        if not edge.source or not edge.target:
            errors.append(f"{label}: missing source or target")
        else:
            if edge.source not in seen_nodes:
                errors.append(f"{label}: source {edge.source!r} does not resolve to a node")
            if edge.target not in seen_nodes:
                errors.append(f"{label}: target {edge.target!r} does not resolve to a node")
        if edge.kind != EDGE_KIND:
            errors.append(f"{label}: type must be {EDGE_KIND!r}, got {edge.kind!r}")
        if edge.animated is not True:
            errors.append(f"{label}: animated must be true")

    return {"valid": not errors, "errors": errors, "warnings": warnings}


# ---------------------------------------------------------------------------
# Advisory refinement
# ---------------------------------------------------------------------------


def merge_textual_refinement(graph: WorkflowGraph, refined: WorkflowGraph) -> WorkflowGraph | None:
    """Take wording from refined if it kept the exact node/edge id sets, else None."""
    if len(refined.nodes) != len(graph.nodes) or len(refined.edges) != len(graph.edges):
        return None
    if set(refined.node_ids()) != set(graph.node_ids()):
        return None
    if {e.id for e in refined.edges} != {e.id for e in graph.edges}:
        return None

    by_id = {n.id: n for n in refined.nodes}
    nodes = []
    for node in graph.nodes:
        better = by_id[node.id].data
        update = {}
        if better.label.strip():
            update["label"] = better.label
        if better.description.strip():
            update["description"] = better.description
        nodes.append(node.model_copy(update={"data": node.data.model_copy(update=update)}) if update else node)

    update: dict[str, Any] = {"nodes": nodes}
    if refined.reasoning.strip():
        update["reasoning"] = refined.reasoning
    if refined.workflow_name:
        update["workflow_name"] = refined.workflow_name
    return graph.model_copy(update=update)


async def _advisory_refinement(
    engine: ReasoningEngine,
    graph: WorkflowGraph,
    ctx: PipelineContext,
    settings: PipelineSettings,
    model: str | None,
) -> tuple[WorkflowGraph, TokenUsage, list[str]]:
    prompt = (
        f"User request:\n{ctx.request.strip()}\n\n"
        f"Workflow:\n{json.dumps(graph.to_wire(), indent=2)}"
    )
    try:
        response = await complete_with_retry(
            engine, settings, prompt=prompt, system=SYSTEM_PROMPT,
            model=model, temperature=TEMPERATURE, stage=STEP_NAME,
        )
    except PipelineError as exc:
        logger.warning("[VALIDATE] Advisory pass skipped: %s", exc.message)
        return graph, TokenUsage(), [f"advisory refinement skipped: {exc.message}"]

    usage = usage_of(response)
    try:
        payload = parse_json_object(response.content)
        if "nodes" not in payload and isinstance(payload.get("workflow"), dict):
            payload = payload["workflow"]
        refined = WorkflowGraph.model_validate(payload)
    except (MalformedResponseError, ValidationError) as exc:
        logger.warning("[VALIDATE] Advisory reply unusable (%s); ignored", exc)
        return graph, usage, ["advisory refinement ignored: unparseable reply"]

    merged = merge_textual_refinement(graph, refined)
    if merged is None:
        logger.warning("[VALIDATE] Advisory reply changed the graph structure; ignored")
        return graph, usage, ["advisory refinement ignored: structure changed"]
    return merged, usage, []


@stage_boundary(STEP_NAME)
async def run_validation_stage(
    engine: ReasoningEngine,
    ctx: PipelineContext,
    settings: PipelineSettings,
    model: str | None = None,
) -> StepResult[WorkflowGraph]:
    assert ctx.workflow is not None
    graph = ctx.workflow

    report = validate_workflow(graph, ctx.library)
    if not report["valid"]:
        for err in report["errors"]:
            logger.error("[VALIDATE] %s", err)
        return StepResult.fail(
            ErrorKind.STRUCTURAL_VIOLATION,
            f"{len(report['errors'])} structural error(s): {report['errors'][0]}",
            details=report["errors"],
        )
    warnings = list(report["warnings"])

    usage = TokenUsage()
    if settings.advisory_validation:
        graph, usage, advisory_warnings = await _advisory_refinement(engine, graph, ctx, settings, model)
        warnings.extend(advisory_warnings)

    graph = normalize_graph(graph)
    final = validate_workflow(graph, ctx.library)
    if not final["valid"]:
        return StepResult.fail(
            ErrorKind.STRUCTURAL_VIOLATION,
            f"{len(final['errors'])} structural error(s) after repair: {final['errors'][0]}",
            usage,
            details=final["errors"],
        )

    logger.info("[VALIDATE] Workflow valid: %d nodes, %d edges", len(graph.nodes), len(graph.edges))
    return StepResult.ok(graph, usage, warnings)
