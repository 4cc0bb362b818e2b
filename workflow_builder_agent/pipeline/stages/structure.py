"""Stage 3 — structure synthesis.

Turns the capability plan into a WorkflowGraph. In streaming mode every text
delta is forwarded to the caller's chunk sink as it arrives, followed by one
final call carrying the full text with complete=True; the text is parsed only
once, after the stream has finished.
"""

from __future__ import annotations

import asyncio
import json
import logging

from pydantic import ValidationError

from workflow_builder_agent.errors import (
    CollaboratorUnavailableError,
    CompletionServiceError,
    ErrorKind,
    MalformedResponseError,
)
from workflow_builder_agent.pipeline.context import ChunkSink, PipelineContext
from workflow_builder_agent.pipeline.llm import complete_with_retry, parse_json_object, usage_of, validation_summary
from workflow_builder_agent.pipeline.models import GENERATED_CAPABILITY_ID, CapabilityPlan, WorkflowGraph
from workflow_builder_agent.pipeline.normalize import normalize_layout
from workflow_builder_agent.pipeline.results import StepResult, TokenUsage
from workflow_builder_agent.pipeline.settings import PipelineSettings
from workflow_builder_agent.pipeline.stages._common import stage_boundary
from workflow_builder_agent.reasoning import Message, ReasoningEngine

logger = logging.getLogger("workflow_builder_agent.pipeline.structure")

STEP_NAME = "workflow-generation"
TEMPERATURE = 0.3

SYSTEM_PROMPT = """\
You turn a capability plan into a workflow graph.

Return a JSON object:
{
  "workflowName": "<short title>",
  "reasoning": "<two or three sentences on how the workflow works>",
  "nodes": [
    {"id": "<unique id, e.g. node-1>", "type": "workflow-node", "position": {"x": 0, "y": 0},
     "data": {"nodeId": "<catalogue id, or CUSTOM_GENERATED>", "label": "<display name>",
              "description": "<what this step does>", "config": {}}}
  ],
  "edges": [
    {"id": "<unique id, e.g. edge-1>", "source": "<node id>", "target": "<node id>",
     "type": "buttonedge", "animated": true}
  ]
}

Rules:
- One node per plan entry. Library entries use their catalogue id as data.nodeId.
  Custom entries use data.nodeId "CUSTOM_GENERATED" and data.label set to the custom node name.
- Every node MUST have a non-empty data.description.
- Every node id and edge id must be unique.
- Create one edge per plan connection, pointing at the node ids you assigned.
- Where the plan's dataFlow passes a field into a node, reference it in that
  node's config as {{inputData.<field>}}. Webhook payload fields are flat:
  {{inputData.email}}, never {{inputData.payload.email}}.
- Leave config empty unless a value follows directly from the plan.
- Every position is {"x": 0, "y": 0}; layout happens elsewhere.
"""


def _build_prompt(ctx: PipelineContext) -> str:
    assert ctx.plan is not None
    plan = ctx.plan
    catalogue_lines = []
    for entry in plan.library_nodes:
        descriptor = ctx.library.get(entry.id)
        if descriptor is None:
            continue
        outputs = ", ".join(o.get("name", "") for o in descriptor.outputs) or "none"
        catalogue_lines.append(f"- {descriptor.id}: {descriptor.name}. {descriptor.description} Outputs: {outputs}")
    parts = [
        f"User request:\n{ctx.request.strip()}",
        f"Plan:\n{json.dumps(plan.to_wire(), indent=2)}",
    ]
    if catalogue_lines:
        parts.append("Catalogue entries used:\n" + "\n".join(catalogue_lines))
    if ctx.intent is not None and ctx.intent.existing_context:
        parts.append(
            "The user is modifying this existing workflow; keep its node ids where the node is unchanged:\n"
            + json.dumps(ctx.intent.existing_context)
        )
    return "\n\n".join(parts)


def attach_plan_requirements(graph: WorkflowGraph, plan: CapabilityPlan) -> WorkflowGraph:
    """Copy each custom plan entry's requirements/type onto its generated node's metadata.

    Generated nodes are matched by label (case-insensitive); unmatched ones take the
    remaining custom entries in order.
    """
    if not plan.custom_nodes:
        return graph
    by_name = {c.name.strip().lower(): c for c in plan.custom_nodes}
    unclaimed = list(plan.custom_nodes)
    generated = [n for n in graph.nodes if n.data.capability_id == GENERATED_CAPABILITY_ID]

    assignment = {}
    for node in generated:
        entry = by_name.get(node.data.label.strip().lower())
        if entry is not None and entry in unclaimed:
            assignment[node.id] = entry
            unclaimed.remove(entry)
    for node in generated:
        if node.id not in assignment and unclaimed:
            assignment[node.id] = unclaimed.pop(0)

    nodes = []
    for node in graph.nodes:
        entry = assignment.get(node.id)
        if entry is None:
            nodes.append(node)
            continue
        metadata = dict(node.data.metadata or {})
        metadata.setdefault("requirements", entry.requirements)
        metadata.setdefault("type", entry.type)
        data = node.data.model_copy(update={"metadata": metadata})
        nodes.append(node.model_copy(update={"data": data}))
    return graph.model_copy(update={"nodes": nodes})


async def _stream_text(
    engine: ReasoningEngine,
    settings: PipelineSettings,
    prompt: str,
    model: str | None,
    on_chunk: ChunkSink,
) -> tuple[str, TokenUsage]:
    """Stream the completion into on_chunk. Retries only before the first chunk was forwarded."""
    attempts = settings.completion_retries + 1
    for attempt in range(1, attempts + 1):
        pieces: list[str] = []
        usage = TokenUsage()
        try:
            async for event in engine.stream(
                [Message(role="user", content=prompt)],
                system=SYSTEM_PROMPT,
                temperature=TEMPERATURE,
                model=model,
            ):
                if event.done:
                    usage = TokenUsage(event.input_tokens, event.output_tokens)
                    continue
                pieces.append(event.text)
                await on_chunk(event.text, False)
        except CompletionServiceError as exc:
            if pieces or attempt >= attempts:
                raise CollaboratorUnavailableError(
                    f"Structure stream failed: {exc.message}", stage=STEP_NAME,
                ) from exc
            delay = settings.retry_backoff_s * (2 ** (attempt - 1))
            logger.warning("[STRUCTURE] Stream attempt %d/%d failed (%s); retrying in %.1fs",
                           attempt, attempts, exc.message, delay)
            await asyncio.sleep(delay)
            continue
        full_text = "".join(pieces)
        await on_chunk(full_text, True)
        return full_text, usage
    raise AssertionError("unreachable")


@stage_boundary(STEP_NAME)
async def run_structure_stage(
    engine: ReasoningEngine,
    ctx: PipelineContext,
    settings: PipelineSettings,
    model: str | None = None,
    on_chunk: ChunkSink | None = None,
) -> StepResult[WorkflowGraph]:
    prompt = _build_prompt(ctx)
    if on_chunk is not None and settings.stream_structure:
        text, usage = await _stream_text(engine, settings, prompt, model, on_chunk)
    else:
        response = await complete_with_retry(
            engine,
            settings,
            prompt=prompt,
            system=SYSTEM_PROMPT,
            model=model,
            temperature=TEMPERATURE,
            stage=STEP_NAME,
        )
        text, usage = response.content or "", usage_of(response)

    try:
        payload = parse_json_object(text)
        if "nodes" not in payload and isinstance(payload.get("workflow"), dict):
            payload = payload["workflow"]
        graph = WorkflowGraph.model_validate(payload)
    except MalformedResponseError as exc:
        return StepResult.fail(ErrorKind.MALFORMED_RESPONSE, exc.message, usage)
    except ValidationError as exc:
        return StepResult.fail(
            ErrorKind.MALFORMED_RESPONSE, f"Workflow failed validation: {validation_summary(exc)}", usage,
        )
    if not graph.nodes:
        return StepResult.fail(ErrorKind.MALFORMED_RESPONSE, "Workflow contains no nodes", usage)

    graph = normalize_layout(graph)
    graph = attach_plan_requirements(graph, ctx.plan)
    logger.info("[STRUCTURE] %d nodes, %d edges (%r)", len(graph.nodes), len(graph.edges), graph.workflow_name)
    return StepResult.ok(graph, usage)
