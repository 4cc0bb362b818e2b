"""Stage 4 — field configuration.

Fills configuration values the user stated or that follow unambiguously from
the request. Credential-bound fields (type "integration", or any field that
declares a credentialType) are never offered to the collaborator: the user
connects accounts in the UI.

Merge rules:
  - only keys that exist in the node's fillable schema are accepted
  - an existing {{inputData.*}} reference is never overwritten
  - empty values (None, "") are ignored

Deterministic post-pass:
  - schedule values are normalised to five-field cron (unconvertible → dropped)
  - when the graph starts at a webhook, nested payload references are flattened
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from workflow_builder_agent.errors import ErrorKind, MalformedResponseError
from workflow_builder_agent.pipeline.context import PipelineContext
from workflow_builder_agent.pipeline.llm import complete_with_retry, parse_json_object, usage_of, validation_summary
from workflow_builder_agent.pipeline.models import ConfigField, NodeRecord, WorkflowGraph
from workflow_builder_agent.pipeline.results import StepResult, TokenUsage
from workflow_builder_agent.pipeline.schedule import to_cron
from workflow_builder_agent.pipeline.settings import PipelineSettings
from workflow_builder_agent.pipeline.stages._common import stage_boundary
from workflow_builder_agent.reasoning import ReasoningEngine

logger = logging.getLogger("workflow_builder_agent.pipeline.configuration")

STEP_NAME = "node-configuration"
TEMPERATURE = 0.2

WEBHOOK_TRIGGER_ID = "webhook-trigger"
SCHEDULE_KEYS = frozenset({"schedule", "cron", "cronExpression"})

_TEMPLATE_RE = re.compile(r"\{\{\s*[^}]+\}\}")
_NESTED_WEBHOOK_REF_RE = re.compile(
    r"\{\{\s*inputData\.(?:payload|body|data|json|request)\.([A-Za-z0-9_.\[\]]+)\s*\}\}"
)
_MULTI_LEVEL_REF_RE = re.compile(r"\{\{\s*inputData\.[A-Za-z0-9_\[\]]+\.[A-Za-z0-9_.\[\]]+\s*\}\}")
_INDEX_RE = re.compile(r"\[\d*\]")

SYSTEM_PROMPT = """\
You fill in configuration values for the nodes of an automation workflow.

Return a JSON object:
{"configurations": [{"nodeId": "<node id>", "config": {"<field>": <value>}}]}

Rules:
- Only set fields listed for that node. Never invent field names.
- Only set a value when the user stated it or it follows unambiguously from the
  request. Leave everything else out.
- Schedules are five-field cron strings: "0 9 * * *" (daily 9:00),
  "0 9 * * 1" (Mondays 9:00), "0 9 1 * *" (1st of the month 9:00).
- Reference data from earlier nodes as {{inputData.<field>}}. Webhook payload
  fields are flat: {{inputData.email}}, never {{inputData.payload.email}}.
- When the user's connected resources are listed, use their ids for matching
  fields (spreadsheet, channel, ...).
- Do not include account connections, API keys or tokens.
"""


class _NodeConfiguration(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    node_id: str = Field(alias="nodeId")
    config: dict[str, Any] = Field(default_factory=dict)


class _ConfigurationReply(BaseModel):
    configurations: list[_NodeConfiguration] = Field(default_factory=list)


def node_schema(node: NodeRecord, ctx: PipelineContext) -> dict[str, ConfigField]:
    """The configuration schema governing node: embedded for generated nodes, catalogue otherwise."""
    if node.data.is_generated:
        return dict(node.data.config_schema or {})
    descriptor = ctx.library.get(node.data.capability_id)
    return dict(descriptor.config_schema) if descriptor is not None else {}


def fillable_fields(node: NodeRecord, ctx: PipelineContext) -> dict[str, ConfigField]:
    return {k: f for k, f in node_schema(node, ctx).items() if not f.is_credential_bound}


def _is_template_ref(value: Any) -> bool:
    return isinstance(value, str) and bool(_TEMPLATE_RE.search(value))


def _describe_field(key: str, f: ConfigField) -> dict[str, Any]:
    d: dict[str, Any] = {"field": key, "type": f.type, "description": f.description or f.label}
    if f.required:
        d["required"] = True
    if f.options:
        d["options"] = [o.get("value") for o in f.options]
    if f.resource_type:
        d["resource"] = f"{f.service_name}/{f.resource_type}"
    return d


def _build_prompt(ctx: PipelineContext, graph: WorkflowGraph, fillable: dict[str, dict[str, ConfigField]]) -> str:
    nodes = []
    for node in graph.nodes:
        fields = fillable.get(node.id)
        if not fields:
            continue
        nodes.append({
            "nodeId": node.id,
            "capability": node.data.capability_id,
            "label": node.data.label,
            "description": node.data.description,
            "currentConfig": node.data.config,
            "fields": [_describe_field(k, f) for k, f in fields.items()],
        })
    parts = [f"User request:\n{ctx.request.strip()}"]
    if ctx.intent is not None:
        intent = {
            "goal": ctx.intent.goal,
            "triggers": ctx.intent.triggers,
            "actions": ctx.intent.actions,
            "transforms": ctx.intent.transforms,
            "customRequirements": ctx.intent.custom_requirements,
        }
        parts.append(f"Extracted intent:\n{json.dumps(intent, indent=2)}")
    parts.append(f"Nodes to configure:\n{json.dumps(nodes, indent=2)}")
    if ctx.integration_context:
        parts.append(f"User's connected resources:\n{json.dumps(ctx.integration_context, indent=2)}")
    return "\n\n".join(parts)


def merge_configurations(
    graph: WorkflowGraph,
    configurations: list[_NodeConfiguration],
    fillable: dict[str, dict[str, ConfigField]],
) -> WorkflowGraph:
    by_node = {c.node_id: c.config for c in configurations}
    nodes = []
    for node in graph.nodes:
        proposed = by_node.get(node.id)
        if not proposed:
            nodes.append(node)
            continue
        allowed = fillable.get(node.id, {})
        config = dict(node.data.config)
        for key, value in proposed.items():
            if key not in allowed:
                logger.debug("[CONFIGURE] %s: ignored non-fillable field %r", node.id, key)
                continue
            if value is None or value == "":
                continue
            if _is_template_ref(config.get(key)):
                continue
            config[key] = value
        nodes.append(node.model_copy(update={"data": node.data.model_copy(update={"config": config})}))
    return graph.model_copy(update={"nodes": nodes})


def normalize_schedules(graph: WorkflowGraph) -> tuple[WorkflowGraph, list[str]]:
    """Rewrite schedule fields to cron; drop values that cannot be converted."""
    warnings: list[str] = []
    nodes = []
    for node in graph.nodes:
        config = dict(node.data.config)
        changed = False
        for key in SCHEDULE_KEYS & config.keys():
            value = config[key]
            if _is_template_ref(value):
                continue
            cron = to_cron(value) if isinstance(value, str) else None
            if cron is None:
                logger.warning("[CONFIGURE] %s: dropped unconvertible schedule %r", node.id, value)
                warnings.append(f"dropped unconvertible schedule on {node.id}: {value!r}")
                del config[key]
                changed = True
            elif cron != value:
                logger.info("[CONFIGURE] %s: schedule %r → %r", node.id, value, cron)
                config[key] = cron
                changed = True
        if changed:
            node = node.model_copy(update={"data": node.data.model_copy(update={"config": config})})
        nodes.append(node)
    return graph.model_copy(update={"nodes": nodes}), warnings


def _flat_reference(match: re.Match[str]) -> str:
    # the payload is delivered flat, so only the last path segment names a field
    field = _INDEX_RE.sub("", match.group(1).split(".")[-1])
    return "{{inputData.%s}}" % (field or match.group(1))


def _flatten_value(value: Any) -> Any:
    if isinstance(value, str):
        return _NESTED_WEBHOOK_REF_RE.sub(_flat_reference, value)
    if isinstance(value, dict):
        return {k: _flatten_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_flatten_value(v) for v in value]
    return value


def _multi_level_references(value: Any) -> list[str]:
    if isinstance(value, str):
        return _MULTI_LEVEL_REF_RE.findall(value)
    if isinstance(value, dict):
        return [ref for v in value.values() for ref in _multi_level_references(v)]
    if isinstance(value, list):
        return [ref for v in value for ref in _multi_level_references(v)]
    return []


def flatten_webhook_references(graph: WorkflowGraph) -> tuple[WorkflowGraph, list[str]]:
    """{{inputData.payload.user.email}} → {{inputData.email}} when the graph has a webhook trigger.

    Nested references outside the known payload wrappers are left alone and
    reported as warnings.
    """
    if not any(n.data.capability_id == WEBHOOK_TRIGGER_ID for n in graph.nodes):
        return graph, []
    warnings: list[str] = []
    nodes = []
    for node in graph.nodes:
        config = _flatten_value(node.data.config)
        if config != node.data.config:
            logger.info("[CONFIGURE] %s: flattened webhook payload references", node.id)
            node = node.model_copy(update={"data": node.data.model_copy(update={"config": config})})
        for ref in _multi_level_references(config):
            logger.warning("[CONFIGURE] %s: nested reference %s in a webhook workflow", node.id, ref)
            warnings.append(f"nested reference on {node.id}: {ref}")
        nodes.append(node)
    return graph.model_copy(update={"nodes": nodes}), warnings


@stage_boundary(STEP_NAME)
async def run_configuration_stage(
    engine: ReasoningEngine,
    ctx: PipelineContext,
    settings: PipelineSettings,
    model: str | None = None,
) -> StepResult[WorkflowGraph]:
    assert ctx.workflow is not None
    graph = ctx.workflow
    fillable = {n.id: fillable_fields(n, ctx) for n in graph.nodes}

    if not any(fillable.values()):
        logger.info("[CONFIGURE] No fillable fields; nothing to configure")
        return StepResult.ok(graph, TokenUsage())

    response = await complete_with_retry(
        engine,
        settings,
        prompt=_build_prompt(ctx, graph, fillable),
        system=SYSTEM_PROMPT,
        model=model,
        temperature=TEMPERATURE,
        stage=STEP_NAME,
    )
    usage = usage_of(response)

    try:
        reply = _ConfigurationReply.model_validate(parse_json_object(response.content))
    except MalformedResponseError as exc:
        return StepResult.fail(ErrorKind.MALFORMED_RESPONSE, exc.message, usage)
    except ValidationError as exc:
        return StepResult.fail(
            ErrorKind.MALFORMED_RESPONSE, f"Configuration reply failed validation: {validation_summary(exc)}", usage,
        )

    graph = merge_configurations(graph, reply.configurations, fillable)
    graph, warnings = normalize_schedules(graph)
    graph, webhook_warnings = flatten_webhook_references(graph)
    warnings.extend(webhook_warnings)

    logger.info("[CONFIGURE] Applied configuration to %d node(s)", len(reply.configurations))
    return StepResult.ok(graph, usage, warnings)
