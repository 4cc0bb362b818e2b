"""Stage 5 — custom capability synthesis.

For every generated node (data.nodeId == "CUSTOM_GENERATED") whose code is
missing or only a placeholder, the collaborator writes the node's code,
configuration schema and output list. Nodes are processed one at a time in
graph order.

Bounded retry: a first answer whose configSchema is empty is degenerate (the
code cannot be parameterised in the UI). Exactly one retry is made with an
amended prompt; the retry replaces the original only if it parses and carries
code. Otherwise the original stands and a warning is recorded.

Post-pass (deterministic, see reconcile_config_schema):
  - config references in the code (config.x, config['x'], config["x"]) are extracted
  - an API endpoint in the code identifies the integration, if any
  - on detection: one "<service>_connection" field replaces every credential field
  - references without a schema entry get a default string field
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from pydantic import Field, ValidationError

from workflow_builder_agent.catalogue.lookups import (
    SERVICE_DISPLAY_NAMES,
    ServiceMatch,
    connection_field_key,
    detect_service,
    is_credential_field,
    resource_type_for,
)
from workflow_builder_agent.errors import ErrorKind, MalformedResponseError
from workflow_builder_agent.pipeline.context import PipelineContext
from workflow_builder_agent.pipeline.llm import complete_with_retry, parse_json_object, usage_of, validation_summary
from workflow_builder_agent.pipeline.models import ConfigField, NodeRecord, WireModel, WorkflowGraph
from workflow_builder_agent.pipeline.results import StepResult, TokenUsage
from workflow_builder_agent.pipeline.settings import PipelineSettings
from workflow_builder_agent.pipeline.stages._common import stage_boundary
from workflow_builder_agent.reasoning import Message, ReasoningEngine

logger = logging.getLogger("workflow_builder_agent.pipeline.custom_code")

STEP_NAME = "code-generation"
TEMPERATURE = 0.2

_CONFIG_DOT_RE = re.compile(r"\bconfig\.([a-zA-Z_][a-zA-Z0-9_]*)")
_CONFIG_INDEX_RE = re.compile(r"""\bconfig\[['"]([a-zA-Z_][a-zA-Z0-9_]*)['"]\]""")
_LINE_COMMENT_RE = re.compile(r"//[^\n]*")
_BLOCK_COMMENT_RE = re.compile(r"/\*[\s\S]*?\*/")
_SIGNATURE_RE = re.compile(r"^\s*async\s*(?:function\s*\w*)?\s*\([^)]*\)\s*(?:=>)?\s*\{")
_STUB_BODIES = frozenset({"", "return inputData;", "return inputData", "return {};", "return {}", "return;"})

SYSTEM_PROMPT = """\
You write the code for a custom step of an automation workflow.

Return a JSON object:
{
  "customCode": "async (inputData, config, context) => { ... return { ... }; }",
  "configSchema": {
    "<field>": {"type": "string|number|boolean|select|textarea", "label": "...",
                "description": "...", "required": true|false, "default": <optional>}
  },
  "outputs": [{"name": "<field>", "type": "string|number|boolean|object|array", "description": "..."}]
}

Rules:
- inputData holds the previous step's output; config holds user settings.
- Every value a user may want to change (city, currency, URL, threshold, ...)
  must be read from config.<field> and declared in configSchema.
- Never hard-code API keys or tokens. Read them from config; they will be
  replaced by an account connection when the service is known.
- Use fetch() for HTTP calls and check response.ok.
- Return a plain object whose keys match "outputs".
"""

RETRY_PROMPT = """\
Your configSchema was empty, so the user cannot configure this step. \
Rewrite the code so that every user-adjustable value is read from config.<field>, \
and declare each of those fields in configSchema. Return the same JSON shape."""


class _CodeReply(WireModel):
    custom_code: str | None = None
    config_schema: dict[str, ConfigField] = Field(default_factory=dict)
    outputs: list[Any] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def has_real_code(code: str | None) -> bool:
    """False for missing, comment-only or stub code."""
    if not code or not code.strip():
        return False
    body = _BLOCK_COMMENT_RE.sub("", code)
    body = _LINE_COMMENT_RE.sub("", body).strip()
    if not body:
        return False
    m = _SIGNATURE_RE.match(body)
    if m and body.endswith("}"):
        inner = " ".join(body[m.end():-1].split())
        return inner not in _STUB_BODIES
    return True


def needs_code(node: NodeRecord) -> bool:
    return node.data.is_generated and not has_real_code(node.data.custom_code)


def extract_config_references(code: str) -> list[str]:
    """Config keys read by code, in first-use order."""
    seen: dict[str, int] = {}
    for pattern in (_CONFIG_DOT_RE, _CONFIG_INDEX_RE):
        for m in pattern.finditer(code or ""):
            seen[m.group(1)] = min(seen.get(m.group(1), m.start()), m.start())
    return sorted(seen, key=seen.__getitem__)


def humanize(key: str) -> str:
    """apiKey / api_key → "Api Key"."""
    spaced = re.sub(r"(?<=[a-z0-9])(?=[A-Z])", " ", key).replace("_", " ").replace("-", " ")
    return " ".join(w[:1].upper() + w[1:] for w in spaced.split())


def _connection_field(match: ServiceMatch) -> ConfigField:
    display = SERVICE_DISPLAY_NAMES.get(match.service, humanize(match.service))
    return ConfigField(
        type="integration",
        label="Connect",
        description=f"Connect your {display} account",
        required=True,
        service_name=match.service,
        integration_type=match.service,
        credential_type=match.credential_type,
    )


def reconcile_config_schema(
    code: str,
    schema: dict[str, ConfigField],
) -> tuple[dict[str, ConfigField], ServiceMatch | None, list[str]]:
    """Bring a generated schema in line with its code.

    Returns (schema, detected integration or None, warnings).
    """
    warnings: list[str] = []
    schema = dict(schema)
    match = detect_service(code)

    if match is not None:
        for key in [k for k in schema if is_credential_field(k)]:
            del schema[key]
            logger.warning("[CODEGEN] Removed credential field %r (covered by %s connection)", key, match.service)
            warnings.append(f"removed credential field {key!r}; covered by {match.service} connection")
        conn_key = connection_field_key(match.service)
        if conn_key not in schema:
            schema = {conn_key: _connection_field(match), **schema}
        for key, field in list(schema.items()):
            if field.type == "integration" or field.resource_type:
                continue
            resource = resource_type_for(match.service, key)
            if resource:
                schema[key] = field.model_copy(update={"service_name": match.service, "resource_type": resource})

    for ref in extract_config_references(code):
        if ref in schema:
            continue
        if match is not None and is_credential_field(ref):
            logger.info("[CODEGEN] Reference config.%s served by %s connection", ref, match.service)
            continue
        label = humanize(ref)
        field = ConfigField(
            type="string",
            label=label,
            description=f"Configuration value for {label}",
            required=False,
        )
        if match is not None:
            resource = resource_type_for(match.service, ref)
            if resource:
                field = field.model_copy(update={"service_name": match.service, "resource_type": resource})
        schema[ref] = field
        logger.info("[CODEGEN] Added missing schema entry for config.%s", ref)
        warnings.append(f"added schema entry for undeclared config.{ref}")

    return schema, match, warnings


# ---------------------------------------------------------------------------
# Collaborator calls
# ---------------------------------------------------------------------------


def _upstream_outputs(node: NodeRecord, graph: WorkflowGraph, ctx: PipelineContext) -> list[dict[str, Any]]:
    upstream = []
    for edge in graph.edges:
        if edge.target != node.id:
            continue
        source = graph.get_node(edge.source)
        if source is None:
            continue
        outputs: list[Any] = []
        if source.data.is_generated:
            outputs = (source.data.metadata or {}).get("outputs", [])
        else:
            descriptor = ctx.library.get(source.data.capability_id)
            if descriptor is not None:
                outputs = descriptor.outputs
        upstream.append({"node": source.data.label or source.id, "outputs": outputs})
    return upstream


def _build_prompt(node: NodeRecord, graph: WorkflowGraph, ctx: PipelineContext) -> str:
    metadata = node.data.metadata or {}
    step = {
        "label": node.data.label,
        "description": node.data.description,
        "requirements": metadata.get("requirements", ""),
        "role": metadata.get("type", "action"),
    }
    parts = [
        f"User request:\n{ctx.request.strip()}",
        f"Step to implement:\n{json.dumps(step, indent=2)}",
    ]
    upstream = _upstream_outputs(node, graph, ctx)
    if upstream:
        parts.append(f"inputData comes from:\n{json.dumps(upstream, indent=2)}")
    return "\n\n".join(parts)


def _parse_reply(text: str | None) -> _CodeReply:
    try:
        return _CodeReply.model_validate(parse_json_object(text))
    except ValidationError as exc:
        raise MalformedResponseError(f"Code reply failed validation: {validation_summary(exc)}") from exc


class _UnusableFirstReply(MalformedResponseError):
    """First answer for a node could not be used; carries the usage it cost."""

    def __init__(self, message: str, usage: TokenUsage) -> None:
        super().__init__(message)
        self.usage = usage


def _kept_first(node_id: str, reason: str) -> str:
    return f"{ErrorKind.DEGENERATE_OUTPUT.value}: kept first attempt for {node_id} ({reason})"


async def _synthesize(
    engine: ReasoningEngine,
    settings: PipelineSettings,
    node: NodeRecord,
    graph: WorkflowGraph,
    ctx: PipelineContext,
    model: str | None,
) -> tuple[_CodeReply, TokenUsage, list[str]]:
    prompt = _build_prompt(node, graph, ctx)
    response = await complete_with_retry(
        engine, settings, prompt=prompt, system=SYSTEM_PROMPT,
        model=model, temperature=TEMPERATURE, stage=STEP_NAME,
    )
    usage = usage_of(response)
    try:
        reply = _parse_reply(response.content)
    except MalformedResponseError as exc:
        raise _UnusableFirstReply(exc.message, usage) from exc
    if not has_real_code(reply.custom_code):
        raise _UnusableFirstReply(f"No code returned for node {node.id!r}", usage)

    if reply.config_schema:
        return reply, usage, []

    logger.warning("[CODEGEN] %s: empty configSchema; retrying once", node.id)
    messages = [
        Message(role="user", content=prompt),
        Message(role="assistant", content=response.content or ""),
        Message(role="user", content=RETRY_PROMPT),
    ]
    retry = await complete_with_retry(
        engine, settings, prompt=messages, system=SYSTEM_PROMPT,
        model=model, temperature=TEMPERATURE, stage=STEP_NAME,
    )
    usage = usage + usage_of(retry)
    try:
        retried = _parse_reply(retry.content)
    except MalformedResponseError as exc:
        logger.warning("[CODEGEN] %s: retry unusable (%s); keeping first attempt", node.id, exc.message)
        return reply, usage, [_kept_first(node.id, "retry unparseable")]
    if not has_real_code(retried.custom_code):
        logger.warning("[CODEGEN] %s: retry returned no code; keeping first attempt", node.id)
        return reply, usage, [_kept_first(node.id, "retry had no code")]
    if not retried.config_schema:
        logger.warning("[CODEGEN] %s: retry schema still empty", node.id)
        return retried, usage, [f"{ErrorKind.DEGENERATE_OUTPUT.value}: configSchema still empty for {node.id}"]
    return retried, usage, []


def apply_generated_code(node: NodeRecord, reply: _CodeReply) -> tuple[NodeRecord, list[str]]:
    """Write code, reconciled schema and metadata onto node."""
    code = reply.custom_code or ""
    schema, match, warnings = reconcile_config_schema(code, reply.config_schema)
    metadata = dict(node.data.metadata or {})
    metadata.update({
        "generatedBy": "ai",
        "outputs": reply.outputs,
        "integration": match.service if match else None,
    })
    if match is not None:
        metadata["credentialType"] = match.credential_type
    config = node.data.config
    if match is not None:
        config = {k: v for k, v in config.items() if not is_credential_field(k)}
    data = node.data.model_copy(update={
        "custom_code": code,
        "config_schema": schema,
        "metadata": metadata,
        "config": config,
    })
    return node.model_copy(update={"data": data}), warnings


@stage_boundary(STEP_NAME)
async def run_custom_code_stage(
    engine: ReasoningEngine,
    ctx: PipelineContext,
    settings: PipelineSettings,
    model: str | None = None,
) -> StepResult[WorkflowGraph]:
    assert ctx.workflow is not None
    graph = ctx.workflow
    targets = [n.id for n in graph.nodes if needs_code(n)]
    if not targets:
        return StepResult.ok(graph, TokenUsage())

    usage = TokenUsage()
    warnings: list[str] = []
    for node_id in targets:
        node = graph.get_node(node_id)
        try:
            reply, node_usage, node_warnings = await _synthesize(engine, settings, node, graph, ctx, model)
        except _UnusableFirstReply as exc:
            logger.error("[CODEGEN] %s: %s", node_id, exc.message)
            return StepResult.fail(ErrorKind.MALFORMED_RESPONSE, f"{node_id}: {exc.message}", usage + exc.usage)
        usage = usage + node_usage
        updated, post_warnings = apply_generated_code(node, reply)
        warnings.extend(node_warnings + post_warnings)
        graph = graph.model_copy(update={
            "nodes": [updated if n.id == node_id else n for n in graph.nodes],
        })
        logger.info(
            "[CODEGEN] %s: %d chars of code, %d schema fields, integration=%s",
            node_id, len(updated.data.custom_code or ""), len(updated.data.config_schema or {}),
            (updated.data.metadata or {}).get("integration"),
        )

    return StepResult.ok(graph, usage, warnings)
