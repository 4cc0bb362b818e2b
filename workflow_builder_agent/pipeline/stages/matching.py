"""Stage 2 — capability matching.

The collaborator maps the intent onto catalogue capabilities (libraryNodes)
and, where nothing fits, on capabilities to be generated (customNodes).
enforce_plan_rules() then rewrites the plan deterministically:

  1. trigger-only capabilities used as an action/transform are removed
  2. only the first trigger survives (library entries first, then custom)
  3. connections and dataFlow entries pointing at removed nodes are pruned
  4. custom nodes resembling a library capability are flagged, not removed
  5. ids missing from the catalogue are logged, not removed
"""

from __future__ import annotations

import logging

from pydantic import ValidationError

from workflow_builder_agent.catalogue.library import CapabilityLibrary
from workflow_builder_agent.catalogue.lookups import TRIGGER_ONLY_IDS, similar_library_capability
from workflow_builder_agent.errors import ErrorKind, MalformedResponseError
from workflow_builder_agent.pipeline.context import PipelineContext
from workflow_builder_agent.pipeline.llm import complete_with_retry, parse_json_object, usage_of, validation_summary
from workflow_builder_agent.pipeline.models import CapabilityPlan
from workflow_builder_agent.pipeline.results import StepResult
from workflow_builder_agent.pipeline.settings import PipelineSettings
from workflow_builder_agent.pipeline.stages._common import stage_boundary
from workflow_builder_agent.reasoning import ReasoningEngine

logger = logging.getLogger("workflow_builder_agent.pipeline.matching")

STEP_NAME = "node-matching"
TEMPERATURE = 0.3

SYSTEM_PROMPT = """\
You select building blocks for an automation workflow from a fixed catalogue.

Return a JSON object:
{
  "libraryNodes": [{"id": "<catalogue id>", "role": "trigger|action|transform", "reason": "..."}],
  "customNodes":  [{"name": "<short name>", "type": "trigger|action|transform",
                    "requirements": "<what the generated code must do>", "reason": "..."}],
  "connections":  [{"from": "<library id or custom name>", "to": "<library id or custom name>", "reason": "..."}],
  "dataFlow":     [{"source": "<node>", "target": "<node>", "field": "<output field>"}]
}

Rules:
- Prefer catalogue capabilities. Only use customNodes for needs no catalogue entry covers.
- Exactly ONE trigger in the whole plan.
- Capabilities listed under TRIGGER may only be used with role "trigger".
- Connections form a single chain or tree starting at the trigger.
- Use ids exactly as written in the catalogue.
"""


def _build_prompt(ctx: PipelineContext) -> str:
    assert ctx.intent is not None
    return (
        f"Intent:\n{ctx.intent.model_dump_json(by_alias=True, exclude={'existing_context'}, indent=2)}\n\n"
        f"Catalogue:\n{ctx.library.prompt_view()}"
    )


def _prune_references(plan: CapabilityPlan, gone: set[str]) -> CapabilityPlan:
    if not gone:
        return plan
    connections = [c for c in plan.connections if c.from_ not in gone and c.to not in gone]
    data_flow = [d for d in plan.data_flow if d.source not in gone and d.target not in gone]
    dropped = (len(plan.connections) - len(connections)) + (len(plan.data_flow) - len(data_flow))
    if dropped:
        logger.warning("[MATCHING] Pruned %d connection/dataFlow entries referencing %s", dropped, sorted(gone))
    return plan.model_copy(update={"connections": connections, "data_flow": data_flow})


def enforce_plan_rules(plan: CapabilityPlan, library: CapabilityLibrary) -> tuple[CapabilityPlan, list[str]]:
    """Apply the deterministic plan rewrites. Returns (plan, warnings)."""
    warnings: list[str] = []
    dropped_refs: set[str] = set()

    library_nodes = []
    for entry in plan.library_nodes:
        if entry.id in TRIGGER_ONLY_IDS and entry.role != "trigger":
            logger.warning("[MATCHING] Removed trigger-only capability %r used as %s", entry.id, entry.role)
            warnings.append(f"removed trigger-only capability used as {entry.role}: {entry.id}")
            dropped_refs.add(entry.id)
            continue
        library_nodes.append(entry)

    trigger_seen = False
    kept_library = []
    for entry in library_nodes:
        if entry.role == "trigger":
            if trigger_seen:
                logger.warning("[MATCHING] Dropped extra trigger %r", entry.id)
                warnings.append(f"dropped extra trigger: {entry.id}")
                dropped_refs.add(entry.id)
                continue
            trigger_seen = True
        kept_library.append(entry)

    kept_custom = []
    for entry in plan.custom_nodes:
        if entry.type == "trigger":
            if trigger_seen:
                logger.warning("[MATCHING] Dropped extra custom trigger %r", entry.name)
                warnings.append(f"dropped extra trigger: {entry.name}")
                dropped_refs.add(entry.name)
                continue
            trigger_seen = True
        kept_custom.append(entry)

    # a name may still be referenced by a surviving entry with the same id
    surviving = {e.id for e in kept_library} | {e.name for e in kept_custom}
    plan = plan.model_copy(update={"library_nodes": kept_library, "custom_nodes": kept_custom})
    plan = _prune_references(plan, dropped_refs - surviving)

    for entry in kept_custom:
        similar = similar_library_capability(f"{entry.name} {entry.requirements}")
        if similar and library.contains(similar):
            logger.warning(
                "[MATCHING] Custom node %r resembles library capability %r", entry.name, similar,
            )
            warnings.append(f"custom node {entry.name!r} resembles library capability {similar!r}")

    for entry in kept_library:
        if not library.contains(entry.id):
            warnings.append(f"capability not found in catalogue: {entry.id}")
            logger.warning("[MATCHING] Plan references unknown capability %r", entry.id)

    return plan, warnings


@stage_boundary(STEP_NAME)
async def run_matching_stage(
    engine: ReasoningEngine,
    ctx: PipelineContext,
    settings: PipelineSettings,
    model: str | None = None,
) -> StepResult[CapabilityPlan]:
    response = await complete_with_retry(
        engine,
        settings,
        prompt=_build_prompt(ctx),
        system=SYSTEM_PROMPT,
        model=model,
        temperature=TEMPERATURE,
        stage=STEP_NAME,
    )
    usage = usage_of(response)

    try:
        plan = CapabilityPlan.model_validate(parse_json_object(response.content))
    except MalformedResponseError as exc:
        return StepResult.fail(ErrorKind.MALFORMED_RESPONSE, exc.message, usage)
    except ValidationError as exc:
        return StepResult.fail(
            ErrorKind.MALFORMED_RESPONSE, f"Plan failed validation: {validation_summary(exc)}", usage,
        )

    plan, warnings = enforce_plan_rules(plan, ctx.library)
    if not plan.library_nodes and not plan.custom_nodes:
        return StepResult.fail(ErrorKind.MALFORMED_RESPONSE, "Plan contains no capabilities", usage)

    logger.info(
        "[MATCHING] library=%d custom=%d connections=%d dataFlow=%d",
        len(plan.library_nodes), len(plan.custom_nodes), len(plan.connections), len(plan.data_flow),
    )
    return StepResult.ok(plan, usage, warnings)
