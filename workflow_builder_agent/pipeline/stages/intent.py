"""Stage 1 — intent extraction.

Asks the collaborator to read the user's request into an IntentDescriptor,
then drops custom requirements that the capability library already covers
(AI text, messaging, speech...) so they are not turned into generated code.
"""

from __future__ import annotations

import json
import logging

from pydantic import ValidationError

from workflow_builder_agent.catalogue.lookups import covered_keyword
from workflow_builder_agent.errors import ErrorKind, MalformedResponseError
from workflow_builder_agent.pipeline.context import PipelineContext
from workflow_builder_agent.pipeline.llm import complete_with_retry, parse_json_object, usage_of, validation_summary
from workflow_builder_agent.pipeline.models import IntentDescriptor
from workflow_builder_agent.pipeline.results import StepResult
from workflow_builder_agent.pipeline.settings import PipelineSettings
from workflow_builder_agent.pipeline.stages._common import stage_boundary
from workflow_builder_agent.reasoning import ReasoningEngine

logger = logging.getLogger("workflow_builder_agent.pipeline.intent")

STEP_NAME = "intent-analysis"
TEMPERATURE = 0.2

SYSTEM_PROMPT = """\
You analyse automation requests for a workflow builder and describe what the \
user wants in structured form. You do not design the workflow itself.

Return a JSON object with exactly these keys:
  "goal":               one sentence describing the outcome the user wants
  "triggers":           list of events or schedules that should start the workflow
  "actions":            list of things the workflow must do, in order
  "transforms":         list of data manipulations between steps (may be empty)
  "customRequirements": list of needs that no standard integration provides
                        (custom API calls, bespoke calculations). Do NOT list AI
                        text generation, summarising, classification, sentiment,
                        translation, entity extraction, email, Slack, Notion,
                        Discord, SMS, posting to X, or speech conversion here;
                        those are built-in.
  "isModification":     true when the user is changing an existing workflow

Rules:
- A workflow has exactly one trigger. If none is stated, use "manual trigger".
- Keep every list item short (under 12 words).
"""


def _build_prompt(ctx: PipelineContext) -> str:
    parts = [f"User request:\n{ctx.request.strip()}"]
    existing = ctx.existing_node_ids()
    if existing:
        parts.append(
            "The user already has a workflow with these nodes:\n"
            + json.dumps(existing)
            + "\nDecide whether the request modifies it."
        )
    return "\n\n".join(parts)


def filter_covered_requirements(intent: IntentDescriptor) -> tuple[IntentDescriptor, list[str]]:
    """Remove custom requirements the capability library already provides.

    Returns the filtered descriptor and the removed entries.
    """
    kept: list[str] = []
    removed: list[str] = []
    for req in intent.custom_requirements:
        kw = covered_keyword(req)
        if kw is None:
            kept.append(req)
        else:
            removed.append(req)
            logger.warning("[INTENT] Removed custom requirement %r (covered by library: %r)", req, kw)
    if not removed:
        return intent, []
    return intent.model_copy(update={"custom_requirements": kept}), removed


@stage_boundary(STEP_NAME)
async def run_intent_stage(
    engine: ReasoningEngine,
    ctx: PipelineContext,
    settings: PipelineSettings,
    model: str | None = None,
) -> StepResult[IntentDescriptor]:
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
        payload = parse_json_object(response.content)
    except MalformedResponseError as exc:
        return StepResult.fail(ErrorKind.MALFORMED_RESPONSE, exc.message, usage)

    missing = [k for k in ("goal", "triggers", "actions") if k not in payload]
    if missing:
        return StepResult.fail(
            ErrorKind.STRUCTURAL_VIOLATION,
            f"Intent is missing required field(s): {', '.join(missing)}",
            usage,
            details=[f"missing field: {k}" for k in missing],
        )
    payload.pop("existingContext", None)
    try:
        intent = IntentDescriptor.model_validate(payload)
    except ValidationError as exc:
        return StepResult.fail(
            ErrorKind.STRUCTURAL_VIOLATION,
            f"Intent failed validation: {validation_summary(exc)}",
            usage,
        )

    intent, removed = filter_covered_requirements(intent)
    if intent.is_modification and ctx.existing_graph is not None:
        intent = intent.model_copy(update={"existing_context": ctx.existing_graph.to_wire()})

    logger.info(
        "[INTENT] goal=%r triggers=%d actions=%d transforms=%d custom=%d",
        intent.goal, len(intent.triggers), len(intent.actions),
        len(intent.transforms), len(intent.custom_requirements),
    )
    warnings = [f"removed custom requirement covered by library: {r}" for r in removed]
    return StepResult.ok(intent, usage, warnings)
