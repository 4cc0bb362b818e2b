"""Collaborator call helpers shared by the stages.

complete_with_retry() — one completion with a bounded retry on transient
                        transport errors (CompletionServiceError).
parse_json_object()   — the parse boundary: fenced or bare JSON text → dict,
                        anything else → MalformedResponseError.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any

from workflow_builder_agent.errors import CollaboratorUnavailableError, CompletionServiceError, MalformedResponseError
from workflow_builder_agent.pipeline.results import TokenUsage
from workflow_builder_agent.pipeline.settings import PipelineSettings
from workflow_builder_agent.reasoning import EngineResponse, Message, ReasoningEngine

logger = logging.getLogger("workflow_builder_agent.pipeline.llm")

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)


def usage_of(response: EngineResponse) -> TokenUsage:
    return TokenUsage(response.input_tokens, response.output_tokens)


async def complete_with_retry(
    engine: ReasoningEngine,
    settings: PipelineSettings,
    *,
    prompt: str | list[Message],
    system: str | None,
    model: str | None,
    temperature: float,
    json_mode: bool = True,
    stage: str,
) -> EngineResponse:
    """Call engine.complete(), retrying transient failures with exponential backoff.

    Raises CollaboratorUnavailableError once retries are exhausted.
    """
    messages = [Message(role="user", content=prompt)] if isinstance(prompt, str) else prompt
    attempts = settings.completion_retries + 1
    for attempt in range(1, attempts + 1):
        try:
            return await engine.complete(
                messages,
                system=system,
                temperature=temperature,
                json_mode=json_mode,
                model=model,
            )
        except CompletionServiceError as exc:
            if attempt >= attempts:
                raise CollaboratorUnavailableError(
                    f"Completion service unavailable after {attempts} attempt(s): {exc.message}",
                    stage=stage,
                ) from exc
            delay = settings.retry_backoff_s * (2 ** (attempt - 1))
            logger.warning(
                "[%s] Completion attempt %d/%d failed (%s); retrying in %.1fs",
                stage, attempt, attempts, exc.message, delay,
            )
            await asyncio.sleep(delay)
    raise AssertionError("unreachable")


def strip_fences(text: str) -> str:
    m = _FENCE_RE.search(text)
    return m.group(1).strip() if m else text.strip()


def parse_json_object(text: str | None) -> dict[str, Any]:
    """Parse collaborator output into a JSON object.

    Accepts bare JSON, JSON inside a markdown fence, or JSON surrounded by
    prose (outermost braces). Raises MalformedResponseError otherwise.
    """
    if not text or not text.strip():
        raise MalformedResponseError("Collaborator returned an empty response")
    candidate = strip_fences(text)
    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError:
        start, end = candidate.find("{"), candidate.rfind("}")
        if start == -1 or end <= start:
            raise MalformedResponseError("Collaborator response is not valid JSON")
        try:
            parsed = json.loads(candidate[start:end + 1])
        except json.JSONDecodeError as exc:
            raise MalformedResponseError(f"Collaborator response is not valid JSON: {exc.msg}") from exc
    if not isinstance(parsed, dict):
        raise MalformedResponseError(
            f"Collaborator response must be a JSON object, got {type(parsed).__name__}"
        )
    return parsed


def validation_summary(exc: Any) -> str:
    """One-line summary of a pydantic ValidationError."""
    parts = []
    for err in exc.errors()[:4]:
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts)
