"""Graph state for one pipeline run.

PipelineState is the accounting ledger that flows through the LangGraph
nodes. Stage products (intent, plan, workflow) live on the run's
PipelineContext instead; the state only carries what routing and the run
summary need.

Fields annotated with a reducer accumulate across nodes (steps, warnings,
token totals). All other fields use overwrite semantics.
"""

from __future__ import annotations

from typing import Annotated, TypedDict

from workflow_builder_agent.errors import PipelineError
from workflow_builder_agent.pipeline.results import StepMetadata


def _append(existing: list, incoming: list | None) -> list:
    return (existing or []) + (incoming or [])


def _sum_int(existing: int, incoming: int) -> int:
    """Accumulate an integer counter across node updates (used for token totals)."""
    return (existing or 0) + (incoming or 0)


class PipelineState(TypedDict):
    steps: Annotated[list[StepMetadata], _append]
    warnings: Annotated[list[str], _append]
    input_tokens: Annotated[int, _sum_int]
    output_tokens: Annotated[int, _sum_int]

    # Set by the first failing stage; routing sends the run to END.
    failure: PipelineError | None
    # Set by field configuration: True when some generated node still lacks code.
    needs_custom_code: bool


def initial_state() -> PipelineState:
    return PipelineState(
        steps=[],
        warnings=[],
        input_tokens=0,
        output_tokens=0,
        failure=None,
        needs_custom_code=False,
    )
