"""Per-run pipeline context.

A PipelineContext is created by the coordinator for exactly one run and
discarded when the run ends. Inputs are set at construction; each stage
attaches its product (intent, plan, workflow) as the run advances. Nothing
here is shared between runs.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from workflow_builder_agent.catalogue.library import CapabilityLibrary
from workflow_builder_agent.pipeline.models import CapabilityPlan, IntentDescriptor, WorkflowGraph

# Receives each text delta of the structure synthesis stream, then one final
# call with the full text and complete=True.
ChunkSink = Callable[[str, bool], Awaitable[None]]


@dataclass
class PipelineContext:
    request: str
    library: CapabilityLibrary
    existing_graph: WorkflowGraph | None = None
    # Connected integrations and their resources, e.g.
    # {"google-sheets": {"spreadsheets": [{"id": "...", "name": "Leads"}]},
    #  "slack": {"channels": [{"id": "C123", "name": "#sales"}]}}
    integration_context: dict[str, Any] = field(default_factory=dict)

    intent: IntentDescriptor | None = None
    plan: CapabilityPlan | None = None
    workflow: WorkflowGraph | None = None

    def existing_node_ids(self) -> list[str]:
        if self.existing_graph is None:
            return []
        return [n.data.capability_id or n.id for n in self.existing_graph.nodes]
