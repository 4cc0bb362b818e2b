"""Workflow Builder Agent: turns a free-text automation request into a
validated workflow graph through a six-stage LLM pipeline."""

from workflow_builder_agent.catalogue.library import CapabilityLibrary
from workflow_builder_agent.errors import ErrorKind, PipelineError
from workflow_builder_agent.pipeline.coordinator import PipelineCoordinator, PipelineOutcome
from workflow_builder_agent.pipeline.models import WorkflowGraph
from workflow_builder_agent.pipeline.results import TokenUsage
from workflow_builder_agent.pipeline.settings import PipelineSettings
from workflow_builder_agent.reasoning import ReasoningSettings, create_engine

__all__ = [
    "CapabilityLibrary",
    "ErrorKind",
    "PipelineCoordinator",
    "PipelineError",
    "PipelineOutcome",
    "PipelineSettings",
    "ReasoningSettings",
    "TokenUsage",
    "WorkflowGraph",
    "create_engine",
]
