"""Shared fixtures: a scripted reasoning engine and small graph builders.

ScriptedEngine answers complete() calls from a queue of canned replies
(str / dict / EngineResponse / exception) and stream() calls from a queue of
chunk lists, recording every call so tests can assert on prompts and ordering.
"""

from __future__ import annotations

import json
from types import SimpleNamespace
from typing import Any

import pytest

from workflow_builder_agent.catalogue.library import CapabilityLibrary
from workflow_builder_agent.pipeline.context import PipelineContext
from workflow_builder_agent.pipeline.models import (
    EdgeRecord,
    NodeData,
    NodeRecord,
    Position,
    WorkflowGraph,
)
from workflow_builder_agent.pipeline.settings import PipelineSettings
from workflow_builder_agent.reasoning import EngineResponse, ReasoningEngine, StreamEvent

COMPLETE_IN, COMPLETE_OUT = 10, 5
STREAM_IN, STREAM_OUT = 20, 8


class ScriptedEngine(ReasoningEngine):
    def __init__(self, replies: list[Any] = (), streams: list[list[Any]] = (), model: str = "fake-model") -> None:
        self.replies = list(replies)
        self.streams = list(streams)
        self.calls: list[SimpleNamespace] = []
        self.stream_calls: list[SimpleNamespace] = []
        self._model = model

    async def complete(self, messages, system=None, temperature=0.2, json_mode=False, model=None, max_tokens=None):
        self.calls.append(SimpleNamespace(
            messages=list(messages), system=system, temperature=temperature, json_mode=json_mode, model=model,
        ))
        if not self.replies:
            raise AssertionError("unexpected completion call")
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        if isinstance(reply, EngineResponse):
            return reply
        if not isinstance(reply, str):
            reply = json.dumps(reply)
        return EngineResponse(
            content=reply, input_tokens=COMPLETE_IN, output_tokens=COMPLETE_OUT, model=model or self._model,
        )

    async def stream(self, messages, system=None, temperature=0.2, model=None, max_tokens=None):
        self.stream_calls.append(SimpleNamespace(messages=list(messages), system=system, model=model))
        if not self.streams:
            raise AssertionError("unexpected stream call")
        for piece in self.streams.pop(0):
            if isinstance(piece, BaseException):
                raise piece
            yield StreamEvent(text=piece)
        yield StreamEvent(done=True, input_tokens=STREAM_IN, output_tokens=STREAM_OUT)

    @property
    def model_id(self) -> str:
        return f"fake/{self._model}"


# ---------------------------------------------------------------------------
# Graph builders
# ---------------------------------------------------------------------------


def node(node_id: str, capability_id: str, label: str = "", description: str = "", **data: Any) -> NodeRecord:
    return NodeRecord(
        id=node_id,
        kind="workflow-node",
        position=Position(),
        data=NodeData(
            capability_id=capability_id,
            label=label or capability_id,
            description=description or f"{label or capability_id} step",
            **data,
        ),
    )


def edge(edge_id: str, source: str, target: str) -> EdgeRecord:
    return EdgeRecord(id=edge_id, source=source, target=target, kind="buttonedge", animated=True)


def graph(nodes: list[NodeRecord], edges: list[EdgeRecord] = (), **kwargs: Any) -> WorkflowGraph:
    return WorkflowGraph(nodes=list(nodes), edges=list(edges), reasoning=kwargs.pop("reasoning", "test"), **kwargs)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> PipelineSettings:
    return PipelineSettings(
        stage_timeout_s=5.0,
        completion_retries=1,
        retry_backoff_s=0.0,
        advisory_validation=False,
        stream_structure=True,
    )


@pytest.fixture
def library() -> CapabilityLibrary:
    return CapabilityLibrary()


@pytest.fixture
def make_ctx(library):
    def _make(request: str = "Email me when a new row is added to my Leads sheet", **kwargs: Any) -> PipelineContext:
        return PipelineContext(request=request, library=kwargs.pop("library", library), **kwargs)
    return _make
