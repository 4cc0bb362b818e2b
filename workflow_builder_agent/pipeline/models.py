"""Typed records exchanged between pipeline stages.

Every collaborator reply is parsed into one of these models before a stage
does anything with it; a parse failure is a malformed-response error. Field
names are snake_case in Python and camelCase on the wire (the JSON the
collaborator writes and the JSON the caller receives).
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

NODE_KIND = "workflow-node"
EDGE_KIND = "buttonedge"
GENERATED_CAPABILITY_ID = "CUSTOM_GENERATED"
DEFAULT_EDGE_STROKE = "hsl(var(--primary))"
DEFAULT_EDGE_STROKE_WIDTH = 2

Role = Literal["trigger", "action", "transform"]


class WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_wire(self) -> dict[str, Any]:
        """JSON-serialisable dict with camelCase keys and unset optionals omitted."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def _as_list(v: object) -> object:
    """Coerce None to [] and a bare string to a one-element list."""
    if v is None:
        return []
    if isinstance(v, str):
        return [v] if v.strip() else []
    return v


# ---------------------------------------------------------------------------
# Intent
# ---------------------------------------------------------------------------


class IntentDescriptor(WireModel):
    """Structured reading of the user's request. Frozen once extracted."""

    model_config = ConfigDict(frozen=True)

    goal: str
    triggers: list[str]
    actions: list[str]
    transforms: list[str] = Field(default_factory=list)
    custom_requirements: list[str] = Field(default_factory=list)
    is_modification: bool = False
    existing_context: dict[str, Any] | None = None

    @field_validator("transforms", "custom_requirements", mode="before")
    @classmethod
    def _optional_lists(cls, v: object) -> object:
        return _as_list(v)


# ---------------------------------------------------------------------------
# Capability plan
# ---------------------------------------------------------------------------


def _lower_role(v: object) -> object:
    return v.strip().lower() if isinstance(v, str) else v


class LibraryNodeEntry(WireModel):
    id: str
    role: Role
    reason: str = ""

    @field_validator("role", mode="before")
    @classmethod
    def _normalize_role(cls, v: object) -> object:
        return _lower_role(v)


class CustomNodeEntry(WireModel):
    name: str
    type: Role = "action"
    requirements: str = ""
    reason: str = ""

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, v: object) -> object:
        return _lower_role(v)


class Connection(WireModel):
    from_: str = Field(alias="from")
    to: str
    reason: str = ""


class DataFlowEntry(WireModel):
    source: str
    target: str
    field: str


class CapabilityPlan(WireModel):
    """Library and generated capabilities chosen for the request, plus wiring."""

    library_nodes: list[LibraryNodeEntry] = Field(default_factory=list)
    custom_nodes: list[CustomNodeEntry] = Field(default_factory=list)
    connections: list[Connection] = Field(default_factory=list)
    data_flow: list[DataFlowEntry] = Field(default_factory=list)

    def trigger_count(self) -> int:
        return sum(1 for n in self.library_nodes if n.role == "trigger") + sum(
            1 for n in self.custom_nodes if n.type == "trigger"
        )


# ---------------------------------------------------------------------------
# Workflow graph
# ---------------------------------------------------------------------------


class ConfigField(WireModel):
    """One entry of a node's configuration schema."""

    model_config = ConfigDict(extra="allow")

    type: str = "string"  # string | number | boolean | select | textarea | integration
    label: str = ""
    description: str = ""
    required: bool = False
    default: Any = None
    options: list[dict[str, Any]] | None = None
    service_name: str | None = None
    integration_type: str | None = None
    resource_type: str | None = None
    credential_type: str | None = None  # oauth | api_token | api_key_and_token

    @property
    def is_credential_bound(self) -> bool:
        return self.type == "integration" or bool(self.credential_type)


class Position(WireModel):
    x: float = 0
    y: float = 0


class NodeData(WireModel):
    capability_id: str = Field(default="", alias="nodeId")
    label: str = ""
    description: str = ""
    config: dict[str, Any] = Field(default_factory=dict)
    custom_code: str | None = None
    config_schema: dict[str, ConfigField] | None = None
    metadata: dict[str, Any] | None = None

    @field_validator("config", mode="before")
    @classmethod
    def _none_config(cls, v: object) -> object:
        return {} if v is None else v

    @property
    def is_generated(self) -> bool:
        return self.capability_id == GENERATED_CAPABILITY_ID


class NodeRecord(WireModel):
    id: str = ""
    kind: str = Field(default="", alias="type")
    position: Position | None = None
    data: NodeData = Field(default_factory=NodeData)


class EdgeStyle(WireModel):
    model_config = ConfigDict(extra="allow")

    stroke: str = DEFAULT_EDGE_STROKE
    stroke_width: int | float = DEFAULT_EDGE_STROKE_WIDTH


class EdgeRecord(WireModel):
    id: str = ""
    source: str = ""
    target: str = ""
    kind: str = Field(default="", alias="type")
    animated: bool | None = None
    style: EdgeStyle | None = None


class WorkflowGraph(WireModel):
    """The pipeline's product: typed nodes joined by data-flow edges."""

    nodes: list[NodeRecord] = Field(default_factory=list)
    edges: list[EdgeRecord] = Field(default_factory=list)
    reasoning: str = ""
    workflow_name: str | None = None

    @field_validator("reasoning", mode="before")
    @classmethod
    def _none_reasoning(cls, v: object) -> object:
        return "" if v is None else v

    def node_ids(self) -> list[str]:
        return [n.id for n in self.nodes]

    def get_node(self, node_id: str) -> NodeRecord | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None
