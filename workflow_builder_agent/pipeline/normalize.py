"""Deterministic graph normalisation.

Fills presentational defaults that carry no meaning of their own: edge
type/animation/style, node type and position, and a placeholder description.
Every function here is idempotent: normalize_graph(normalize_graph(g)) == normalize_graph(g).
Graphs are returned as new objects; inputs are never mutated.
"""

from __future__ import annotations

from workflow_builder_agent.pipeline.models import (
    EDGE_KIND,
    NODE_KIND,
    EdgeRecord,
    EdgeStyle,
    NodeRecord,
    Position,
    WorkflowGraph,
)


def _normalize_edge(edge: EdgeRecord) -> EdgeRecord:
    return edge.model_copy(update={
        "kind": EDGE_KIND,
        "animated": True,
        "style": edge.style or EdgeStyle(),
    })


def _normalize_node(node: NodeRecord, *, fill_description: bool) -> NodeRecord:
    update: dict = {}
    if not node.kind:
        update["kind"] = NODE_KIND
    if node.position is None:
        update["position"] = Position()
    if fill_description and not node.data.description.strip():
        placeholder = node.data.label.strip() or f"Node: {node.data.capability_id}"
        update["data"] = node.data.model_copy(update={"description": placeholder})
    return node.model_copy(update=update) if update else node


def normalize_layout(graph: WorkflowGraph) -> WorkflowGraph:
    """Edge type/animated/style and node type/position defaults."""
    return graph.model_copy(update={
        "nodes": [_normalize_node(n, fill_description=False) for n in graph.nodes],
        "edges": [_normalize_edge(e) for e in graph.edges],
    })


def normalize_graph(graph: WorkflowGraph) -> WorkflowGraph:
    """normalize_layout() plus placeholder descriptions from label or capability id."""
    return graph.model_copy(update={
        "nodes": [_normalize_node(n, fill_description=True) for n in graph.nodes],
        "edges": [_normalize_edge(e) for e in graph.edges],
    })
