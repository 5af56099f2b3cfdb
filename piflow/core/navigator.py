"""Graph navigation helpers used by the flow walk.

All lookups preserve edge-list order so that a walk over a fixed graph is
deterministic.
"""

from collections.abc import Sequence

from piflow.core.errors import GraphError
from piflow.core.graph_schema import LOOP_BODY_LABEL, Edge, Node, NodeKind


def find_start(nodes: Sequence[Node]) -> Node:
    """Return the unique start node.

    Raises:
        GraphError: If the flow has no start node or more than one.
    """
    starts = [n for n in nodes if n.kind == NodeKind.START]
    if not starts:
        raise GraphError("No start node found in the flow")
    if len(starts) > 1:
        raise GraphError(f"Multiple start nodes found: {', '.join(n.id for n in starts)}")
    return starts[0]


def outgoing(edges: Sequence[Edge], node_id: str, branch_label: str | None = None) -> list[Edge]:
    """Edges leaving node_id, filtered by branch label when one is given."""
    return [
        e
        for e in edges
        if e.source_node_id == node_id
        and (branch_label is None or e.source_branch_label == branch_label)
    ]


def target_node(nodes: Sequence[Node], edge: Edge) -> Node:
    """Resolve the node an edge points to.

    Raises:
        GraphError: If the edge is dangling (target node does not exist).
    """
    for node in nodes:
        if node.id == edge.target_node_id:
            return node
    raise GraphError(f"Edge {edge.id}: target node '{edge.target_node_id}' not found")


def loop_body_edge(edges: Sequence[Edge], loop_id: str) -> Edge | None:
    """The edge a loop iterates over: the one labelled 'body', else the first outgoing edge."""
    candidates = outgoing(edges, loop_id)
    for edge in candidates:
        if edge.source_branch_label == LOOP_BODY_LABEL:
            return edge
    return candidates[0] if candidates else None

