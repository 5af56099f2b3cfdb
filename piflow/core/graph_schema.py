"""Flow graph schema definitions using Pydantic models.

Flows are produced by the visual editor as an ordered node list plus an
ordered edge list. Each node carries a kind and a free-form parameter record;
the parameters are interpreted by the node action handlers at run time, so a
bad parameter fails only that node instead of rejecting the whole flow.

Both the engine's own field names and the editor's serialized names are
accepted:

    {"id": "n1", "kind": "run-command", "parameters": {"command": "ls"}}
    {"id": "n1", "type": "run-command", "data": {"command": "ls"}}

Structural validation (single start node, unique ids, no cycles) is done with
NetworkX before a flow is walked.
"""

from enum import Enum
from typing import Any

import networkx as nx
from pydantic import AliasChoices, BaseModel, Field, ValidationError

from piflow.core.errors import GraphError

# Edge labels understood by the engine
TRUE_LABEL = "true"
FALSE_LABEL = "false"
LOOP_BODY_LABEL = "body"


class NodeKind(str, Enum):
    """Supported node kinds (values are the editor's node type names)"""

    START = "start"
    END = "end"
    CONNECT_REMOTE_HOST = "connect-raspberry-pi"
    RUN_COMMAND = "run-command"
    SET_REMOTE_OUTPUT = "gpio"  # GPIO pin control
    LOOP = "loop"
    CONDITIONAL_BRANCH = "conditional-path"
    SEND_TEXT_MESSAGE = "text-message"


class NodeStatus(str, Enum):
    """Per-node status tag stored under '<node_id>_status'"""

    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


class FlowStatus(str, Enum):
    """Overall execution status of a flow"""

    IDLE = "idle"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


class Edge(BaseModel):
    """Directed edge between two nodes, optionally labelled with a branch"""

    id: str
    source_node_id: str = Field(
        validation_alias=AliasChoices("sourceNodeId", "source", "source_node_id"),
        serialization_alias="sourceNodeId",
    )
    target_node_id: str = Field(
        validation_alias=AliasChoices("targetNodeId", "target", "target_node_id"),
        serialization_alias="targetNodeId",
    )
    # "true"/"false" for conditional branches, "body" for a loop's body edge
    source_branch_label: str | None = Field(
        default=None,
        validation_alias=AliasChoices("sourceBranchLabel", "sourceHandle", "source_branch_label"),
        serialization_alias="sourceBranchLabel",
    )


class Node(BaseModel):
    """A single step of a flow"""

    id: str
    kind: NodeKind = Field(validation_alias=AliasChoices("kind", "type"))
    parameters: dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("parameters", "data")
    )

    @property
    def label(self) -> str:
        """Display label set in the editor, falling back to the node ID."""
        value = self.parameters.get("label")
        return value if isinstance(value, str) and value else self.id


class FlowGraph(BaseModel):
    """Complete node/edge graph of one flow"""

    nodes: list[Node] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)

    def validate_graph(self) -> list[str]:
        """
        Validate graph structure using NetworkX.
        Returns list of validation errors.
        """
        errors = []

        seen_node_ids = set()
        for node in self.nodes:
            if node.id in seen_node_ids:
                errors.append(f"Duplicate node ID: '{node.id}'")
            seen_node_ids.add(node.id)

        seen_edge_ids = set()
        for edge in self.edges:
            if edge.id in seen_edge_ids:
                errors.append(f"Duplicate edge ID: '{edge.id}'")
            seen_edge_ids.add(edge.id)

        start_ids = [n.id for n in self.nodes if n.kind == NodeKind.START]
        if not start_ids:
            errors.append("No start node found in the flow")
        elif len(start_ids) > 1:
            errors.append(f"Multiple start nodes found: {', '.join(start_ids)}")

        for edge in self.edges:
            if edge.source_node_id == edge.target_node_id:
                errors.append(f"Edge {edge.id}: node '{edge.source_node_id}' connects to itself")

        # A cycle would make the depth-first walk recurse forever.
        # Loops iterate by count through their body edge, never by a back edge.
        G = self._to_networkx()
        try:
            cycle = nx.find_cycle(G)
            if not any(u == v for u, v in cycle):
                path = " -> ".join([u for u, _ in cycle] + [cycle[0][0]])
                errors.append(f"Cycle detected: {path}")
        except nx.NetworkXNoCycle:
            pass

        return errors

    def dangling_edges(self) -> list[Edge]:
        """Edges whose target node does not exist (walked as dead ends)."""
        node_ids = {n.id for n in self.nodes}
        return [e for e in self.edges if e.target_node_id not in node_ids]

    def _to_networkx(self) -> nx.DiGraph:
        """Convert to NetworkX DiGraph for analysis (dangling edges are left out)"""
        G = nx.DiGraph()
        for node in self.nodes:
            G.add_node(node.id)
        for edge in self.edges:
            if edge.source_node_id in G and edge.target_node_id in G:
                G.add_edge(edge.source_node_id, edge.target_node_id)
        return G

    def to_wire(self) -> dict[str, Any]:
        """Serialize with the engine's wire field names."""
        return self.model_dump(mode="json", by_alias=True)


def parse_graph(data: Any) -> FlowGraph:
    """Parse a serialized graph, converting schema failures into GraphError."""
    if isinstance(data, FlowGraph):
        return data
    if not isinstance(data, dict):
        raise GraphError(f"Flow graph must be a mapping, got {type(data).__name__}")
    try:
        return FlowGraph.model_validate(data)
    except ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(x) for x in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise GraphError(f"Invalid flow graph: {details}") from e
