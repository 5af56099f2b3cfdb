"""Core modules for the piflow engine."""

from piflow.core.engine import ExecutionContext, FlowOrchestrator
from piflow.core.errors import (
    AuthorizationError,
    DeviceNotFoundError,
    FlowError,
    FlowNotFoundError,
    GraphError,
    RunConflictError,
)
from piflow.core.graph_schema import Edge, FlowGraph, FlowStatus, Node, NodeKind, NodeStatus
from piflow.core.results import ExecutionSummary, OutcomeRecord, RunStatus, RunTicket
from piflow.core.state import Database

__all__ = [
    "AuthorizationError",
    "Database",
    "DeviceNotFoundError",
    "Edge",
    "ExecutionContext",
    "ExecutionSummary",
    "FlowError",
    "FlowGraph",
    "FlowNotFoundError",
    "FlowOrchestrator",
    "FlowStatus",
    "GraphError",
    "Node",
    "NodeKind",
    "NodeStatus",
    "OutcomeRecord",
    "RunConflictError",
    "RunStatus",
    "RunTicket",
]
