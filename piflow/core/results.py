"""Run results: outcome records and the per-run result store.

The ResultStore is an explicit accumulator passed by reference through the
walk. Every write is followed by exactly one persist call, so a status tag
is always persisted before the node's outcome, and the outcome before any
successor's status.

Result keys:
    <node_id>                  outcome record of the node
    <node_id>_status           "running" | "success" | "error"
    <loop_id>_iteration_<i>    loop iteration record (i is zero-based)
"""

from __future__ import annotations

import copy
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from piflow.core.graph_schema import FlowStatus, NodeStatus


def _utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


def status_key(node_id: str) -> str:
    return f"{node_id}_status"


def iteration_key(loop_id: str, index: int) -> str:
    return f"{loop_id}_iteration_{index}"


class OutcomeRecord(BaseModel):
    """Structured result of executing one node.

    Kind-specific fields (command, pin, state, host, recipient, iterations...)
    are kept as extra fields.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    success: bool
    message: str | None = None
    stdout: str | None = None
    stderr: str | None = None
    exit_code: int | None = Field(default=None, alias="exitCode")
    error: str | None = None
    condition_met: bool | None = Field(default=None, alias="conditionMet")
    timed_out: bool | None = Field(default=None, alias="timedOut")

    @classmethod
    def failure(cls, error: str, **extra: Any) -> OutcomeRecord:
        return cls(success=False, error=error, **extra)

    def as_record(self) -> dict[str, Any]:
        """Serialize with wire field names, dropping unset fields."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class RunStatus(BaseModel):
    """Persisted execution state of one flow."""

    flow_id: str | None = None
    status: FlowStatus = FlowStatus.IDLE
    last_run_at: datetime | None = None
    results: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None


class RunTicket(BaseModel):
    """Answer to a request to start a flow run."""

    accepted: bool
    flow_id: str
    status: FlowStatus
    message: str


class ExecutionSummary(BaseModel):
    """Full result of a direct (unsaved) run."""

    status: FlowStatus
    results: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    started_at: datetime
    finished_at: datetime | None = None


PersistCallback = Callable[[RunStatus], Awaitable[None]]


class ResultStore:
    """
    Append/update-only result map for one run.

    Mutations are only allowed while the run is active (between begin() and
    finish()); the map is left intact afterwards for inspection.
    """

    def __init__(self, flow_id: str | None = None, persist: PersistCallback | None = None):
        self.flow_id = flow_id
        self._persist = persist
        self.status = FlowStatus.IDLE
        self.last_run_at: datetime | None = None
        self.error: str | None = None
        self.results: dict[str, Any] = {}

    def _require_running(self) -> None:
        if self.status != FlowStatus.RUNNING:
            raise RuntimeError(f"Result store is not active (status: {self.status.value})")

    async def begin(self, started_at: datetime | None = None) -> None:
        """Reset the map and mark the run as running."""
        self.results = {}
        self.error = None
        self.status = FlowStatus.RUNNING
        self.last_run_at = started_at or _utc_now()
        await self.flush()

    async def mark_node(self, node_id: str, status: NodeStatus) -> None:
        self._require_running()
        self.results[status_key(node_id)] = status.value
        await self.flush()

    async def record_outcome(self, node_id: str, outcome: OutcomeRecord) -> None:
        """Store a node's outcome and its derived status tag."""
        self._require_running()
        self.results[node_id] = outcome.as_record()
        self.results[status_key(node_id)] = (
            NodeStatus.SUCCESS.value if outcome.success else NodeStatus.ERROR.value
        )
        await self.flush()

    async def record_iteration(self, loop_id: str, index: int, entry: dict[str, Any]) -> None:
        self._require_running()
        self.results[iteration_key(loop_id, index)] = entry
        await self.flush()

    async def finish(self, status: FlowStatus, error: str | None = None) -> None:
        self._require_running()
        self.status = status
        self.error = error
        await self.flush()

    def snapshot(self) -> RunStatus:
        """Detached copy of the current state."""
        return RunStatus(
            flow_id=self.flow_id,
            status=self.status,
            last_run_at=self.last_run_at,
            results=copy.deepcopy(self.results),
            error=self.error,
        )

    async def flush(self) -> None:
        if self._persist is not None:
            await self._persist(self.snapshot())
