"""Flow execution engine.

Walks a flow graph depth-first from its start node, dispatching each node to
its action handler and recording every outcome in a ResultStore:

1. mark the node "running" and persist
2. dispatch by node kind
3. persist the outcome and its "success"/"error" status
4. stop on an end node or a failed outcome
5. pick successors: edges matching a branch label, otherwise every outgoing
   edge (a loop's body edge included, so the body runs once more after the
   loop has finished iterating)
6. walk each successor in edge order, sequentially

A single remote session is threaded through the walk in an
ExecutionContext owned by the run. Node failures stop only their own path;
an exception escaping a handler aborts the run with status "error". Every
session opened during a run is closed before the run's final status is
written.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel

from piflow.core.config import EngineConfig
from piflow.core.errors import FlowError, GraphError, RunConflictError
from piflow.core.graph_schema import (
    Edge,
    FlowGraph,
    FlowStatus,
    Node,
    NodeKind,
    NodeStatus,
    parse_graph,
)
from piflow.core.handlers import (
    LoopBody,
    handle_conditional_branch,
    handle_connect_remote_host,
    handle_end,
    handle_loop,
    handle_run_command,
    handle_send_text_message,
    handle_set_remote_output,
    handle_start,
)
from piflow.core.navigator import (
    find_start,
    loop_body_edge,
    outgoing,
    target_node,
)
from piflow.core.results import (
    ExecutionSummary,
    OutcomeRecord,
    ResultStore,
    RunStatus,
    RunTicket,
)
from piflow.core.state import DeviceRegistry, FlowRepository
from piflow.remote.session import (
    CommandResult,
    RemoteConnectionError,
    RemoteExecutionError,
    RemoteSession,
    SessionFactory,
)

logger = logging.getLogger(__name__)

DEVICE_TEST_COMMAND = "uname -a"


def _utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


@dataclass
class ExecutionContext:
    """Per-run state threaded through the walk. Never shared between runs."""

    flow_id: str | None
    owner_id: str
    session: RemoteSession | None = None
    sessions_opened: int = 0
    sessions_closed: int = 0
    depth: int = 0

    def adopt_session(self, session: RemoteSession) -> None:
        """Make an opened session the run's current session."""
        self.session = session
        self.sessions_opened += 1

    async def release_session(self) -> None:
        """Close the current session, if any."""
        session, self.session = self.session, None
        if session is None:
            return
        await session.close()
        self.sessions_closed += 1


class DeviceTestResult(BaseModel):
    """Result of a device connectivity check."""

    success: bool
    status: str
    message: str
    system: str | None = None


class FlowOrchestrator:
    """Runs flows and keeps track of the runs in progress.

    Each run is one asyncio task; different flows run concurrently, a flow
    that is already running cannot be started again.
    """

    def __init__(
        self,
        flows: FlowRepository | None = None,
        devices: DeviceRegistry | None = None,
        config: EngineConfig | None = None,
        session_factory: SessionFactory = RemoteSession,
    ):
        self.flows = flows
        self.devices = devices
        self.config = config or EngineConfig()
        self.session_factory = session_factory
        self._active: dict[str, asyncio.Task] = {}

    def _require_flows(self) -> FlowRepository:
        if self.flows is None:
            raise FlowError("No flow repository configured")
        return self.flows

    def _require_devices(self) -> DeviceRegistry:
        if self.devices is None:
            raise FlowError("No device registry configured")
        return self.devices

    # --- Public operations ---

    async def start_run(self, flow_id: str, owner_id: str) -> RunTicket:
        """Claim a flow and run it in the background.

        Raises:
            FlowNotFoundError: Unknown flow.
            AuthorizationError: Flow belongs to another owner.
        """
        flows = self._require_flows()
        try:
            await asyncio.to_thread(flows.claim_run, flow_id, owner_id)
        except RunConflictError as e:
            logger.info(f"Run request for flow {flow_id} rejected: {e}")
            return RunTicket(
                accepted=False, flow_id=flow_id, status=FlowStatus.RUNNING, message=str(e)
            )

        task = asyncio.create_task(self._run_saved(flow_id, owner_id), name=f"flow-{flow_id}")
        self._active[flow_id] = task
        task.add_done_callback(functools.partial(self._forget, flow_id))
        return RunTicket(
            accepted=True,
            flow_id=flow_id,
            status=FlowStatus.RUNNING,
            message="Flow execution started",
        )

    async def run_flow(self, flow_id: str, owner_id: str) -> RunStatus:
        """Claim a flow and run it to completion.

        Raises:
            FlowNotFoundError / AuthorizationError: Lookup failures.
            RunConflictError: The flow is already running.
        """
        flows = self._require_flows()
        await asyncio.to_thread(flows.claim_run, flow_id, owner_id)
        await self._run_saved(flow_id, owner_id)
        return await self.get_run_status(flow_id, owner_id)

    async def wait_for(self, flow_id: str) -> None:
        """Wait until the background run of flow_id (if any) has finished."""
        task = self._active.get(flow_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    def is_running(self, flow_id: str) -> bool:
        return flow_id in self._active

    async def shutdown(self) -> None:
        """Cancel all background runs and wait for them to clean up."""
        tasks = list(self._active.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def run_direct(self, graph: FlowGraph | dict[str, Any], owner_id: str) -> ExecutionSummary:
        """Run an unsaved graph in memory; only device status is persisted."""
        store = ResultStore()

        async def load() -> FlowGraph:
            return parse_graph(graph)

        await self._execute(store, owner_id, load)
        run = store.snapshot()
        return ExecutionSummary(
            status=run.status,
            results=run.results,
            error=run.error,
            started_at=run.last_run_at,
            finished_at=_utc_now(),
        )

    async def get_run_status(self, flow_id: str, owner_id: str) -> RunStatus:
        flows = self._require_flows()
        return await asyncio.to_thread(flows.get_run_status, flow_id, owner_id)

    async def test_device(self, device_id: str, owner_id: str) -> DeviceTestResult:
        """Check that a stored device accepts connections and report its system info."""
        devices = self._require_devices()
        descriptor = await asyncio.to_thread(devices.resolve_device, device_id, owner_id)
        session = self.session_factory(descriptor, self.config.session_config())
        try:
            await session.open()
        except RemoteConnectionError as e:
            await asyncio.to_thread(devices.mark_device_status, device_id, "offline", _utc_now())
            return DeviceTestResult(
                success=False, status="offline", message=f"Connection failed: {e}"
            )

        try:
            result = await session.run(DEVICE_TEST_COMMAND)
        except RemoteExecutionError as e:
            result = CommandResult(exit_code=-1, stderr=str(e))
        finally:
            await session.close()

        await asyncio.to_thread(devices.mark_device_status, device_id, "online", _utc_now())
        if result.exit_code != 0:
            return DeviceTestResult(
                success=False,
                status="online",
                message=f"Connected, but '{DEVICE_TEST_COMMAND}' failed: {result.stderr.strip()}",
            )
        return DeviceTestResult(
            success=True,
            status="online",
            message="Connection successful",
            system=result.stdout.strip(),
        )

    async def run_device_command(self, device_id: str, owner_id: str, command: str) -> CommandResult:
        """Run one command on a stored device in its own short-lived session.

        Raises:
            ValueError: Blank command.
            FlowError: No device registry configured.
            RemoteConnectionError / RemoteExecutionError: Transport failures.
        """
        if not command or not command.strip():
            raise ValueError("Command cannot be empty")
        devices = self._require_devices()
        descriptor = await asyncio.to_thread(devices.resolve_device, device_id, owner_id)
        async with self.session_factory(descriptor, self.config.session_config()) as session:
            return await session.run(command)

    # --- Run lifecycle ---

    def _forget(self, flow_id: str, task: asyncio.Task) -> None:
        if self._active.get(flow_id) is task:
            del self._active[flow_id]

    async def _run_saved(self, flow_id: str, owner_id: str) -> None:
        flows = self._require_flows()

        async def persist(run: RunStatus) -> None:
            await asyncio.to_thread(flows.persist_results, flow_id, run)

        async def load() -> FlowGraph:
            return await asyncio.to_thread(flows.load_graph, flow_id, owner_id)

        await self._execute(ResultStore(flow_id, persist), owner_id, load)

    async def _execute(
        self,
        store: ResultStore,
        owner_id: str,
        load_graph: Callable[[], Awaitable[FlowGraph]],
    ) -> ExecutionContext:
        """Run one flow from its start node and write the final status.

        Errors abort the run and are recorded, not raised (cancellation is
        recorded and re-raised).
        """
        ctx = ExecutionContext(flow_id=store.flow_id, owner_id=owner_id)
        name = store.flow_id or "direct run"
        await store.begin()
        logger.info(f"Starting flow execution: {name}")

        status, error = FlowStatus.SUCCESS, None
        try:
            graph = await load_graph()
            problems = graph.validate_graph()
            if problems:
                raise GraphError("; ".join(problems))
            await self._walk(ctx, graph, store, find_start(graph.nodes))
        except asyncio.CancelledError:
            status, error = FlowStatus.ERROR, "Run cancelled"
            logger.warning(f"Flow execution cancelled: {name}")
            raise
        except Exception as e:
            status, error = FlowStatus.ERROR, str(e)
            logger.error(f"Flow execution failed: {name}: {e}")
        finally:
            await ctx.release_session()
            await store.finish(status, error)
            logger.info(
                f"Flow execution finished: {name} ({status.value}, "
                f"{ctx.sessions_opened} session(s) opened, {ctx.sessions_closed} closed)"
            )
        return ctx

    # --- Walk ---

    async def _walk(
        self, ctx: ExecutionContext, graph: FlowGraph, store: ResultStore, node: Node
    ) -> OutcomeRecord:
        """Execute node and everything reachable from it; returns node's own outcome."""
        if ctx.depth >= self.config.max_walk_depth:
            raise GraphError(
                f"Maximum walk depth ({self.config.max_walk_depth}) exceeded at node '{node.id}'"
            )
        ctx.depth += 1
        try:
            await store.mark_node(node.id, NodeStatus.RUNNING)
            logger.debug(f"Executing node {node.id} ({node.kind.value})")

            try:
                outcome = await self._dispatch(ctx, graph, store, node)
            except Exception as e:
                logger.error(f"Error executing node {node.id}: {e}")
                await store.record_outcome(node.id, OutcomeRecord.failure(str(e)))
                await ctx.release_session()
                raise

            await store.record_outcome(node.id, outcome)
            if not outcome.success:
                logger.warning(f"Node {node.id} failed: {outcome.error}")
            if node.kind == NodeKind.END or not outcome.success:
                return outcome

            for edge in self._successors(graph, node, outcome):
                try:
                    successor = target_node(graph.nodes, edge)
                except GraphError as e:
                    logger.warning(f"{e}; path ends here")
                    continue
                await self._walk(ctx, graph, store, successor)
            return outcome
        finally:
            ctx.depth -= 1

    async def _dispatch(
        self, ctx: ExecutionContext, graph: FlowGraph, store: ResultStore, node: Node
    ) -> OutcomeRecord:
        kind = node.kind
        params = node.parameters
        if kind == NodeKind.START:
            return await handle_start(ctx.session, params)
        elif kind == NodeKind.END:
            return await handle_end(ctx.session, params)
        elif kind == NodeKind.CONNECT_REMOTE_HOST:
            return await handle_connect_remote_host(
                ctx,
                params,
                devices=self.devices,
                session_factory=self.session_factory,
                session_config=self.config.session_config(),
            )
        elif kind == NodeKind.RUN_COMMAND:
            return await handle_run_command(ctx.session, params)
        elif kind == NodeKind.SET_REMOTE_OUTPUT:
            return await handle_set_remote_output(ctx.session, params)
        elif kind == NodeKind.LOOP:
            return await self._execute_loop(ctx, graph, store, node)
        elif kind == NodeKind.CONDITIONAL_BRANCH:
            return await handle_conditional_branch(ctx.session, params)
        elif kind == NodeKind.SEND_TEXT_MESSAGE:
            return await handle_send_text_message(ctx.session, params)
        raise GraphError(f"Unsupported node kind: {kind}")

    async def _execute_loop(
        self, ctx: ExecutionContext, graph: FlowGraph, store: ResultStore, node: Node
    ) -> OutcomeRecord:
        body = None
        reason = "no outgoing connections"
        body_edge = loop_body_edge(graph.edges, node.id)
        if body_edge is not None:
            try:
                body_node = target_node(graph.nodes, body_edge)
            except GraphError:
                reason = "no target node"
            else:
                body = LoopBody(
                    node_id=body_node.id,
                    run=functools.partial(self._walk, ctx, graph, store, body_node),
                )

        async def record_iteration(index: int, entry: dict[str, Any]) -> None:
            await store.record_iteration(node.id, index, entry)

        return await handle_loop(
            ctx.session,
            node.parameters,
            body=body,
            no_body_reason=reason,
            record_iteration=record_iteration,
            max_iterations=self.config.max_loop_iterations,
        )

    def _successors(self, graph: FlowGraph, node: Node, outcome: OutcomeRecord) -> list[Edge]:
        if node.kind == NodeKind.CONDITIONAL_BRANCH:
            label = str(bool(outcome.condition_met)).lower()
            return outgoing(graph.edges, node.id, label)
        return outgoing(graph.edges, node.id)
