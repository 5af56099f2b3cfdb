"""Tests for the flow execution engine.

Tests cover:
- The depth-first walk: dispatch, stop conditions, successor selection
- Session lifecycle: every opened session is closed, supersession
- Run lifecycle: claiming, conflicts, background runs, cancellation
- Failure handling: node failures vs. run-aborting errors
- Device operations: connectivity test and one-off commands
"""

import asyncio

import pytest
from flow_helpers import INLINE_HOST, OTHER_OWNER, OWNER, chain, connected, edge, graph, node

from piflow.core.config import EngineConfig
from piflow.core.engine import FlowOrchestrator
from piflow.core.errors import FlowError, FlowNotFoundError, RunConflictError
from piflow.core.graph_schema import FlowStatus, parse_graph
from piflow.remote.session import CommandResult, RemoteExecutionError


def _save(test_db, data, flow_id="flow-1", owner=OWNER):
    return test_db.create_flow(owner, "Test flow", parse_graph(data), flow_id=flow_id)


# =============================================================================
# Reference scenarios
# =============================================================================


class TestScenarios:
    """End-to-end walks over representative flows."""

    @pytest.mark.asyncio
    async def test_run_command_without_connection(self, orchestrator, fake_sessions):
        """Start -> RunCommand -> End with no connect node."""
        data = graph(
            [node("start", "start"), node("cmd", "run-command", command="echo hi"), node("end", "end")],
            chain("start", "cmd", "end"),
        )
        summary = await orchestrator.run_direct(data, OWNER)

        assert summary.status == FlowStatus.SUCCESS
        assert summary.results["cmd"] == {
            "success": False,
            "error": "No active session. Add a Connect Raspberry Pi node before Run Command.",
            "command": "echo hi",
        }
        assert summary.results["cmd_status"] == "error"
        assert "end" not in summary.results
        assert "end_status" not in summary.results
        assert fake_sessions.sessions == []

    @pytest.mark.asyncio
    async def test_connect_run_end(self, orchestrator, fake_sessions, test_db, device):
        """Start -> Connect(stored device) -> RunCommand -> End, remote reachable."""
        fake_sessions.script("uname", CommandResult(exit_code=0, stdout="Linux pi 6.1\n"))
        _save(
            test_db,
            graph(
                [
                    node("start", "start"),
                    node("connect", "connect-raspberry-pi", piId=device.id),
                    node("cmd", "run-command", command="uname -a"),
                    node("end", "end"),
                ],
                chain("start", "connect", "cmd", "end"),
            ),
        )

        run = await orchestrator.run_flow("flow-1", OWNER)

        assert run.status == FlowStatus.SUCCESS
        assert run.error is None
        assert run.results["connect"]["success"] is True
        assert run.results["cmd"]["stdout"] == "Linux pi 6.1\n"
        assert run.results["cmd"]["exitCode"] == 0
        assert run.results["end"] == {"success": True, "message": "Flow ended"}
        assert all(run.results[f"{n}_status"] == "success" for n in ("start", "connect", "cmd", "end"))
        assert test_db.get_device(device.id, OWNER).status == "online"
        assert fake_sessions.sessions[0].closed
        assert fake_sessions.opened == fake_sessions.closed == 1

    @pytest.mark.asyncio
    async def test_loop_stops_on_error(self, orchestrator, fake_sessions):
        """Loop(3, stopOnError) whose body fails on iteration 2."""
        fake_sessions.script(
            "check",
            CommandResult(exit_code=0, stdout="ok"),
            CommandResult(exit_code=1, stderr="bad"),
            CommandResult(exit_code=0, stdout="ok"),
        )
        data = connected(
            node("loop", "loop", iterations=3, stopOnError=True),
            node("body", "run-command", command="check"),
            end=False,
        )
        summary = await orchestrator.run_direct(data, OWNER)

        results = summary.results
        assert results["loop_iteration_0"]["iteration"] == 1
        assert results["loop_iteration_0"]["nodeId"] == "body"
        assert results["loop_iteration_0"]["result"]["success"] is True
        assert results["loop_iteration_1"]["result"]["success"] is False
        assert "loop_iteration_2" not in results
        assert results["loop"]["success"] is True
        assert results["loop"]["message"] == "Loop completed 2 iterations"
        # two iterations, then the body edge is followed once more after the loop
        assert fake_sessions.command_strings.count("check") == 3
        assert summary.status == FlowStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_failed_condition_command_stops_path(self, orchestrator, fake_sessions):
        """A conditional whose command fails records an error and walks nothing further."""
        fake_sessions.script("status", CommandResult(exit_code=3, stderr="unit not found"))
        data = connected(
            node("cond", "conditional-path", conditionType="command", command="status", comparison="contains", value="ok"),
            end=False,
        )
        data["nodes"] += [node("yes", "end"), node("no", "end")]
        data["edges"] += [edge("cond", "yes", "true"), edge("cond", "no", "false")]

        summary = await orchestrator.run_direct(data, OWNER)

        assert summary.results["cond"]["success"] is False
        assert "unit not found" in summary.results["cond"]["error"]
        assert "yes_status" not in summary.results
        assert "no_status" not in summary.results
        assert summary.status == FlowStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_timed_out_file_check_stops_path(self, orchestrator, fake_sessions):
        """A fileExists check that times out is an error, not a false condition."""
        fake_sessions.script("test -f", CommandResult(exit_code=124, timed_out=True))
        data = connected(
            node("cond", "conditional-path", conditionType="fileExists", filepath="/var/run/flag"),
            end=False,
        )
        data["nodes"] += [node("yes", "end"), node("no", "end")]
        data["edges"] += [edge("cond", "yes", "true"), edge("cond", "no", "false")]

        summary = await orchestrator.run_direct(data, OWNER)

        assert summary.results["cond_status"] == "error"
        assert summary.results["cond"]["timedOut"] is True
        assert "no_status" not in summary.results
        assert "yes_status" not in summary.results


# =============================================================================
# Walk semantics
# =============================================================================


class TestWalk:
    """Tests for successor selection and stop conditions."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("stdout, taken, skipped", [("ready", "yes", "no"), ("booting", "no", "yes")])
    async def test_branch_follows_matching_label(self, orchestrator, fake_sessions, stdout, taken, skipped):
        fake_sessions.script("cat /state", CommandResult(exit_code=0, stdout=stdout))
        data = connected(
            node("cond", "conditional-path", command="cat /state", comparison="equals", value="ready"),
            end=False,
        )
        data["nodes"] += [node("yes", "text-message", message="up"), node("no", "text-message", message="down")]
        data["edges"] += [edge("cond", "yes", "true"), edge("cond", "no", "false")]

        summary = await orchestrator.run_direct(data, OWNER)

        assert summary.results[f"{taken}_status"] == "success"
        assert f"{skipped}_status" not in summary.results

    @pytest.mark.asyncio
    async def test_branch_follows_every_matching_edge(self, orchestrator):
        data = connected(node("cond", "conditional-path", conditionType="fileExists", filepath="/x"), end=False)
        data["nodes"] += [node("a", "end"), node("b", "end")]
        data["edges"] += [edge("cond", "a", "true"), edge("cond", "b", "true")]

        summary = await orchestrator.run_direct(data, OWNER)
        assert summary.results["a_status"] == summary.results["b_status"] == "success"

    @pytest.mark.asyncio
    async def test_missing_branch_edge_ends_silently(self, orchestrator, fake_sessions):
        fake_sessions.script("test -f", CommandResult(exit_code=1))
        data = connected(node("cond", "conditional-path", conditionType="fileExists", filepath="/x"), end=False)
        data["nodes"].append(node("yes", "end"))
        data["edges"].append(edge("cond", "yes", "true"))

        summary = await orchestrator.run_direct(data, OWNER)

        assert summary.results["cond"]["conditionMet"] is False
        assert "yes_status" not in summary.results
        assert summary.status == FlowStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_fan_out_in_edge_order(self, orchestrator, fake_sessions):
        data = connected(end=False)
        data["nodes"] += [node("a", "run-command", command="first"), node("b", "run-command", command="second")]
        data["edges"] += [edge("connect", "a"), edge("connect", "b")]

        await orchestrator.run_direct(data, OWNER)
        assert fake_sessions.command_strings == ["first", "second"]

    @pytest.mark.asyncio
    async def test_end_is_terminal(self, orchestrator):
        data = graph(
            [node("start", "start"), node("end", "end"), node("after", "text-message", message="x")],
            chain("start", "end", "after"),
        )
        summary = await orchestrator.run_direct(data, OWNER)
        assert "after_status" not in summary.results

    @pytest.mark.asyncio
    async def test_dangling_edge_ends_path(self, orchestrator):
        data = graph([node("start", "start"), node("end", "end")], [edge("start", "ghost"), edge("start", "end")])
        summary = await orchestrator.run_direct(data, OWNER)

        assert summary.status == FlowStatus.SUCCESS
        assert summary.results["end_status"] == "success"

    @pytest.mark.asyncio
    async def test_loop_body_walked_again_after_iterations(self, orchestrator, fake_sessions):
        """Documented quirk: after iterating, a loop follows all outgoing edges, body included."""
        data = connected(node("loop", "loop", iterations=2), node("body", "run-command", command="blink"), end=False)

        summary = await orchestrator.run_direct(data, OWNER)

        assert fake_sessions.command_strings.count("blink") == 3
        assert summary.results["loop"]["message"] == "Loop completed 2 iterations"
        assert "loop_iteration_2" not in summary.results
        assert summary.results["body_status"] == "success"

    @pytest.mark.asyncio
    async def test_loop_follows_every_outgoing_edge_in_order(self, orchestrator, fake_sessions):
        data = connected(node("loop", "loop", iterations=2), end=False)
        data["nodes"] += [node("body", "run-command", command="blink"), node("done", "run-command", command="after")]
        data["edges"] += [edge("loop", "done"), edge("loop", "body", "body")]

        summary = await orchestrator.run_direct(data, OWNER)

        assert fake_sessions.command_strings == ["blink", "blink", "after", "blink"]
        assert len(summary.results["loop"]["iterations"]) == 2

    @pytest.mark.asyncio
    async def test_loop_body_walks_its_successors(self, orchestrator, fake_sessions):
        data = connected(node("loop", "loop", iterations=2), end=False)
        data["nodes"] += [node("on", "gpio", pin=17, state="high"), node("off", "gpio", pin=17, state="low")]
        data["edges"] += [edge("loop", "on"), edge("on", "off")]

        await orchestrator.run_direct(data, OWNER)

        writes = [c for c in fake_sessions.command_strings if "GPIO.output" in c]
        assert len(writes) == 6

    @pytest.mark.asyncio
    async def test_loop_without_target(self, orchestrator):
        data = connected(node("loop", "loop", iterations=2), end=False)
        data["edges"].append(edge("loop", "ghost"))

        summary = await orchestrator.run_direct(data, OWNER)
        assert summary.results["loop"]["message"] == "Loop completed 0 iterations (no target node)"

    @pytest.mark.asyncio
    async def test_command_timeout_recorded(self, orchestrator, fake_sessions):
        fake_sessions.script("sleep", CommandResult(exit_code=124, stdout="partial", timed_out=True))
        summary = await orchestrator.run_direct(connected(node("cmd", "run-command", command="sleep 999")), OWNER)

        assert summary.results["cmd"]["timedOut"] is True
        assert summary.results["cmd_status"] == "error"
        assert "end_status" not in summary.results


# =============================================================================
# Sessions
# =============================================================================


class TestSessions:
    """Every session opened during a run is closed exactly once."""

    @pytest.mark.asyncio
    async def test_supersession(self, orchestrator, fake_sessions):
        data = connected(
            node("cmd1", "run-command", command="one"),
            node("connect2", "connect-raspberry-pi", **{**INLINE_HOST, "host": "pi2.local"}),
            node("cmd2", "run-command", command="two"),
        )
        summary = await orchestrator.run_direct(data, OWNER)

        assert summary.status == FlowStatus.SUCCESS
        assert fake_sessions.commands == [("pi.local", "one"), ("pi2.local", "two")]
        assert fake_sessions.opened == fake_sessions.closed == 2
        assert all(s.closed for s in fake_sessions.sessions)

    @pytest.mark.asyncio
    async def test_failed_connection_stops_path(self, orchestrator, fake_sessions):
        fake_sessions.unreachable.add("pi.local")
        summary = await orchestrator.run_direct(connected(node("cmd", "run-command", command="ls")), OWNER)

        assert summary.results["connect"]["error"].startswith("Connection failed")
        assert "cmd_status" not in summary.results
        assert summary.status == FlowStatus.SUCCESS
        assert fake_sessions.opened == fake_sessions.closed == 0

    @pytest.mark.asyncio
    async def test_session_closed_when_run_aborts(self, orchestrator, fake_sessions, mocker):
        mocker.patch("piflow.core.engine.handle_run_command", side_effect=RuntimeError("handler bug"))
        summary = await orchestrator.run_direct(connected(node("cmd", "run-command", command="ls")), OWNER)

        assert summary.status == FlowStatus.ERROR
        assert summary.error == "handler bug"
        assert summary.results["cmd"] == {"success": False, "error": "handler bug"}
        assert summary.results["cmd_status"] == "error"
        assert fake_sessions.opened == fake_sessions.closed == 1

    @pytest.mark.asyncio
    async def test_transport_error_is_node_failure(self, orchestrator, fake_sessions):
        fake_sessions.script("ls", RemoteExecutionError("Connection lost"))
        summary = await orchestrator.run_direct(connected(node("cmd", "run-command", command="ls")), OWNER)

        assert summary.status == FlowStatus.SUCCESS
        assert summary.results["cmd"]["error"] == "Connection lost"
        assert fake_sessions.opened == fake_sessions.closed == 1


# =============================================================================
# Run lifecycle
# =============================================================================


class TestRunLifecycle:
    """Tests for claiming, background runs and run-level failures."""

    @pytest.mark.asyncio
    async def test_background_run(self, orchestrator, test_db):
        _save(test_db, connected(node("cmd", "run-command", command="ls")))

        ticket = await orchestrator.start_run("flow-1", OWNER)
        assert ticket.accepted
        assert ticket.status == FlowStatus.RUNNING

        await orchestrator.wait_for("flow-1")
        status = await orchestrator.get_run_status("flow-1", OWNER)
        assert status.status == FlowStatus.SUCCESS
        assert status.results["end_status"] == "success"
        assert status.last_run_at is not None
        assert not orchestrator.is_running("flow-1")

    @pytest.mark.asyncio
    async def test_conflict_rejected(self, orchestrator, test_db):
        _save(test_db, connected())
        test_db.claim_run("flow-1", OWNER)

        ticket = await orchestrator.start_run("flow-1", OWNER)
        assert not ticket.accepted
        assert "already running" in ticket.message

        with pytest.raises(RunConflictError):
            await orchestrator.run_flow("flow-1", OWNER)

    @pytest.mark.asyncio
    async def test_unknown_flow(self, orchestrator):
        with pytest.raises(FlowNotFoundError):
            await orchestrator.start_run("nope", OWNER)
        with pytest.raises(FlowNotFoundError):
            await orchestrator.get_run_status("nope", OWNER)

    @pytest.mark.asyncio
    async def test_status_reads_are_idempotent(self, orchestrator, test_db):
        _save(test_db, connected())
        await orchestrator.run_flow("flow-1", OWNER)

        first = await orchestrator.get_run_status("flow-1", OWNER)
        second = await orchestrator.get_run_status("flow-1", OWNER)
        assert first == second

    @pytest.mark.asyncio
    async def test_rerun_resets_results(self, orchestrator, test_db, fake_sessions):
        fake_sessions.script("test -f", CommandResult(exit_code=0), CommandResult(exit_code=1))
        data = connected(node("cond", "conditional-path", conditionType="fileExists", filepath="/x"), end=False)
        data["nodes"] += [node("yes", "end"), node("no", "end")]
        data["edges"] += [edge("cond", "yes", "true"), edge("cond", "no", "false")]
        _save(test_db, data)

        first = await orchestrator.run_flow("flow-1", OWNER)
        second = await orchestrator.run_flow("flow-1", OWNER)

        assert "yes_status" in first.results
        assert "yes_status" not in second.results
        assert "no_status" in second.results

    @pytest.mark.asyncio
    async def test_foreign_device_aborts_run(self, orchestrator, test_db, fake_sessions, password_descriptor):
        test_db.add_device(OTHER_OWNER, "Not yours", password_descriptor, device_id="pi-x")
        data = graph(
            [
                node("start", "start"),
                node("connect", "connect-raspberry-pi", piId="pi-x"),
                node("end", "end"),
            ],
            chain("start", "connect", "end"),
        )
        _save(test_db, data)

        run = await orchestrator.run_flow("flow-1", OWNER)

        assert run.status == FlowStatus.ERROR
        assert "does not belong" in run.error
        assert run.results["connect_status"] == "error"
        assert "end_status" not in run.results
        assert fake_sessions.sessions == []

    @pytest.mark.asyncio
    async def test_invalid_graph_aborts_run(self, orchestrator):
        data = graph(
            [node("start", "start"), node("a", "text-message"), node("b", "text-message")],
            chain("start", "a", "b") + [edge("b", "a")],
        )
        summary = await orchestrator.run_direct(data, OWNER)

        assert summary.status == FlowStatus.ERROR
        assert "Cycle detected" in summary.error
        assert summary.results == {}

    @pytest.mark.asyncio
    async def test_unparseable_graph(self, orchestrator):
        summary = await orchestrator.run_direct({"nodes": [{"id": "x", "type": "teleport"}]}, OWNER)
        assert summary.status == FlowStatus.ERROR
        assert "Invalid flow graph" in summary.error
        assert summary.finished_at >= summary.started_at

    @pytest.mark.asyncio
    async def test_walk_depth_bounded(self, test_db, fake_sessions, tmp_path):
        orchestrator = FlowOrchestrator(
            test_db, test_db, EngineConfig(db_path=tmp_path / "x.db", max_walk_depth=3), fake_sessions
        )
        ids = ["start", "a", "b", "c", "d"]
        data = graph([node("start", "start")] + [node(i, "text-message") for i in ids[1:]], chain(*ids))

        summary = await orchestrator.run_direct(data, OWNER)

        assert summary.status == FlowStatus.ERROR
        assert "Maximum walk depth (3)" in summary.error
        assert summary.results["b_status"] == "success"
        assert "c_status" not in summary.results

    @pytest.mark.asyncio
    async def test_cancelled_run_is_cleaned_up(self, orchestrator, test_db, fake_sessions):
        fake_sessions.script("sleep", asyncio.Event())
        _save(test_db, connected(node("cmd", "run-command", command="sleep 999")))

        await orchestrator.start_run("flow-1", OWNER)
        for _ in range(200):
            if fake_sessions.commands:
                break
            await asyncio.sleep(0.01)
        await orchestrator.shutdown()

        status = await orchestrator.get_run_status("flow-1", OWNER)
        assert status.status == FlowStatus.ERROR
        assert status.error == "Run cancelled"
        assert fake_sessions.opened == fake_sessions.closed == 1


# =============================================================================
# Device operations
# =============================================================================


class TestDeviceOperations:
    """Tests for test_device() and run_device_command()."""

    @pytest.mark.asyncio
    async def test_device_online(self, orchestrator, fake_sessions, test_db, device):
        fake_sessions.script("uname -a", CommandResult(exit_code=0, stdout="Linux pi 6.1 aarch64\n"))
        result = await orchestrator.test_device(device.id, OWNER)

        assert result.success
        assert result.message == "Connection successful"
        assert result.system == "Linux pi 6.1 aarch64"
        assert test_db.get_device(device.id, OWNER).status == "online"
        assert fake_sessions.opened == fake_sessions.closed == 1

    @pytest.mark.asyncio
    async def test_device_offline(self, orchestrator, fake_sessions, test_db, device):
        fake_sessions.unreachable.add("pi.local")
        result = await orchestrator.test_device(device.id, OWNER)

        assert not result.success
        assert result.status == "offline"
        assert test_db.get_device(device.id, OWNER).status == "offline"

    @pytest.mark.asyncio
    async def test_run_device_command(self, orchestrator, fake_sessions, device):
        fake_sessions.script("vcgencmd", CommandResult(exit_code=0, stdout="temp=48.3'C\n"))
        result = await orchestrator.run_device_command(device.id, OWNER, "vcgencmd measure_temp")

        assert result.stdout == "temp=48.3'C\n"
        assert fake_sessions.opened == fake_sessions.closed == 1

    @pytest.mark.asyncio
    async def test_run_device_command_rejects_blank(self, orchestrator, device):
        with pytest.raises(ValueError, match="cannot be empty"):
            await orchestrator.run_device_command(device.id, OWNER, "  ")

    @pytest.mark.asyncio
    async def test_device_operations_need_a_registry(self, test_db, fake_sessions, engine_config):
        orchestrator = FlowOrchestrator(test_db, None, engine_config, session_factory=fake_sessions)

        with pytest.raises(FlowError, match="No device registry configured"):
            await orchestrator.test_device("pi-1", OWNER)
        with pytest.raises(FlowError, match="No device registry configured"):
            await orchestrator.run_device_command("pi-1", OWNER, "uptime")
        assert fake_sessions.opened == 0
