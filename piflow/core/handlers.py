"""Node action handlers.

One async function per node kind. Each returns an OutcomeRecord; expected
failures (missing session, bad parameters, nonzero exit, unreachable host,
dropped transport) are reported in the record and never raised. The only
exception a handler lets escape on purpose is AuthorizationError from the
device registry, which aborts the whole run.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from piflow.core.errors import DeviceNotFoundError
from piflow.core.results import OutcomeRecord
from piflow.remote.commands import (
    build_file_exists_command,
    build_gpio_read_command,
    build_gpio_write_command,
    normalize_pin_state,
    validate_pin,
)
from piflow.remote.session import (
    ConnectionDescriptor,
    RemoteConnectionError,
    RemoteExecutionError,
    RemoteSession,
    SessionConfig,
    SessionFactory,
)

if TYPE_CHECKING:
    from piflow.core.engine import ExecutionContext
    from piflow.core.state import DeviceRegistry

logger = logging.getLogger(__name__)

NO_SESSION = "No active session. Add a Connect Raspberry Pi node before {what}."


def _utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


def _params_error(e: ValidationError) -> str:
    details = "; ".join(
        f"{'.'.join(str(x) for x in err['loc']) or 'parameters'}: {err['msg']}"
        for err in e.errors()
    )
    return f"Invalid parameters: {details}"


# --- Parameter models (editor field names are camelCase) ---


class _Params(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class ConnectParams(_Params):
    pi_id: str | None = None
    device_id: str | None = None
    host: str | None = None
    port: int = 22
    username: str | None = None
    auth_type: Literal["password", "privateKey"] = "password"
    password: str | None = None
    private_key: str | None = None
    passphrase: str | None = None

    @property
    def stored_device_id(self) -> str | None:
        return self.pi_id or self.device_id


class RunCommandParams(_Params):
    command: str | None = None


class GpioParams(_Params):
    pin: int
    state: bool | float | str = True
    frequency: float = Field(default=1000.0, gt=0)
    duration: float = Field(default=1.0, ge=0)


class ConditionParams(_Params):
    condition_type: Literal["command", "fileExists", "gpio"] = "command"
    command: str | None = None
    comparison: Literal["contains", "equals", "notContains", "notEquals"] = "contains"
    value: str = ""
    filepath: str | None = None
    pin: int | None = None
    expected_state: bool | int | str = True


class LoopParams(_Params):
    iterations: int = Field(default=1, ge=1)
    delay: float = Field(default=0, ge=0)
    stop_on_error: bool = False


class TextMessageParams(_Params):
    message: str = ""
    recipient: str | None = None


# --- Simple nodes ---


async def handle_start(session: RemoteSession | None, params: dict[str, Any]) -> OutcomeRecord:
    return OutcomeRecord(success=True, message="Flow started")


async def handle_end(session: RemoteSession | None, params: dict[str, Any]) -> OutcomeRecord:
    return OutcomeRecord(success=True, message="Flow ended")


async def handle_send_text_message(
    session: RemoteSession | None, params: dict[str, Any]
) -> OutcomeRecord:
    """Record a text message notification (delivery happens outside the engine)."""
    try:
        p = TextMessageParams.model_validate(params)
    except ValidationError as e:
        return OutcomeRecord.failure(_params_error(e))
    return OutcomeRecord(success=True, message=f"Message sent: {p.message}", recipient=p.recipient)


# --- Remote nodes ---


async def handle_connect_remote_host(
    ctx: ExecutionContext,
    params: dict[str, Any],
    *,
    devices: DeviceRegistry | None,
    session_factory: SessionFactory,
    session_config: SessionConfig,
) -> OutcomeRecord:
    """Open a new session and make it the run's current session.

    The previous session (if any) is closed first. Connection details come
    either from a stored device (piId/deviceId) or from the node itself.

    Raises:
        AuthorizationError: The stored device belongs to another owner.
    """
    await ctx.release_session()

    try:
        p = ConnectParams.model_validate(params)
    except ValidationError as e:
        return OutcomeRecord.failure(_params_error(e))

    device_id = p.stored_device_id
    if device_id:
        if devices is None:
            return OutcomeRecord.failure("Connection failed: no device registry available")
        try:
            descriptor = await asyncio.to_thread(devices.resolve_device, device_id, ctx.owner_id)
        except DeviceNotFoundError as e:
            return OutcomeRecord.failure(f"Connection failed: {e}")
    else:
        try:
            descriptor = ConnectionDescriptor(
                host=p.host or "",
                port=p.port,
                username=p.username or "",
                auth_type=p.auth_type,
                password=p.password,
                private_key=p.private_key,
                passphrase=p.passphrase,
            )
        except ValidationError as e:
            return OutcomeRecord.failure(f"Connection failed: {_params_error(e)}")

    session = session_factory(descriptor, session_config)
    try:
        await session.open()
    except RemoteConnectionError as e:
        logger.error(f"Failed to connect to {descriptor.host}: {e}")
        if device_id:
            await asyncio.to_thread(devices.mark_device_status, device_id, "offline", _utc_now())
        return OutcomeRecord.failure(f"Connection failed: {e}", host=descriptor.host)

    ctx.adopt_session(session)
    if device_id:
        await asyncio.to_thread(devices.mark_device_status, device_id, "online", _utc_now())
    return OutcomeRecord(success=True, message=f"Connected to {descriptor.host}", host=descriptor.host)


async def handle_run_command(
    session: RemoteSession | None, params: dict[str, Any]
) -> OutcomeRecord:
    try:
        p = RunCommandParams.model_validate(params)
    except ValidationError as e:
        return OutcomeRecord.failure(_params_error(e))
    if session is None:
        return OutcomeRecord.failure(NO_SESSION.format(what="Run Command"), command=p.command)
    if not p.command or not p.command.strip():
        return OutcomeRecord.failure("Command cannot be empty", command=p.command)

    try:
        result = await session.run(p.command)
    except RemoteExecutionError as e:
        logger.error(f"Command execution failed: {e}")
        return OutcomeRecord.failure(str(e), command=p.command)

    outcome = OutcomeRecord(
        success=result.exit_code == 0,
        stdout=result.stdout,
        stderr=result.stderr,
        exit_code=result.exit_code,
        command=p.command,
    )
    if result.timed_out:
        outcome.timed_out = True
        outcome.error = "Command timed out"
    return outcome


async def handle_set_remote_output(
    session: RemoteSession | None, params: dict[str, Any]
) -> OutcomeRecord:
    """Drive a GPIO pin to a level, or start PWM for a numeric duty cycle."""
    if session is None:
        return OutcomeRecord.failure(NO_SESSION.format(what="GPIO"))
    try:
        p = GpioParams.model_validate(params)
        pin = validate_pin(p.pin)
        state = normalize_pin_state(p.state)
        command = build_gpio_write_command(pin, state, p.frequency, p.duration)
    except ValidationError as e:
        return OutcomeRecord.failure(_params_error(e))
    except ValueError as e:
        return OutcomeRecord.failure(str(e), pin=params.get("pin"), state=params.get("state"))

    try:
        result = await session.run(command)
    except RemoteExecutionError as e:
        logger.error(f"GPIO control failed: {e}")
        return OutcomeRecord.failure(str(e), pin=pin, state=state)

    outcome = OutcomeRecord(
        success=result.exit_code == 0,
        stdout=result.stdout,
        stderr=result.stderr,
        exit_code=result.exit_code,
        pin=pin,
        state=state,
    )
    if result.timed_out:
        outcome.timed_out = True
        outcome.error = "Command timed out"
    return outcome


def evaluate_comparison(output: str, comparison: str, expected: str) -> bool:
    """Compare command output with an expected value."""
    if comparison == "contains":
        return expected in output
    if comparison == "notContains":
        return expected not in output
    if comparison == "equals":
        return output.strip() == expected.strip()
    if comparison == "notEquals":
        return output.strip() != expected.strip()
    raise ValueError(f"Unknown comparison: {comparison}")


def _expected_level(value: bool | int | str) -> bool:
    level = normalize_pin_state(value)
    if isinstance(level, float):
        if level not in (0.0, 1.0):
            raise ValueError(f"Expected GPIO state must be high or low, got {value!r}")
        return level == 1.0
    return level


async def handle_conditional_branch(
    session: RemoteSession | None, params: dict[str, Any]
) -> OutcomeRecord:
    """Evaluate a condition on the remote host.

    The walk follows the edges labelled "true" or "false" according to
    conditionMet.
    """
    if session is None:
        return OutcomeRecord.failure(NO_SESSION.format(what="Conditional Path"))
    try:
        p = ConditionParams.model_validate(params)
    except ValidationError as e:
        return OutcomeRecord.failure(_params_error(e))

    try:
        if p.condition_type == "command":
            if not p.command or not p.command.strip():
                return OutcomeRecord.failure("Command cannot be empty")
            result = await session.run(p.command)
            if result.exit_code != 0:
                detail = result.stderr.strip() or f"exit code {result.exit_code}"
                return OutcomeRecord.failure(
                    f"Command execution failed: {detail}",
                    stdout=result.stdout,
                    stderr=result.stderr,
                    exit_code=result.exit_code,
                )
            condition_met = evaluate_comparison(result.stdout, p.comparison, p.value)

        elif p.condition_type == "fileExists":
            if not p.filepath:
                return OutcomeRecord.failure("File path cannot be empty")
            result = await session.run(build_file_exists_command(p.filepath))
            # test -f exits 0 (regular file) or 1 (missing); anything else is a failure
            if result.timed_out:
                return OutcomeRecord.failure(
                    "Command execution failed: timed out",
                    exit_code=result.exit_code,
                    timed_out=True,
                )
            if result.exit_code not in (0, 1):
                detail = result.stderr.strip() or f"exit code {result.exit_code}"
                return OutcomeRecord.failure(
                    f"Command execution failed: {detail}",
                    stderr=result.stderr,
                    exit_code=result.exit_code,
                )
            condition_met = result.exit_code == 0

        else:
            if p.pin is None:
                return OutcomeRecord.failure("GPIO pin is required")
            expected = _expected_level(p.expected_state)
            result = await session.run(build_gpio_read_command(validate_pin(p.pin)))
            if result.exit_code != 0:
                detail = result.stderr.strip() or f"exit code {result.exit_code}"
                return OutcomeRecord.failure(f"GPIO read failed: {detail}")
            condition_met = (result.stdout.strip() == "1") == expected

    except RemoteExecutionError as e:
        logger.error(f"Condition evaluation failed: {e}")
        return OutcomeRecord.failure(f"Command execution failed: {e}")
    except ValueError as e:
        return OutcomeRecord.failure(str(e))

    return OutcomeRecord(
        success=True,
        condition_met=condition_met,
        message=f"Condition evaluated to {str(condition_met).lower()}",
    )


# --- Loop ---


@dataclass
class LoopBody:
    """Entry point of a loop's body: the node it starts at and a sub-walk runner."""

    node_id: str
    run: Callable[[], Awaitable[OutcomeRecord]]


IterationRecorder = Callable[[int, dict[str, Any]], Awaitable[None]]


async def handle_loop(
    session: RemoteSession | None,
    params: dict[str, Any],
    *,
    body: LoopBody | None,
    no_body_reason: str = "no outgoing connections",
    record_iteration: IterationRecorder,
    max_iterations: int = 1000,
) -> OutcomeRecord:
    """Run the loop body sub-walk a fixed number of times, sequentially.

    The loop reports success once it has finished iterating, whether or not
    individual iterations succeeded; failures are visible in the iteration
    records.
    """
    if session is None:
        return OutcomeRecord.failure(NO_SESSION.format(what="Loop"))
    try:
        p = LoopParams.model_validate(params)
    except ValidationError as e:
        return OutcomeRecord.failure(_params_error(e))
    if p.iterations > max_iterations:
        return OutcomeRecord.failure(
            f"Loop iterations must be at most {max_iterations}, got {p.iterations}"
        )

    if body is None:
        return OutcomeRecord(success=True, message=f"Loop completed 0 iterations ({no_body_reason})")

    iterations: list[dict[str, Any]] = []
    for i in range(p.iterations):
        if i > 0 and p.delay:
            await asyncio.sleep(p.delay)

        result = await body.run()
        entry = {"iteration": i + 1, "nodeId": body.node_id, "result": result.as_record()}
        iterations.append(entry)
        await record_iteration(i, entry)

        if not result.success and p.stop_on_error:
            logger.info(f"Loop stopped after failed iteration {i + 1}")
            break

    return OutcomeRecord(
        success=True,
        message=f"Loop completed {len(iterations)} iterations",
        iterations=iterations,
    )
