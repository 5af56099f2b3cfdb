"""SSH sessions for running flow commands on a remote device.

One RemoteSession wraps one authenticated asyncssh connection to a single
host. A nonzero exit status is a normal CommandResult; only transport
failures raise. Every command runs under a timeout so a hung remote process
cannot stall a flow forever.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Literal

import asyncssh
from pydantic import BaseModel, Field, model_validator

logger = logging.getLogger(__name__)

# Exit code reported for commands killed by the command timeout (same as coreutils timeout)
TIMEOUT_EXIT_CODE = 124


class SessionError(Exception):
    """Error in a remote session."""

    pass


class RemoteConnectionError(SessionError):
    """Remote host is unreachable or rejected authentication."""

    pass


class RemoteExecutionError(SessionError):
    """The transport failed while a command was running."""

    pass


class ConnectionDescriptor(BaseModel):
    """Everything needed to open a session to one host."""

    host: str = Field(min_length=1)
    port: int = Field(default=22, ge=1, le=65535)
    username: str = Field(min_length=1)
    auth_type: Literal["password", "privateKey"] = "password"
    password: str | None = Field(default=None, repr=False)
    private_key: str | None = Field(default=None, repr=False)
    passphrase: str | None = Field(default=None, repr=False)

    @model_validator(mode="after")
    def check_credential(self) -> ConnectionDescriptor:
        """Ensure the credential matching auth_type is present."""
        if self.auth_type == "password" and not self.password:
            raise ValueError("Password is required for password authentication")
        if self.auth_type == "privateKey" and not self.private_key:
            raise ValueError("Private key is required for key authentication")
        return self


class CommandResult(BaseModel):
    """Result of one remote command."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False


@dataclass
class SessionConfig:
    """Timeouts and limits applied to remote sessions."""

    connect_timeout: float = 10.0
    command_timeout: float = 60.0

    # Output limits (prevent OOM from unbounded output)
    max_output_bytes: int = 1024 * 1024

    # None disables host key verification
    known_hosts: str | None = None


def _truncate_output(output: str | bytes | None, max_bytes: int) -> str:
    """Truncate output to max_bytes, adding truncation notice if needed."""
    if output is None:
        return ""
    if isinstance(output, bytes):
        output = output.decode("utf-8", errors="replace")
    if len(output.encode("utf-8", errors="replace")) <= max_bytes:
        return output

    # Truncate by bytes, ensuring we don't cut in the middle of a UTF-8 sequence
    truncated = output.encode("utf-8", errors="replace")[:max_bytes].decode(
        "utf-8", errors="ignore"
    )
    return truncated + f"\n\n[OUTPUT TRUNCATED - exceeded {max_bytes} bytes]"


class RemoteSession:
    """
    One live command channel to exactly one remote host.

    Lifecycle: open() once, run() any number of times, close() once.
    close() is idempotent and safe to call on a session that never opened.
    """

    def __init__(self, descriptor: ConnectionDescriptor, config: SessionConfig | None = None):
        self.descriptor = descriptor
        self.config = config or SessionConfig()
        self._conn: asyncssh.SSHClientConnection | None = None
        self._closed = False

    @property
    def host(self) -> str:
        return self.descriptor.host

    @property
    def is_open(self) -> bool:
        return self._conn is not None and not self._closed

    def _connect_options(self) -> dict:
        d = self.descriptor
        options = {
            "port": d.port,
            "username": d.username,
            "known_hosts": self.config.known_hosts,
        }
        if d.auth_type == "password":
            options["password"] = d.password
            options["client_keys"] = None
        else:
            options["client_keys"] = [asyncssh.import_private_key(d.private_key, d.passphrase)]
        return options

    async def open(self) -> None:
        """Connect and authenticate.

        Raises:
            RemoteConnectionError: Host unreachable, authentication rejected,
                bad private key, or connect_timeout elapsed.
        """
        if self._closed:
            raise RemoteConnectionError("Session has already been closed")
        if self._conn is not None:
            return

        d = self.descriptor
        try:
            self._conn = await asyncio.wait_for(
                asyncssh.connect(d.host, **self._connect_options()),
                timeout=self.config.connect_timeout,
            )
        except asyncio.TimeoutError as e:
            raise RemoteConnectionError(
                f"Timed out connecting to {d.host}:{d.port} after {self.config.connect_timeout}s"
            ) from e
        except (asyncssh.Error, OSError, ValueError) as e:
            raise RemoteConnectionError(str(e) or type(e).__name__) from e

        logger.info(f"Opened SSH session to {d.username}@{d.host}:{d.port}")

    async def run(self, command: str) -> CommandResult:
        """Run a command and capture its exit code and output.

        Raises:
            RemoteExecutionError: Session not open or the channel dropped.
        """
        if not self.is_open:
            raise RemoteExecutionError("Session is not open")

        max_bytes = self.config.max_output_bytes
        try:
            completed = await self._conn.run(
                command, check=False, timeout=self.config.command_timeout
            )
        except asyncssh.TimeoutError as e:
            logger.warning(
                f"Command on {self.host} timed out after {self.config.command_timeout}s: {command}"
            )
            return CommandResult(
                exit_code=TIMEOUT_EXIT_CODE,
                stdout=_truncate_output(e.stdout, max_bytes),
                stderr=_truncate_output(e.stderr, max_bytes),
                timed_out=True,
            )
        except (asyncssh.Error, OSError) as e:
            raise RemoteExecutionError(str(e) or type(e).__name__) from e

        exit_code = completed.exit_status
        if exit_code is None:
            # Killed by a signal: asyncssh reports -signal as returncode
            exit_code = completed.returncode if completed.returncode is not None else -1

        return CommandResult(
            exit_code=exit_code,
            stdout=_truncate_output(completed.stdout, max_bytes),
            stderr=_truncate_output(completed.stderr, max_bytes),
        )

    async def close(self) -> None:
        """Release the connection. Idempotent."""
        if self._closed:
            return
        self._closed = True
        conn, self._conn = self._conn, None
        if conn is None:
            return
        conn.close()
        try:
            await conn.wait_closed()
        except (asyncssh.Error, OSError) as e:
            logger.debug(f"Error while closing session to {self.host}: {e}")
        logger.info(f"Closed SSH session to {self.host}")

    async def __aenter__(self) -> RemoteSession:
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


SessionFactory = Callable[[ConnectionDescriptor, SessionConfig], RemoteSession]
