"""Remote execution over SSH."""

from piflow.remote.session import (
    CommandResult,
    ConnectionDescriptor,
    RemoteConnectionError,
    RemoteExecutionError,
    RemoteSession,
    SessionConfig,
    SessionError,
)

__all__ = [
    "CommandResult",
    "ConnectionDescriptor",
    "RemoteConnectionError",
    "RemoteExecutionError",
    "RemoteSession",
    "SessionConfig",
    "SessionError",
]
