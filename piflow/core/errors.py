"""Exceptions shared by the flow engine and its storage collaborators."""


class FlowError(Exception):
    """Base class for flow engine errors."""

    pass


class GraphError(FlowError):
    """Flow graph is malformed (no start node, duplicate ids, cycles, dangling edges)."""

    pass


class AuthorizationError(FlowError):
    """Owner is not entitled to the requested flow or device."""

    pass


class FlowNotFoundError(FlowError):
    """No flow exists with the requested ID."""

    pass


class DeviceNotFoundError(FlowError):
    """No device exists with the requested ID."""

    pass


class RunConflictError(FlowError):
    """A run was requested for a flow that is already running."""

    pass
