"""Error taxonomy for the flow interpreter."""
from __future__ import annotations


class FlowEngineError(Exception):
    """Base class for engine errors."""


class ConfigurationError(FlowEngineError):
    """
    The flow definition cannot be executed as stored: the flow an execution
    points at is gone, no start node, an edge pointing at a missing node, ...
    A department without an active flow is not an error.
    Aborts the invocation without persisting the execution state.
    """

    def __init__(self, message: str, flow_id: str = "", node_id: str = ""):
        self.flow_id = flow_id
        self.node_id = node_id
        super().__init__(message)


class FlowValidationError(FlowEngineError):
    """A definition document failed graph validation on import."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("; ".join(errors) or "invalid flow definition")
