from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Failure categories carried as structured state between nodes and routers."""

    TOOL_INVOCATION = "tool_invocation"
    VALIDATION_FAILURE = "validation_failure"
    APPROVAL_REJECTED = "approval_rejected"
    QUOTA_EXCEEDED = "quota_exceeded"
    STATE_CORRUPTION = "state_corruption"
    ROUTING_AMBIGUITY = "routing_ambiguity"
    CANCELLED = "cancelled"
    NODE_ERROR = "node_error"


class ConductorError(RuntimeError):
    """Base class for all errors raised by agent_conductor."""


class ConfigurationError(ConductorError):
    """A required setting is missing or invalid."""


class GraphDefinitionError(ConductorError):
    """A graph definition or node output violates the declared state schema."""


class ToolInvocationError(ConductorError):
    """An external collaborator call failed after its retry budget was spent."""

    def __init__(self, capability: str, detail: str, *, attempts: int = 1) -> None:
        super().__init__(f"{capability} failed after {attempts} attempt(s): {detail}")
        self.capability = capability
        self.detail = detail
        self.attempts = attempts


class ToolCancelled(ToolInvocationError):
    """The owning run was cancelled while an external call was pending."""

    def __init__(self, capability: str) -> None:
        super().__init__(capability, "run cancelled")


class StaleParent(ConductorError):
    """A checkpoint append named a parent that is no longer the thread head."""

    def __init__(self, thread_id: str, expected: str | None, actual: str | None) -> None:
        super().__init__(
            f"stale parent for thread {thread_id}: append named {expected!r} but head is {actual!r}"
        )
        self.thread_id = thread_id
        self.expected = expected
        self.actual = actual


class CheckpointNotFound(ConductorError):
    """The thread or checkpoint does not exist in the store."""


class StateCorruption(ConductorError):
    """A persisted checkpoint failed its integrity check. Requires manual intervention."""


class NotSuspended(ConductorError):
    """Resume was requested for a thread that is not awaiting input."""


class RunNotActive(ConductorError):
    """An operation required a running or suspended thread."""
