from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import ErrorKind
from .utils import validate_step_dependency_dag


def utc_now() -> datetime:
    return datetime.now(UTC)


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class RunStatus(str, Enum):
    READY = "ready"
    RUNNING = "running"
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {RunStatus.COMPLETED, RunStatus.FAILED}


class CheckpointEvent(str, Enum):
    START = "start"
    NODE = "node"
    INTERRUPT = "interrupt"
    RESUME = "resume"
    INJECT = "inject"
    SUBRUN_PENDING = "subrun_pending"
    TERMINAL = "terminal"


class ThreadPhase(str, Enum):
    AWAITING_PLAN_FEEDBACK = "awaiting_plan_feedback"
    PROGRAMMER_RUNNING = "programmer_running"
    IDLE = "idle"


class RunMode(str, Enum):
    MANUAL = "manual"
    AUTO = "auto"


class ApprovalAction(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    FEEDBACK = "feedback"


class ReviewDecision(str, Enum):
    APPROVE = "approve"
    REQUEST_CHANGES = "request_changes"


class ToolCallRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class Message(BaseModel):
    """One append-only entry of a session message log."""

    model_config = ConfigDict(frozen=True)

    role: str
    content: str
    tool_call_refs: list[ToolCallRef] = Field(default_factory=list)

    @field_validator("role")
    @classmethod
    def _role_non_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("role must be non-empty")
        return value

    def tool_call(self, name: str) -> ToolCallRef | None:
        for ref in self.tool_call_refs:
            if ref.name == name:
                return ref
        return None


class Step(BaseModel):
    id: str
    description: str
    target_path: str
    depends_on: list[str] = Field(default_factory=list)
    test_command: str | None = None
    status: StepStatus = StepStatus.PENDING

    @field_validator("id", "target_path")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must be non-empty")
        return value.strip()


class Plan(BaseModel):
    """Dependency-annotated work breakdown produced by the planning session."""

    title: str
    summary: str = ""
    steps: list[Step]
    revision: int = 1
    frozen: bool = False

    def step(self, step_id: str) -> Step:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise KeyError(step_id)

    def validate_structure(self) -> None:
        """Raise ValueError when step ids repeat or ``depends_on`` is not a DAG."""
        if not self.steps:
            raise ValueError("Plan must contain at least one step")
        seen: set[str] = set()
        for step in self.steps:
            if step.id in seen:
                raise ValueError(f"Duplicate step id: {step.id}")
            seen.add(step.id)
        validate_step_dependency_dag(self.steps)

    def frozen_copy(self) -> "Plan":
        self.validate_structure()
        return self.model_copy(update={"frozen": True}, deep=True)

    def revised(self, **changes: Any) -> "Plan":
        if self.frozen:
            raise ValueError("Plan is frozen and can no longer be revised")
        return self.model_copy(update=changes, deep=True)


class FailureRecord(BaseModel):
    kind: ErrorKind
    node: str
    detail: str
    step_id: str | None = None


class ReviewVerdict(BaseModel):
    decision: ReviewDecision
    iteration: int
    feedback: str = ""
    failures: dict[str, str] = Field(default_factory=dict)
    forced: bool = False


class CommandResult(BaseModel):
    stdout: str = ""
    stderr: str = ""
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class SearchResult(BaseModel):
    url: str = ""
    title: str = ""
    snippet: str = ""
    score: float | None = None


class StepResult(BaseModel):
    step_id: str
    phase: str
    ok: bool
    detail: str = ""
    attempt: int = 1


class Checkpoint(BaseModel):
    """Immutable snapshot of a thread's state taken after one dispatch."""

    model_config = ConfigDict(frozen=True)

    id: str
    thread_id: str
    parent_id: str | None
    sequence: int
    node_id: str
    next_node: str | None
    event: CheckpointEvent
    status: RunStatus
    awaiting_input: bool = False
    updates: list[dict[str, Any]] = Field(default_factory=list)
    state: dict[str, Any]
    digest: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)


class ThreadRecord(BaseModel):
    thread_id: str
    graph_name: str
    parent_thread_id: str | None = None
    parent_node: str | None = None
    phase: ThreadPhase = ThreadPhase.IDLE
    status: RunStatus = RunStatus.READY
    archived: bool = False
    request: str | None = None
    result_ref: str | None = None
    reason: str | None = None
    # Session that now answers messages addressed to this thread id.
    current_session: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class InboundMessage(BaseModel):
    """An out-of-band message addressed to a coordinator thread."""

    thread_id: str
    content: str = ""
    plan_feedback: dict[str, Any] | None = None
    instructions: str | None = None
    related: bool | None = None


class RunHandle(BaseModel):
    thread_id: str
    status: RunStatus
    awaiting_input: bool = False


class RunResult(BaseModel):
    status: str
    result_ref: str | None = None
    reason: str | None = None

    @field_validator("status")
    @classmethod
    def _known_status(cls, value: str) -> str:
        if value not in {"completed", "failed", "cancelled"}:
            raise ValueError(f"unknown terminal status: {value}")
        return value


def as_messages(raw: list[Any] | None) -> list[Message]:
    """Validate a run-state message log back into ``Message`` records."""
    return [item if isinstance(item, Message) else Message.model_validate(item) for item in raw or []]
