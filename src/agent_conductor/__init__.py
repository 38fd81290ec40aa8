from importlib.metadata import PackageNotFoundError, version

from .checkpoint_store import CheckpointStore
from .compaction import MessageCompactor, ModelSummaryCompactor, TruncatingCompactor
from .coordinator import OrchestrationCoordinator, RouteOutcome
from .engine import GraphEngine
from .errors import (
    CheckpointNotFound,
    ConductorError,
    ConfigurationError,
    ErrorKind,
    GraphDefinitionError,
    NotSuspended,
    RunNotActive,
    StaleParent,
    StateCorruption,
    ToolCancelled,
    ToolInvocationError,
)
from .execution import ExecutionSession
from .gateway import DocumentSearch, ExecutionEnvironment, LanguageModel, SourceHostingClient, ToolGateway
from .graph import END, FAIL, START, GraphBuilder, GraphDefinition, NodeContext, SubgraphRef
from .interrupts import InterruptController, PendingInterrupt
from .models import (
    Checkpoint,
    FailureRecord,
    InboundMessage,
    Message,
    Plan,
    ReviewVerdict,
    RunHandle,
    RunResult,
    RunStatus,
    Step,
    ThreadRecord,
)
from .planning import PlanningSession
from .reducers import FieldSpec, Reducer, StateSchema
from .review import QualityGate
from .session import TaskSession
from .settings import RuntimeSettings


def get_version() -> str:
    try:
        return version("agent-conductor")
    except PackageNotFoundError:
        return "0.0.0"


__all__ = [
    "Checkpoint",
    "CheckpointNotFound",
    "CheckpointStore",
    "ConductorError",
    "ConfigurationError",
    "DocumentSearch",
    "END",
    "ErrorKind",
    "ExecutionEnvironment",
    "ExecutionSession",
    "FAIL",
    "FailureRecord",
    "FieldSpec",
    "GraphBuilder",
    "GraphDefinition",
    "GraphDefinitionError",
    "GraphEngine",
    "InboundMessage",
    "InterruptController",
    "LanguageModel",
    "Message",
    "MessageCompactor",
    "ModelSummaryCompactor",
    "NodeContext",
    "NotSuspended",
    "OrchestrationCoordinator",
    "PendingInterrupt",
    "Plan",
    "PlanningSession",
    "QualityGate",
    "Reducer",
    "ReviewVerdict",
    "RouteOutcome",
    "RunHandle",
    "RunNotActive",
    "RunResult",
    "RunStatus",
    "RuntimeSettings",
    "START",
    "SourceHostingClient",
    "StaleParent",
    "StateCorruption",
    "StateSchema",
    "Step",
    "SubgraphRef",
    "TaskSession",
    "ThreadRecord",
    "ToolCancelled",
    "ToolGateway",
    "ToolInvocationError",
    "TruncatingCompactor",
    "get_version",
]
