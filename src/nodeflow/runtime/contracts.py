"""Runtime contracts shared by the orchestrators and executors."""
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Protocol, TypeVar, runtime_checkable

from nodeflow.context import ExecutionContext
from nodeflow.models import NodeType, WorkflowGraph
from nodeflow.runtime.cleanup import CleanupScope

T = TypeVar("T")


class NodeStatus(str, Enum):
    """Status events published for a node."""

    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"
    TOOL_CALLING = "tool_calling"


@runtime_checkable
class StepRunner(Protocol):
    """Runs named units of side-effecting work.

    Implementations may checkpoint results so a replay of the same run
    skips steps that already completed.
    """

    def run(self, step_name: str, fn: Callable[[], T]) -> T:
        ...

    def run_generation(self, step_name: str, fn: Callable[[], T], **telemetry: Any) -> T:
        ...


@runtime_checkable
class StatusPublisher(Protocol):
    """Fire-and-forget node status channel. Must never raise."""

    def publish(
        self,
        node_id: str,
        status: NodeStatus,
        node_type: NodeType | None = None,
    ) -> None:
        ...


@dataclass
class ExecutorInput:
    """Everything an executor receives for one invocation."""

    data: dict[str, Any]
    node_id: str
    user_id: str
    context: ExecutionContext
    step_runner: StepRunner
    status_publisher: StatusPublisher
    node_type: NodeType | None = None
    credential_id: str | None = None
    workflow: WorkflowGraph | None = None
    cleanup: CleanupScope = field(default_factory=CleanupScope)
    correlation_id: str | None = None
    # Set by the agent hub when a tool provider is connected
    tool_caller: Callable[[str, dict[str, Any]], str] | None = None

    def with_context(self, context: ExecutionContext) -> "ExecutorInput":
        """Copy of this input carrying a different context."""
        return replace(self, context=context)
