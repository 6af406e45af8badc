"""Single-node test execution for interactive debugging."""
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from nodeflow.errors import NotFoundError
from nodeflow.models import TRIGGER_NODE_TYPES
from nodeflow.observability import get_logger, with_trace_context
from nodeflow.registry import ExecutorRegistry
from nodeflow.runtime.cleanup import CleanupScope
from nodeflow.runtime.contracts import ExecutorInput
from nodeflow.runtime.publisher import NullStatusPublisher
from nodeflow.runtime.steps import InlineStepRunner
from nodeflow.storage.repositories import WorkflowRepository

logger = get_logger(__name__)


class NodeTestErrorType(str, Enum):
    """Typed failures of a node test."""

    NOT_FOUND = "NOT_FOUND"
    UNAUTHORIZED = "UNAUTHORIZED"
    UNSUPPORTED_NODE_CLASS = "UNSUPPORTED_NODE_CLASS"
    EXECUTION_ERROR = "EXECUTION_ERROR"


class NodeTestResult(BaseModel):
    """Outcome of testing one node."""

    success: bool = Field(..., description="Whether the node ran")
    output: Any = Field(default=None, description="Declared output variable or merged context")
    error: str | None = Field(default=None, description="Error message")
    error_type: NodeTestErrorType | None = Field(default=None, description="Failure class")

    @classmethod
    def failed(cls, error_type: NodeTestErrorType, error: str) -> "NodeTestResult":
        return cls(success=False, error=error, error_type=error_type)


def execute_node_for_test(
    workflow_id: str,
    node_id: str,
    caller_id: str,
    mock_context: dict[str, Any] | None = None,
    *,
    workflows: WorkflowRepository,
    registry: ExecutorRegistry,
) -> NodeTestResult:
    """
    Run one node in isolation against a mock context.

    Steps run inline without checkpoints, status events are discarded and
    no execution record is written.

    Args:
        workflow_id: Workflow owning the node
        node_id: Node to run
        caller_id: User asking for the test
        mock_context: Values standing in for upstream outputs
        workflows: Workflow repository
        registry: Executor registry used for real runs

    Returns:
        The node's declared output variable, or the merged context when it
        declares none, or a typed failure
    """
    try:
        graph = workflows.load_graph(workflow_id)
    except NotFoundError:
        return NodeTestResult.failed(NodeTestErrorType.NOT_FOUND, "Node not found")

    node = graph.get_node(node_id)
    if node is None:
        return NodeTestResult.failed(NodeTestErrorType.NOT_FOUND, "Node not found")
    if graph.owner_id != caller_id:
        return NodeTestResult.failed(NodeTestErrorType.UNAUTHORIZED, "Unauthorized")
    if node.type in TRIGGER_NODE_TYPES:
        return NodeTestResult.failed(
            NodeTestErrorType.UNSUPPORTED_NODE_CLASS,
            "Trigger nodes cannot be tested individually",
        )

    executor = registry.get_executor(node.type)
    extra = with_trace_context(workflow_id=workflow_id, node_id=node_id, node_type=node.type.value)
    try:
        with CleanupScope() as scope:
            result = executor.execute(
                ExecutorInput(
                    data=node.data,
                    node_id=node.id,
                    user_id=caller_id,
                    context=dict(mock_context or {}),
                    step_runner=InlineStepRunner(),
                    status_publisher=NullStatusPublisher(),
                    node_type=node.type,
                    credential_id=node.credential_id,
                    workflow=graph,
                    cleanup=scope,
                )
            )
    except Exception as e:
        logger.info("Node test failed", extra={**extra, "error": str(e)})
        return NodeTestResult.failed(NodeTestErrorType.EXECUTION_ERROR, str(e) or e.__class__.__name__)

    name = node.data.get("variableName")
    output = result[name] if name and name in result else result
    logger.info("Node test succeeded", extra=extra)
    return NodeTestResult(success=True, output=output)
