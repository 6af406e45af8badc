"""Base class for node executors."""
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Iterator, Mapping

from nodeflow.context import AGENT_NODE_ID_KEY, ExecutionContext, TemplateRenderer, get_renderer
from nodeflow.errors import (
    ConfigurationError,
    NodeExecutionError,
    TransientError,
    UnregisteredTypeError,
    WorkflowError,
)
from nodeflow.observability import get_logger, with_trace_context
from nodeflow.runtime.contracts import ExecutorInput, NodeStatus
from nodeflow.runtime.retry import is_transient_exc

if TYPE_CHECKING:
    from nodeflow.storage.credentials import CredentialStore

logger = get_logger(__name__)


class NodeExecutor(ABC):
    """
    Runtime behaviour of one node type.

    Subclasses validate their own fields, render templated fields against the
    incoming context, perform their side effect under a named step, and
    return a new context with their result bound under ``variableName``.
    """

    #: Human label used in error messages
    label: str = "Node"

    def __init__(self, renderer: TemplateRenderer | None = None):
        self.renderer = renderer or get_renderer()

    @abstractmethod
    def execute(self, params: ExecutorInput) -> ExecutionContext:
        """Run the node and return the updated context."""

    def publish(self, params: ExecutorInput, status: NodeStatus, node_id: str | None = None) -> None:
        """Publish a status event; failures are logged, never raised."""
        try:
            params.status_publisher.publish(node_id or params.node_id, status, params.node_type)
        except Exception as e:
            logger.warning(
                "Status publish failed",
                extra=with_trace_context(
                    node_id=node_id or params.node_id, status=str(status), error=str(e)
                ),
            )

    @contextmanager
    def reporting(self, params: ExecutorInput, node_id: str | None = None) -> Iterator[None]:
        """
        Publish loading before the body and success or error after it.

        Errors that are not already ``WorkflowError`` are wrapped in
        ``NodeExecutionError`` with the cause chained.
        """
        self.publish(params, NodeStatus.LOADING, node_id)
        try:
            yield
        except (WorkflowError, UnregisteredTypeError):
            self.publish(params, NodeStatus.ERROR, node_id)
            raise
        except Exception as e:
            self.publish(params, NodeStatus.ERROR, node_id)
            raise NodeExecutionError(f"{self.label} execution failed: {e}") from e
        self.publish(params, NodeStatus.SUCCESS, node_id)

    def require(self, data: Mapping[str, Any], *fields: str) -> None:
        """Raise ``ConfigurationError`` naming the first missing field."""
        for name in fields:
            value = data.get(name)
            if value is None or (isinstance(value, str) and not value.strip()):
                raise ConfigurationError(f'{self.label} node: "{name}" is required')

    def render(self, template: Any, context: Mapping[str, Any]) -> str:
        if template is None:
            return ""
        return self.renderer.render(str(template), context)

    def resolve_secret(self, credentials: "CredentialStore", params: ExecutorInput) -> str:
        """Decrypted credential for the node, scoped to the workflow owner."""
        credential_id = params.data.get("credentialId") or params.credential_id
        if not credential_id:
            raise ConfigurationError(f'{self.label} node: "credentialId" is required')
        return credentials.resolve(str(credential_id), params.user_id)

    def failure(self, e: Exception, action: str) -> WorkflowError:
        """Classify an exception raised by a client library."""
        if is_transient_exc(e):
            return TransientError(f"{self.label} {action} failed transiently: {e}")
        return NodeExecutionError(f"{self.label} {action} failed: {e}")


def variable_name(executor: NodeExecutor, data: Mapping[str, Any]) -> str:
    """The configured output variable, validated."""
    executor.require(data, "variableName")
    return str(data["variableName"])


def step_name(action: str, params: ExecutorInput, *parts: Any) -> str:
    """
    Name of a step unique within the run.

    Inside an agent hub the hub's id is included, so a node wired into
    several hubs checkpoints each hub's work separately.
    """
    names = [action, params.node_id]
    agent_node_id = params.context.get(AGENT_NODE_ID_KEY)
    if agent_node_id:
        names.append(str(agent_node_id))
    names.extend(str(part) for part in parts)
    return ":".join(names)
