"""Executor registry."""
from typing import TYPE_CHECKING, Iterator

from nodeflow.errors import UnregisteredTypeError
from nodeflow.models import NodeType
from nodeflow.observability import get_logger

if TYPE_CHECKING:
    from nodeflow.executors.base import NodeExecutor

logger = get_logger(__name__)


class ExecutorRegistry:
    """Explicit mapping from node type to the executor that runs it.

    Built once at startup and passed by reference to whatever dispatches
    nodes, so tests can swap in fake executors.
    """

    def __init__(self) -> None:
        self._executors: dict[NodeType, "NodeExecutor"] = {}

    def register(self, node_type: NodeType, executor: "NodeExecutor") -> None:
        """
        Register an executor for a node type, replacing any previous one.

        Args:
            node_type: Node type tag
            executor: Executor instance
        """
        node_type = NodeType(node_type)
        if node_type in self._executors:
            logger.warning(f"Executor replaced: {node_type.value}")
        self._executors[node_type] = executor
        logger.debug(f"Executor registered: {node_type.value}")

    def get_executor(self, node_type: NodeType) -> "NodeExecutor":
        """
        Look up the executor for a node type.

        Raises:
            UnregisteredTypeError: If nothing is registered for the type
        """
        try:
            return self._executors[NodeType(node_type)]
        except (KeyError, ValueError):
            raise UnregisteredTypeError(str(getattr(node_type, "value", node_type))) from None

    def registered_types(self) -> list[NodeType]:
        return list(self._executors)

    def __contains__(self, node_type: object) -> bool:
        return node_type in self._executors

    def __iter__(self) -> Iterator[NodeType]:
        return iter(self._executors)

    def __len__(self) -> int:
        return len(self._executors)
