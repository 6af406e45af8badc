"""
Conversation store adapters.

A conversation store keeps ``(workflow_id, agent_node_id, role, content)``
turns. Wired into an agent hub it is driven through scratch keys:
``_database_operation`` selects ``query`` or ``save`` and the result lands
in ``_database_result``. Dispatched on its own it queries the history and
binds it under ``variableName``.
"""
from abc import abstractmethod
from typing import Any

from nodeflow.context import (
    AGENT_NODE_ID_KEY,
    DATABASE_OPERATION_KEY,
    DATABASE_RESULT_KEY,
    MESSAGE_ROLE_KEY,
    MESSAGE_TO_SAVE_KEY,
    WORKFLOW_ID_KEY,
    ExecutionContext,
    with_variable,
)
from nodeflow.errors import ConfigurationError
from nodeflow.executors.base import NodeExecutor, variable_name
from nodeflow.runtime.contracts import ExecutorInput
from nodeflow.storage.credentials import CredentialStore

DEFAULT_CONTEXT_WINDOW = 20
DEFAULT_LOCATION = "nodeflow_chat_histories"


class ConversationStoreExecutor(NodeExecutor):
    """Base for chat history stores. Subclasses implement query and save."""

    #: Short name used in step names
    service: str = "store"
    #: Result key naming where the history lives (``tableName``, ``keyPrefix``)
    location_key: str = "location"
    #: Node data field configuring that location
    location_field: str = "location"

    def __init__(self, credentials: CredentialStore, **kwargs: Any):
        super().__init__(**kwargs)
        self.credentials = credentials

    @abstractmethod
    def query_history(
        self, data: dict[str, Any], secret: str, location: str, workflow_id: str, agent_node_id: str, limit: int
    ) -> list[dict[str, str]]:
        """Trailing ``limit`` turns, oldest first."""

    @abstractmethod
    def save_message(
        self, data: dict[str, Any], secret: str, location: str, workflow_id: str, agent_node_id: str, role: str, content: str
    ) -> None:
        """Append one turn."""

    def location(self, data: dict[str, Any]) -> str:
        return str(data.get(self.location_field) or DEFAULT_LOCATION)

    def execute(self, params: ExecutorInput) -> ExecutionContext:
        data = params.data
        context = params.context
        operation = context.get(DATABASE_OPERATION_KEY)
        with self.reporting(params):
            output_name = None if operation else variable_name(self, data)
            self.require(data, "credentialId", "host")
            secret = self.resolve_secret(self.credentials, params)
            location = self.location(data)
            window = self._window(data)
            workflow_id = str(
                context.get(WORKFLOW_ID_KEY)
                or (params.workflow.workflow_id if params.workflow else "")
            )
            agent_node_id = str(context.get(AGENT_NODE_ID_KEY) or params.node_id)

            operation = operation or "query"
            if operation == "query":

                def query() -> dict[str, Any]:
                    history = self.query_history(
                        data, secret, location, workflow_id, agent_node_id, window
                    )
                    return {"chatHistory": history, "saved": False, self.location_key: location}

                result = params.step_runner.run(
                    f"{self.service}-query:{params.node_id}:{agent_node_id}", query
                )
            elif operation == "save":
                role = str(context.get(MESSAGE_ROLE_KEY) or "user")
                message = str(context.get(MESSAGE_TO_SAVE_KEY) or "")

                def save() -> dict[str, Any]:
                    self.save_message(data, secret, location, workflow_id, agent_node_id, role, message)
                    return {"chatHistory": [], "saved": True, self.location_key: location}

                result = params.step_runner.run(
                    f"{self.service}-save:{params.node_id}:{agent_node_id}:{role}", save
                )
            else:
                raise ConfigurationError(f"{self.label} node: unknown operation {operation!r}")

        if output_name is not None:
            return with_variable(context, output_name, result)
        return with_variable(context, DATABASE_RESULT_KEY, result)

    def _window(self, data: dict[str, Any]) -> int:
        raw = data.get("contextWindow") or DEFAULT_CONTEXT_WINDOW
        try:
            window = int(raw)
        except (TypeError, ValueError):
            raise ConfigurationError(f'{self.label} node: "contextWindow" must be a number') from None
        if window <= 0:
            raise ConfigurationError(f'{self.label} node: "contextWindow" must be positive')
        return window
