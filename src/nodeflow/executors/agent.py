"""
AI agent hub.

The hub composes the adapter nodes wired into it. They are found from the
graph, not from execution order, and invoked through the executor registry
as ordinary functions:

1. the tool provider (optional) publishes a tool set,
2. the model node's user prompt is rendered against the pipeline context,
3. the conversation store (optional) returns prior turns,
4. the rendered prompt is saved as a user turn,
5. the chat model replies to that same rendered prompt, calling tools
   through the provider if offered,
6. the reply is saved as an assistant turn.
"""
from dataclasses import dataclass
from typing import Any

from nodeflow.context import (
    AGENT_NODE_ID_KEY,
    CHAT_HISTORY_KEY,
    CHAT_MODEL_RESPONSE_KEY,
    DATABASE_OPERATION_KEY,
    DATABASE_RESULT_KEY,
    MESSAGE_ROLE_KEY,
    MESSAGE_TO_SAVE_KEY,
    TOOL_CALL_KEY,
    TOOL_SET_KEY,
    TOOLS_OPERATION_KEY,
    TOOLS_RESULT_KEY,
    USER_PROMPT_KEY,
    WORKFLOW_ID_KEY,
    ExecutionContext,
    TemplateRenderer,
    get_renderer,
    strip_scratch,
    with_variable,
    with_variables,
)
from nodeflow.errors import ConfigurationError, NodeExecutionError, TransientError
from nodeflow.executors.base import NodeExecutor, variable_name
from nodeflow.models import (
    CHAT_MODEL_NODE_TYPES,
    DATABASE_NODE_TYPES,
    TOOL_NODE_TYPES,
    Node,
    WorkflowGraph,
)
from nodeflow.observability import get_logger, with_trace_context
from nodeflow.registry import ExecutorRegistry
from nodeflow.runtime.cleanup import CleanupScope
from nodeflow.runtime.contracts import ExecutorInput

logger = get_logger(__name__)

MODEL_SLOT = "ai-model"
DATABASE_SLOT = "database"
TOOLS_SLOT = "tools"

SLOT_ALLOWED_TYPES = {
    MODEL_SLOT: CHAT_MODEL_NODE_TYPES,
    DATABASE_SLOT: DATABASE_NODE_TYPES,
    TOOLS_SLOT: TOOL_NODE_TYPES,
}


@dataclass
class AgentChildren:
    """Adapter nodes resolved for one hub."""

    model: Node
    database: Node | None = None
    tools: Node | None = None


def resolve_children(graph: WorkflowGraph, hub_id: str) -> AgentChildren:
    """
    Find the model, store and tool provider wired into a hub.

    Exact slot labels are resolved first. Slots still empty afterwards fall
    back to the first connected source whose type fits the slot, which is
    how graphs saved before slot labels existed are wired.

    Raises:
        ConfigurationError: If no chat model is connected, or a node sits in
            a labeled slot its type does not belong to
    """
    sources: list[tuple[str, Node]] = []
    for conn in graph.incoming(hub_id):
        node = graph.get_node(conn.from_node_id)
        if node is not None:
            sources.append((conn.to_input, node))

    # Phase 1: exact labels, last connection wins
    slots: dict[str, Node] = {}
    for label, node in sources:
        if label in SLOT_ALLOWED_TYPES:
            slots[label] = node
    for label, node in slots.items():
        if node.type not in SLOT_ALLOWED_TYPES[label]:
            raise ConfigurationError(
                f'AI Agent node: node {node.id} of type {node.type.value} cannot fill the "{label}" slot'
            )

    # Phase 2: type-based fallback for slots still empty
    for label, allowed in SLOT_ALLOWED_TYPES.items():
        if label in slots:
            continue
        for _, node in sources:
            if node.type in allowed:
                slots[label] = node
                break

    model = slots.get(MODEL_SLOT)
    if model is None:
        raise ConfigurationError(
            "AI Agent node: No AI Model node connected. Connect a Chat Model node."
        )
    return AgentChildren(model=model, database=slots.get(DATABASE_SLOT), tools=slots.get(TOOLS_SLOT))


class AgentOrchestrator:
    """Runs the fixed child sequence for one hub invocation."""

    def __init__(self, registry: ExecutorRegistry, renderer: TemplateRenderer | None = None):
        self.registry = registry
        self.renderer = renderer or get_renderer()

    def run(self, params: ExecutorInput, output_name: str) -> ExecutionContext:
        """
        Execute the hub and bind its result under ``output_name``.

        Args:
            params: The hub's executor input
            output_name: Variable to bind the agent result to

        Returns:
            The pipeline context plus the agent result, free of scratch keys
        """
        graph = params.workflow
        if graph is None:
            raise ConfigurationError("AI Agent node: workflow graph is not available")
        children = resolve_children(graph, params.node_id)
        base = with_variables(
            params.context,
            **{WORKFLOW_ID_KEY: graph.workflow_id, AGENT_NODE_ID_KEY: params.node_id},
        )

        with CleanupScope() as scope:

            def invoke(node: Node, context: ExecutionContext, **extra: Any) -> ExecutionContext:
                executor = self.registry.get_executor(node.type)
                child = ExecutorInput(
                    data=node.data,
                    node_id=node.id,
                    user_id=params.user_id,
                    context=context,
                    step_runner=params.step_runner,
                    status_publisher=params.status_publisher,
                    node_type=node.type,
                    credential_id=node.credential_id,
                    workflow=graph,
                    cleanup=scope,
                    correlation_id=params.correlation_id,
                    **extra,
                )
                return executor.execute(child)

            # 1. Tool set
            tool_set = None
            tools_summary: dict[str, Any] | None = None
            tool_caller = None
            if children.tools is not None:
                listed = invoke(children.tools, with_variable(base, TOOLS_OPERATION_KEY, "list"))
                tool_set = listed.get(TOOL_SET_KEY)
                calls: list[dict[str, Any]] = []
                tools_summary = {**(listed.get(TOOLS_RESULT_KEY) or {}), "calls": calls}
                tools_node = children.tools

                def tool_caller(name: str, arguments: dict[str, Any]) -> str:
                    call = {"id": str(len(calls)), "name": name, "arguments": arguments}
                    out = invoke(
                        tools_node,
                        with_variables(base, **{TOOLS_OPERATION_KEY: "call", TOOL_CALL_KEY: call}),
                    )
                    result = out.get(TOOLS_RESULT_KEY) or {}
                    output = str(result.get("output", ""))
                    calls.append({"name": name, "arguments": arguments, "output": output})
                    return output

            # 2. User prompt, rendered against the pipeline context
            template = children.model.data.get("userPrompt") or ""
            user_prompt = self.renderer.render(str(template), params.context) if template else ""

            # 3. Prior turns
            history: list[dict[str, Any]] = []
            query_result: dict[str, Any] | None = None
            save_result: dict[str, Any] | None = None
            store = children.database
            if store is not None:
                queried = invoke(store, with_variable(base, DATABASE_OPERATION_KEY, "query"))
                query_result = queried.get(DATABASE_RESULT_KEY) or {}
                history = list(query_result.get("chatHistory") or [])

            # 4. Save the user turn
            if store is not None and user_prompt:
                save_result = self._save(invoke, store, base, "user", user_prompt)

            # 5. Model reply
            model_context = with_variables(
                base, **{CHAT_HISTORY_KEY: history, USER_PROMPT_KEY: user_prompt}
            )
            if tool_set:
                model_context = with_variable(model_context, TOOL_SET_KEY, tool_set)
            replied = invoke(children.model, model_context, tool_caller=tool_caller)
            response = str(replied.get(CHAT_MODEL_RESPONSE_KEY) or "")

            # 6. Save the assistant turn
            if store is not None and response:
                save_result = self._save(invoke, store, base, "assistant", response)

        # 7. Result
        result: dict[str, Any] = {
            "response": response,
            "model": children.model.data.get("model"),
            "provider": children.model.type.value,
            "chatHistoryLength": len(history),
        }
        if tools_summary is not None:
            result["toolsResult"] = tools_summary
        if query_result is not None or save_result is not None:
            location = {
                k: v
                for k, v in {**(save_result or {}), **(query_result or {})}.items()
                if k not in ("chatHistory", "saved")
            }
            result["databaseResult"] = {
                "chatHistory": (query_result or {}).get("chatHistory") or [],
                "saved": bool((save_result or {}).get("saved")),
                **location,
            }

        logger.info(
            "Agent step completed",
            extra=with_trace_context(
                correlation_id=params.correlation_id,
                workflow_id=graph.workflow_id,
                node_id=params.node_id,
                chat_history_length=len(history),
            ),
        )
        return strip_scratch(with_variable(params.context, output_name, result))

    @staticmethod
    def _save(invoke, store: Node, base: ExecutionContext, role: str, message: str) -> dict[str, Any]:
        saved = invoke(
            store,
            with_variables(
                base,
                **{
                    DATABASE_OPERATION_KEY: "save",
                    MESSAGE_TO_SAVE_KEY: message,
                    MESSAGE_ROLE_KEY: role,
                },
            ),
        )
        return saved.get(DATABASE_RESULT_KEY) or {}


class AgentExecutor(NodeExecutor):
    """Executor for the hub node type."""

    label = "AI Agent"

    def __init__(self, registry: ExecutorRegistry, **kwargs: Any):
        super().__init__(**kwargs)
        self.orchestrator = AgentOrchestrator(registry, self.renderer)

    def execute(self, params: ExecutorInput) -> ExecutionContext:
        with self.reporting(params):
            name = variable_name(self, params.data)
            try:
                return self.orchestrator.run(params, name)
            except TransientError as e:
                # Retries already happened inside the child step
                raise NodeExecutionError(f"AI Agent node: agent execution failed: {e}") from e
