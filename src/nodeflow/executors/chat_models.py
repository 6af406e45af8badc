"""
Model executors.

``ChatModelExecutor`` backs the chat-model adapter nodes the agent hub
drives: it reads the conversation history and optional tool set from
scratch keys and writes the reply to ``_chat_model_response``.
``TextGenerationExecutor`` backs the standalone provider action nodes.
"""
from typing import Any

from nodeflow.context import (
    CHAT_HISTORY_KEY,
    CHAT_MODEL_RESPONSE_KEY,
    TOOL_SET_KEY,
    USER_PROMPT_KEY,
    ExecutionContext,
    with_variable,
)
from nodeflow.errors import ConfigurationError, NodeExecutionError
from nodeflow.executors.base import NodeExecutor, step_name, variable_name
from nodeflow.executors.llm import ChatClient, ChatMessage, ChatResult, ToolSpec
from nodeflow.runtime.contracts import ExecutorInput, NodeStatus
from nodeflow.storage.credentials import CredentialStore

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."


class _ModelExecutor(NodeExecutor):
    def __init__(
        self,
        client: ChatClient,
        credentials: CredentialStore,
        default_model: str,
        label: str,
        **kwargs: Any,
    ):
        super().__init__(**kwargs)
        self.client = client
        self.credentials = credentials
        self.default_model = default_model
        self.label = label

    def system_prompt(self, params: ExecutorInput) -> str:
        template = params.data.get("systemPrompt")
        if not template:
            return DEFAULT_SYSTEM_PROMPT
        return self.render(template, params.context)

    def model_name(self, params: ExecutorInput) -> str:
        return str(params.data.get("model") or self.default_model)


class ChatModelExecutor(_ModelExecutor):
    """Chat-model adapter with an optional bounded tool-calling loop."""

    def __init__(self, *args: Any, max_tool_iterations: int = 5, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.max_tool_iterations = max_tool_iterations

    def execute(self, params: ExecutorInput) -> ExecutionContext:
        data = params.data
        with self.reporting(params):
            self.require(data, "credentialId")
            user_prompt = self.user_prompt(params)
            system = self.system_prompt(params)
            api_key = self.resolve_secret(self.credentials, params)

            messages = [
                ChatMessage(role=turn["role"], content=str(turn.get("content", "")))
                for turn in params.context.get(CHAT_HISTORY_KEY) or []
                if turn.get("role") in ("user", "assistant")
            ]
            messages.append(ChatMessage(role="user", content=user_prompt))

            result = self._generate(params, api_key, system, messages, self._tools(params))

        context = {
            k: v for k, v in params.context.items() if k not in (CHAT_HISTORY_KEY, USER_PROMPT_KEY)
        }
        return with_variable(context, CHAT_MODEL_RESPONSE_KEY, result.text)

    def user_prompt(self, params: ExecutorInput) -> str:
        """The prompt rendered by the driving hub, or this node's own render."""
        if USER_PROMPT_KEY in params.context:
            prompt = str(params.context[USER_PROMPT_KEY] or "")
        else:
            self.require(params.data, "userPrompt")
            prompt = self.render(params.data["userPrompt"], params.context)
        if not prompt.strip():
            raise ConfigurationError(f'{self.label} node: "userPrompt" is required')
        return prompt

    def _tools(self, params: ExecutorInput) -> list[ToolSpec] | None:
        tool_set = params.context.get(TOOL_SET_KEY)
        if not tool_set or params.tool_caller is None or not self.client.supports_tools:
            return None
        return [
            ToolSpec(
                name=tool["name"],
                description=tool.get("description") or "",
                input_schema=tool.get("inputSchema") or {"type": "object", "properties": {}},
            )
            for tool in tool_set.get("tools", [])
        ]

    def _generate(
        self,
        params: ExecutorInput,
        api_key: str,
        system: str,
        messages: list[ChatMessage],
        tools: list[ToolSpec] | None,
    ) -> ChatResult:
        model = self.model_name(params)
        for turn in range(self.max_tool_iterations + 1):
            snapshot = list(messages)
            raw = params.step_runner.run_generation(
                step_name("chat-model", params, turn),
                lambda: self.client.complete(api_key, model, system, snapshot, tools).model_dump(),
                model=model,
                provider=self.client.provider,
                node_id=params.node_id,
            )
            result = ChatResult.model_validate(raw)
            if not tools or not result.tool_calls:
                return result
            if turn == self.max_tool_iterations:
                break

            self.publish(params, NodeStatus.TOOL_CALLING)
            messages.append(
                ChatMessage(role="assistant", content=result.text, tool_calls=result.tool_calls)
            )
            for call in result.tool_calls:
                output = params.tool_caller(call.name, call.arguments)
                messages.append(ChatMessage(role="tool", content=output, tool_call_id=call.id))

        raise NodeExecutionError(
            f"{self.label} node: model kept calling tools after {self.max_tool_iterations} rounds"
        )


class TextGenerationExecutor(_ModelExecutor):
    """Standalone provider action: one prompt in, ``{<responseKey>: text}`` out."""

    def __init__(self, *args: Any, response_key: str, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.response_key = response_key

    def execute(self, params: ExecutorInput) -> ExecutionContext:
        data = params.data
        with self.reporting(params):
            name = variable_name(self, data)
            self.require(data, "userPrompt")
            system = self.system_prompt(params)
            user_prompt = self.render(data["userPrompt"], params.context)
            api_key = self.resolve_secret(self.credentials, params)
            model = self.model_name(params)

            raw = params.step_runner.run_generation(
                f"{self.client.provider}-generate-text:{params.node_id}",
                lambda: self.client.complete(
                    api_key, model, system, [ChatMessage(role="user", content=user_prompt)]
                ).model_dump(),
                model=model,
                provider=self.client.provider,
                node_id=params.node_id,
            )
            text = ChatResult.model_validate(raw).text
        return with_variable(params.context, name, {self.response_key: text})
