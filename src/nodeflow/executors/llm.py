"""Chat completion clients for the supported model providers."""
import json
from abc import ABC, abstractmethod
from typing import Any, Literal

import httpx
from pydantic import BaseModel, Field

from nodeflow.errors import NodeExecutionError, TransientError
from nodeflow.observability import get_logger
from nodeflow.runtime.retry import is_transient_status

logger = get_logger(__name__)


class ToolCall(BaseModel):
    """A tool invocation requested by the model."""

    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class ToolSpec(BaseModel):
    """A tool the model may call."""

    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )


class ChatMessage(BaseModel):
    """One conversation message."""

    role: Literal["user", "assistant", "tool"]
    content: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    tool_call_id: str | None = None


class ChatResult(BaseModel):
    """Normalized model reply."""

    text: str = ""
    model: str
    provider: str
    tool_calls: list[ToolCall] = Field(default_factory=list)
    usage: dict[str, int | None] = Field(default_factory=dict)


class ChatClient(ABC):
    """Provider-specific chat completion call over httpx."""

    provider: str = ""
    supports_tools: bool = True

    def __init__(self, base_url: str, timeout_s: float = 60.0, max_tokens: int = 4096):
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.max_tokens = max_tokens

    @abstractmethod
    def complete(
        self,
        api_key: str,
        model: str,
        system: str,
        messages: list[ChatMessage],
        tools: list[ToolSpec] | None = None,
    ) -> ChatResult:
        """Run one completion."""

    def _post(
        self,
        url: str,
        body: dict[str, Any],
        headers: dict[str, str],
        params: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        timeout = httpx.Timeout(connect=5.0, read=self.timeout_s, write=5.0, pool=5.0)
        try:
            with httpx.Client(timeout=timeout) as client:
                response = client.post(url, json=body, headers=headers, params=params)
        except httpx.TransportError as e:
            raise TransientError(f"{self.provider} request failed: {e}") from e

        if response.status_code >= 400:
            message = f"{self.provider} API returned {response.status_code}: {response.text[:500]}"
            if is_transient_status(response.status_code):
                raise TransientError(message)
            raise NodeExecutionError(message)
        return response.json()


class OpenAICompatibleClient(ChatClient):
    """OpenAI chat completions API; also serves OpenRouter."""

    def __init__(self, base_url: str, provider: str = "openai", **kwargs: Any):
        super().__init__(base_url, **kwargs)
        self.provider = provider

    def complete(self, api_key, model, system, messages, tools=None) -> ChatResult:
        wire: list[dict[str, Any]] = [{"role": "system", "content": system}]
        for message in messages:
            if message.role == "tool":
                wire.append(
                    {
                        "role": "tool",
                        "tool_call_id": message.tool_call_id,
                        "content": message.content,
                    }
                )
            elif message.tool_calls:
                wire.append(
                    {
                        "role": "assistant",
                        "content": message.content or None,
                        "tool_calls": [
                            {
                                "id": call.id,
                                "type": "function",
                                "function": {
                                    "name": call.name,
                                    "arguments": json.dumps(call.arguments),
                                },
                            }
                            for call in message.tool_calls
                        ],
                    }
                )
            else:
                wire.append({"role": message.role, "content": message.content})

        body: dict[str, Any] = {
            "model": model,
            "messages": wire,
            "max_tokens": self.max_tokens,
        }
        if tools:
            body["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": tool.input_schema,
                    },
                }
                for tool in tools
            ]

        data = self._post(
            f"{self.base_url}/chat/completions",
            body,
            {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
        )

        choices = data.get("choices") or [{}]
        message = choices[0].get("message") or {}
        calls = []
        for raw in message.get("tool_calls") or []:
            function = raw.get("function") or {}
            try:
                arguments = json.loads(function.get("arguments") or "{}")
            except json.JSONDecodeError:
                arguments = {}
            calls.append(ToolCall(id=raw.get("id", ""), name=function.get("name", ""), arguments=arguments))

        usage = data.get("usage") or {}
        return ChatResult(
            text=message.get("content") or "",
            model=data.get("model") or model,
            provider=self.provider,
            tool_calls=calls,
            usage={
                "input_tokens": usage.get("prompt_tokens"),
                "output_tokens": usage.get("completion_tokens"),
            },
        )


class AnthropicClient(ChatClient):
    """Anthropic Messages API."""

    provider = "anthropic"

    def __init__(self, base_url: str, version: str = "2023-06-01", **kwargs: Any):
        super().__init__(base_url, **kwargs)
        self.version = version

    def complete(self, api_key, model, system, messages, tools=None) -> ChatResult:
        wire: list[dict[str, Any]] = []
        for message in messages:
            if message.role == "tool":
                wire.append(
                    {
                        "role": "user",
                        "content": [
                            {
                                "type": "tool_result",
                                "tool_use_id": message.tool_call_id,
                                "content": message.content,
                            }
                        ],
                    }
                )
            elif message.tool_calls:
                blocks: list[dict[str, Any]] = []
                if message.content:
                    blocks.append({"type": "text", "text": message.content})
                blocks.extend(
                    {"type": "tool_use", "id": call.id, "name": call.name, "input": call.arguments}
                    for call in message.tool_calls
                )
                wire.append({"role": "assistant", "content": blocks})
            else:
                wire.append({"role": message.role, "content": message.content})

        body: dict[str, Any] = {
            "model": model,
            "max_tokens": self.max_tokens,
            "system": system,
            "messages": wire,
        }
        if tools:
            body["tools"] = [
                {"name": t.name, "description": t.description, "input_schema": t.input_schema}
                for t in tools
            ]

        data = self._post(
            f"{self.base_url}/v1/messages",
            body,
            {
                "x-api-key": api_key,
                "anthropic-version": self.version,
                "content-type": "application/json",
            },
        )

        text_parts = []
        calls = []
        for block in data.get("content", []):
            if block.get("type") == "text":
                text_parts.append(block.get("text", ""))
            elif block.get("type") == "tool_use":
                calls.append(
                    ToolCall(id=block.get("id", ""), name=block.get("name", ""), arguments=block.get("input") or {})
                )

        usage = data.get("usage", {})
        return ChatResult(
            text="".join(text_parts),
            model=data.get("model") or model,
            provider=self.provider,
            tool_calls=calls,
            usage={
                "input_tokens": usage.get("input_tokens"),
                "output_tokens": usage.get("output_tokens"),
            },
        )


class GeminiClient(ChatClient):
    """Google Gemini generateContent API. Tool calling is not wired."""

    provider = "gemini"
    supports_tools = False

    def complete(self, api_key, model, system, messages, tools=None) -> ChatResult:
        if tools:
            logger.warning("Gemini client ignores tools", extra={"tool_count": len(tools)})

        contents = [
            {
                "role": "model" if message.role == "assistant" else "user",
                "parts": [{"text": message.content}],
            }
            for message in messages
            if message.role != "tool"
        ]
        body = {
            "systemInstruction": {"parts": [{"text": system}]},
            "contents": contents,
            "generationConfig": {"maxOutputTokens": self.max_tokens},
        }

        data = self._post(
            f"{self.base_url}/models/{model}:generateContent",
            body,
            {"Content-Type": "application/json"},
            params={"key": api_key},
        )

        candidates = data.get("candidates") or [{}]
        parts = (candidates[0].get("content") or {}).get("parts") or []
        usage = data.get("usageMetadata") or {}
        return ChatResult(
            text="".join(part.get("text", "") for part in parts),
            model=model,
            provider=self.provider,
            usage={
                "input_tokens": usage.get("promptTokenCount"),
                "output_tokens": usage.get("candidatesTokenCount"),
            },
        )
