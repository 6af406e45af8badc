"""
MCP tool provider.

Talks JSON-RPC to an MCP server over HTTP. Wired into an agent hub it is
driven through scratch keys: ``_tools_operation`` is ``list`` (publish the
tool set for the model) or ``call`` (run ``_tool_call``). Dispatched on its
own it calls ``toolName`` with the rendered ``toolArguments`` JSON, or lists
the server's tools when no tool name is configured.
"""
import json
from abc import ABC, abstractmethod
from typing import Any, Callable

import httpx

from nodeflow.context import (
    TOOL_CALL_KEY,
    TOOL_SET_KEY,
    TOOLS_OPERATION_KEY,
    TOOLS_RESULT_KEY,
    ExecutionContext,
    with_variable,
    with_variables,
)
from nodeflow.errors import ConfigurationError, NodeExecutionError, TransientError
from nodeflow.executors.base import NodeExecutor, step_name, variable_name
from nodeflow.observability import get_logger
from nodeflow.runtime.contracts import ExecutorInput
from nodeflow.runtime.retry import is_transient_status
from nodeflow.storage.credentials import CredentialStore

logger = get_logger(__name__)

MCP_PROTOCOL_VERSION = "2024-11-05"


class MCPTransport(ABC):
    """Base class for MCP transport implementations"""

    @abstractmethod
    def send_request(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        """Send MCP JSON-RPC request and return response"""

    @abstractmethod
    def close(self) -> None:
        """Close the connection"""


class HttpJsonRpcTransport(MCPTransport):
    """Posts JSON-RPC requests to the server's ``/message`` endpoint."""

    def __init__(self, url: str, client: httpx.Client, timeout: float = 30):
        self.url = url.rstrip("/")
        self.client = client
        self.timeout = timeout
        self.message_id = 1
        self.message_endpoint = f"{self.url}/message"

    def send_request(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        request = {
            "jsonrpc": "2.0",
            "id": self.message_id,
            "method": method,
            "params": params,
        }
        self.message_id += 1

        logger.debug(f"MCP - Sending {method} to {self.message_endpoint}")

        try:
            response = self.client.post(
                self.message_endpoint,
                json=request,
                timeout=self.timeout,
                follow_redirects=True,
            )
        except httpx.TransportError as e:
            raise TransientError(f"MCP request failed: {e}") from e

        if response.status_code >= 400:
            message = f"MCP server returned {response.status_code} for {method}"
            if is_transient_status(response.status_code):
                raise TransientError(message)
            raise NodeExecutionError(message)

        result = response.json()
        if "error" in result:
            raise NodeExecutionError(f"MCP error: {result['error']}")
        return result.get("result") or {}

    def close(self) -> None:
        self.client.close()


def create_transport(url: str, headers: dict[str, str], timeout: float = 30) -> MCPTransport:
    """Open a transport and run the MCP initialize handshake."""
    client = httpx.Client(headers=headers, timeout=timeout)
    transport = HttpJsonRpcTransport(url, client, timeout)
    try:
        transport.send_request(
            "initialize",
            {
                "protocolVersion": MCP_PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": {"name": "nodeflow", "version": "0.1.0"},
            },
        )
    except Exception:
        transport.close()
        raise
    return transport


def tool_output_text(result: dict[str, Any]) -> str:
    """Text a model sees for a ``tools/call`` result."""
    parts = [
        block.get("text", "")
        for block in result.get("content") or []
        if block.get("type") == "text"
    ]
    if parts:
        return "\n".join(parts)
    return json.dumps(result)


class McpToolsExecutor(NodeExecutor):
    label = "MCP Tools"

    def __init__(
        self,
        credentials: CredentialStore | None = None,
        transport_factory: Callable[[str, dict[str, str]], MCPTransport] = create_transport,
        **kwargs: Any,
    ):
        super().__init__(**kwargs)
        self.credentials = credentials
        self.transport_factory = transport_factory

    def execute(self, params: ExecutorInput) -> ExecutionContext:
        operation = params.context.get(TOOLS_OPERATION_KEY)
        with self.reporting(params):
            self.require(params.data, "serverUrl")
            if operation == "list":
                return self._hub_list(params)
            if operation == "call":
                return self._hub_call(params)
            if operation is not None:
                raise ConfigurationError(f"MCP Tools node: unknown operation {operation!r}")
            return self._pipeline(params)

    def _transport(self, params: ExecutorInput) -> MCPTransport:
        url = str(params.data["serverUrl"])
        headers = {str(k): str(v) for k, v in (params.data.get("headers") or {}).items()}
        if self.credentials is not None and (params.data.get("credentialId") or params.credential_id):
            headers["Authorization"] = f"Bearer {self.resolve_secret(self.credentials, params)}"
        return params.cleanup.resource(
            f"mcp:{params.node_id}:{url}",
            lambda: self.transport_factory(url, headers),
            lambda transport: transport.close(),
        )

    def _list_tools(self, params: ExecutorInput) -> list[dict[str, Any]]:
        def list_tools() -> list[dict[str, Any]]:
            result = self._transport(params).send_request("tools/list", {})
            return [
                {
                    "name": tool["name"],
                    "description": tool.get("description") or "",
                    "inputSchema": tool.get("inputSchema") or {"type": "object", "properties": {}},
                }
                for tool in result.get("tools", [])
            ]

        return params.step_runner.run(step_name("mcp-list-tools", params), list_tools)

    def _call_tool(self, params: ExecutorInput, name: str, arguments: dict[str, Any], *step_parts: Any) -> dict:
        return params.step_runner.run(
            step_name("mcp-call-tool", params, *step_parts),
            lambda: self._transport(params).send_request(
                "tools/call", {"name": name, "arguments": arguments}
            ),
        )

    def _hub_list(self, params: ExecutorInput) -> ExecutionContext:
        tools = self._list_tools(params)
        server_url = str(params.data["serverUrl"])
        return with_variables(
            params.context,
            **{
                TOOL_SET_KEY: {"nodeId": params.node_id, "serverUrl": server_url, "tools": tools},
                TOOLS_RESULT_KEY: {
                    "serverUrl": server_url,
                    "tools": [tool["name"] for tool in tools],
                },
            },
        )

    def _hub_call(self, params: ExecutorInput) -> ExecutionContext:
        call = params.context.get(TOOL_CALL_KEY) or {}
        if not call.get("name"):
            raise ConfigurationError("MCP Tools node: no tool call requested")
        result = self._call_tool(
            params, call["name"], call.get("arguments") or {}, call.get("id", "")
        )
        return with_variable(
            params.context,
            TOOLS_RESULT_KEY,
            {"name": call["name"], "result": result, "output": tool_output_text(result)},
        )

    def _pipeline(self, params: ExecutorInput) -> ExecutionContext:
        data = params.data
        name = variable_name(self, data)
        tool_name = data.get("toolName")
        if not tool_name:
            return with_variable(params.context, name, {"tools": self._list_tools(params)})

        arguments: dict[str, Any] = {}
        if data.get("toolArguments"):
            rendered = self.render(data["toolArguments"], params.context)
            try:
                arguments = json.loads(rendered) if rendered.strip() else {}
            except json.JSONDecodeError as e:
                raise ConfigurationError(f"MCP Tools node: toolArguments is not valid JSON: {e}") from e
            if not isinstance(arguments, dict):
                raise ConfigurationError("MCP Tools node: toolArguments must be a JSON object")

        result = self._call_tool(params, str(tool_name), arguments)
        return with_variable(params.context, name, {"toolResult": result})
