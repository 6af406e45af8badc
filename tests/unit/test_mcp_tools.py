"""Unit tests for the MCP tool provider."""
import json

import httpx
import pytest

from nodeflow.context import (
    AGENT_NODE_ID_KEY,
    TOOL_CALL_KEY,
    TOOL_SET_KEY,
    TOOLS_OPERATION_KEY,
    TOOLS_RESULT_KEY,
)
from nodeflow.errors import ConfigurationError, NodeExecutionError, TransientError
from nodeflow.executors.mcp_tools import (
    HttpJsonRpcTransport,
    MCPTransport,
    McpToolsExecutor,
    tool_output_text,
)
from nodeflow.runtime import CheckpointedStepRunner, CleanupScope

TOOLS = [
    {
        "name": "lookup",
        "description": "Look up a record",
        "inputSchema": {"type": "object", "properties": {"q": {"type": "string"}}},
    },
    {"name": "ping"},
]


class FakeTransport(MCPTransport):
    def __init__(self):
        self.requests = []
        self.closed = 0

    def send_request(self, method, params):
        self.requests.append((method, params))
        if method == "tools/list":
            return {"tools": TOOLS}
        if method == "tools/call":
            return {"content": [{"type": "text", "text": f"result for {params['arguments'].get('q')}"}]}
        return {}

    def close(self):
        self.closed += 1


@pytest.fixture
def transports():
    created = []

    def factory(url, headers):
        transport = FakeTransport()
        transport.url = url
        transport.headers = headers
        created.append(transport)
        return transport

    factory.created = created
    return factory


class TestMcpToolsExecutor:
    """Test hub and pipeline modes."""

    def test_hub_list_publishes_tool_set(self, make_input, transports):
        executor = McpToolsExecutor(transport_factory=transports)
        params = make_input(
            {"serverUrl": "http://mcp.test"},
            context={TOOLS_OPERATION_KEY: "list"},
            node_id="tools",
        )

        result = executor.execute(params)

        tool_set = result[TOOL_SET_KEY]
        assert tool_set["nodeId"] == "tools"
        assert tool_set["serverUrl"] == "http://mcp.test"
        assert [t["name"] for t in tool_set["tools"]] == ["lookup", "ping"]
        assert tool_set["tools"][1]["inputSchema"] == {"type": "object", "properties": {}}
        assert result[TOOLS_RESULT_KEY] == {"serverUrl": "http://mcp.test", "tools": ["lookup", "ping"]}

    def test_hub_call_runs_requested_tool(self, make_input, transports):
        executor = McpToolsExecutor(transport_factory=transports)
        params = make_input(
            {"serverUrl": "http://mcp.test"},
            context={
                TOOLS_OPERATION_KEY: "call",
                TOOL_CALL_KEY: {"id": "0", "name": "lookup", "arguments": {"q": "ada"}},
            },
        )

        result = executor.execute(params)

        assert result[TOOLS_RESULT_KEY]["name"] == "lookup"
        assert result[TOOLS_RESULT_KEY]["output"] == "result for ada"
        assert transports.created[0].requests == [
            ("tools/call", {"name": "lookup", "arguments": {"q": "ada"}})
        ]

    def test_hub_calls_are_checkpointed_per_hub(self, make_input, transports, checkpoint_store):
        executor = McpToolsExecutor(transport_factory=transports)
        runner = CheckpointedStepRunner("corr-1", checkpoint_store, sleep=lambda _: None)

        outputs = []
        for hub_id, query in (("hub-a", "ada"), ("hub-b", "grace")):
            params = make_input(
                {"serverUrl": "http://mcp.test"},
                context={
                    AGENT_NODE_ID_KEY: hub_id,
                    TOOLS_OPERATION_KEY: "call",
                    TOOL_CALL_KEY: {"id": "0", "name": "lookup", "arguments": {"q": query}},
                },
                node_id="tools",
                step_runner=runner,
            )
            outputs.append(executor.execute(params)[TOOLS_RESULT_KEY]["output"])

        assert outputs == ["result for ada", "result for grace"]
        assert len(checkpoint_store) == 2

    def test_hub_call_without_tool_name(self, make_input, transports):
        executor = McpToolsExecutor(transport_factory=transports)
        params = make_input({"serverUrl": "http://mcp.test"}, context={TOOLS_OPERATION_KEY: "call"})

        with pytest.raises(ConfigurationError):
            executor.execute(params)

    def test_pipeline_call_with_rendered_arguments(self, make_input, transports):
        executor = McpToolsExecutor(transport_factory=transports)
        params = make_input(
            {
                "serverUrl": "http://mcp.test",
                "variableName": "lookup",
                "toolName": "lookup",
                "toolArguments": '{"q": "{{ user.name }}"}',
            },
            context={"user": {"name": "Ada"}},
        )

        result = executor.execute(params)

        assert result["lookup"] == {"toolResult": {"content": [{"type": "text", "text": "result for Ada"}]}}

    def test_pipeline_lists_tools_without_tool_name(self, make_input, transports):
        executor = McpToolsExecutor(transport_factory=transports)
        params = make_input({"serverUrl": "http://mcp.test", "variableName": "tools"})

        result = executor.execute(params)

        assert [t["name"] for t in result["tools"]["tools"]] == ["lookup", "ping"]

    def test_invalid_tool_arguments_are_rejected(self, make_input, transports, publisher):
        executor = McpToolsExecutor(transport_factory=transports)
        params = make_input(
            {
                "serverUrl": "http://mcp.test",
                "variableName": "r",
                "toolName": "lookup",
                "toolArguments": "{not json",
            },
            node_id="tools",
        )

        with pytest.raises(ConfigurationError) as exc_info:
            executor.execute(params)

        assert "toolArguments" in str(exc_info.value)
        assert transports.created == []
        assert publisher.statuses("tools") == ["loading", "error"]

    def test_tool_arguments_must_be_object(self, make_input, transports):
        executor = McpToolsExecutor(transport_factory=transports)
        params = make_input(
            {"serverUrl": "http://mcp.test", "variableName": "r", "toolName": "x", "toolArguments": "[1]"}
        )

        with pytest.raises(ConfigurationError):
            executor.execute(params)

    def test_transport_is_shared_within_scope(self, make_input, transports):
        executor = McpToolsExecutor(transport_factory=transports)

        with CleanupScope() as scope:
            executor.execute(
                make_input({"serverUrl": "http://mcp.test"}, context={TOOLS_OPERATION_KEY: "list"}, cleanup=scope)
            )
            executor.execute(
                make_input(
                    {"serverUrl": "http://mcp.test"},
                    context={TOOLS_OPERATION_KEY: "call", TOOL_CALL_KEY: {"id": "0", "name": "ping"}},
                    cleanup=scope,
                )
            )
            assert transports.created[0].closed == 0

        assert len(transports.created) == 1
        assert transports.created[0].closed == 1

    def test_credential_becomes_bearer_header(self, make_input, transports, credentials):
        executor = McpToolsExecutor(credentials, transport_factory=transports)
        params = make_input(
            {"serverUrl": "http://mcp.test", "credentialId": "cred-1", "headers": {"X-Team": "a"}},
            context={TOOLS_OPERATION_KEY: "list"},
        )

        executor.execute(params)

        assert transports.created[0].headers == {"X-Team": "a", "Authorization": "Bearer secret-key"}

    def test_requires_server_url(self, make_input, transports):
        with pytest.raises(ConfigurationError):
            McpToolsExecutor(transport_factory=transports).execute(make_input({"variableName": "r"}))


class TestHttpJsonRpcTransport:
    """Test the JSON-RPC wire format."""

    def make_transport(self, handler):
        client = httpx.Client(transport=httpx.MockTransport(handler))
        return HttpJsonRpcTransport("http://mcp.test/", client)

    def test_posts_json_rpc_requests(self):
        seen = []

        def handler(request):
            seen.append((str(request.url), json.loads(request.content)))
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": {"tools": []}})

        transport = self.make_transport(handler)
        assert transport.send_request("tools/list", {}) == {"tools": []}
        transport.send_request("tools/list", {})

        assert seen[0][0] == "http://mcp.test/message"
        assert seen[0][1] == {"jsonrpc": "2.0", "id": 1, "method": "tools/list", "params": {}}
        assert seen[1][1]["id"] == 2

    def test_json_rpc_error(self):
        transport = self.make_transport(
            lambda request: httpx.Response(200, json={"error": {"code": -32601, "message": "nope"}})
        )

        with pytest.raises(NodeExecutionError):
            transport.send_request("tools/call", {})

    def test_server_overload_is_transient(self):
        transport = self.make_transport(lambda request: httpx.Response(503))

        with pytest.raises(TransientError):
            transport.send_request("tools/list", {})


def test_tool_output_text():
    assert tool_output_text({"content": [{"type": "text", "text": "a"}, {"type": "text", "text": "b"}]}) == "a\nb"
    assert tool_output_text({"structured": 1}) == '{"structured": 1}'
