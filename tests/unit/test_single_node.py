"""Unit tests for single-node test execution."""
import pytest

from nodeflow.context import with_variable
from nodeflow.errors import UnregisteredTypeError
from nodeflow.executors.base import NodeExecutor
from nodeflow.executors.http_request import HttpRequestExecutor
from nodeflow.executors.triggers import TriggerExecutor
from nodeflow.models import Connection, Node, NodeType, WorkflowGraph
from nodeflow.registry import ExecutorRegistry
from nodeflow.single_node import NodeTestErrorType, execute_node_for_test


class EchoExecutor(NodeExecutor):
    """Binds its node data without declaring a variable name."""

    label = "Echo"

    def execute(self, params):
        return with_variable(params.context, "echo", params.data)


@pytest.fixture
def registry(http_session):
    registry = ExecutorRegistry()
    registry.register(NodeType.MANUAL_TRIGGER, TriggerExecutor())
    registry.register(NodeType.HTTP_REQUEST, HttpRequestExecutor(session=http_session))
    registry.register(NodeType.SLACK, EchoExecutor())
    return registry


@pytest.fixture
def saved_workflow(workflows):
    workflows.save_graph(
        WorkflowGraph(
            workflow_id="wf-1",
            owner_id="user-1",
            nodes=[
                Node(id="trigger", type=NodeType.MANUAL_TRIGGER),
                Node(
                    id="api",
                    type=NodeType.HTTP_REQUEST,
                    data={"variableName": "api", "endpoint": "https://api.test/users/{{ userId }}"},
                ),
                Node(id="echo", type=NodeType.SLACK, data={"content": "hi"}),
                Node(id="unknown", type=NodeType.TELEGRAM, data={}),
            ],
            connections=[Connection(from_node_id="trigger", to_node_id="api")],
        )
    )


def run(workflows, registry, node_id, caller_id="user-1", mock_context=None, workflow_id="wf-1"):
    return execute_node_for_test(
        workflow_id,
        node_id,
        caller_id,
        mock_context,
        workflows=workflows,
        registry=registry,
    )


def test_returns_declared_variable(workflows, registry, saved_workflow, http_session, make_response):
    http_session.queue(make_response(200, json_body={"id": 3}))

    result = run(workflows, registry, "api", mock_context={"userId": 3})

    assert result.success is True
    assert result.output == {"status": 200, "statusText": "OK", "data": {"id": 3}}
    assert http_session.requests[0]["url"] == "https://api.test/users/3"


def test_returns_context_without_variable_name(workflows, registry, saved_workflow):
    result = run(workflows, registry, "echo", mock_context={"upstream": 1})

    assert result.success is True
    assert result.output == {"upstream": 1, "echo": {"content": "hi"}}


def test_unknown_node(workflows, registry, saved_workflow):
    result = run(workflows, registry, "ghost")

    assert result.success is False
    assert result.error_type == NodeTestErrorType.NOT_FOUND
    assert result.error == "Node not found"


def test_unknown_workflow(workflows, registry):
    result = run(workflows, registry, "api", workflow_id="nope")

    assert result.error_type == NodeTestErrorType.NOT_FOUND


def test_other_user_is_unauthorized(workflows, registry, saved_workflow, http_session):
    result = run(workflows, registry, "api", caller_id="intruder")

    assert result.error_type == NodeTestErrorType.UNAUTHORIZED
    assert result.error == "Unauthorized"
    assert http_session.requests == []


def test_trigger_cannot_be_tested(workflows, registry, saved_workflow):
    result = run(workflows, registry, "trigger")

    assert result.error_type == NodeTestErrorType.UNSUPPORTED_NODE_CLASS
    assert result.error == "Trigger nodes cannot be tested individually"


def test_executor_failure_is_reported(workflows, registry, saved_workflow, http_session, make_response):
    http_session.queue(make_response(500, text="boom", reason="Internal Server Error"))

    result = run(workflows, registry, "api", mock_context={"userId": 1})

    assert result.success is False
    assert result.error_type == NodeTestErrorType.EXECUTION_ERROR
    assert "500" in result.error
    # Inline steps are not retried
    assert len(http_session.requests) == 1


def test_unregistered_type_propagates(workflows, registry, saved_workflow):
    with pytest.raises(UnregisteredTypeError):
        run(workflows, registry, "unknown")
