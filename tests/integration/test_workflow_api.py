"""Integration tests for workflow API endpoints."""
from dataclasses import replace
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
import redis
from fastapi.testclient import TestClient

from nodeflow.api.main import app
from nodeflow.api.routes.workflows import get_trigger
from nodeflow.bootstrap import Services, get_services
from nodeflow.config import get_settings
from nodeflow.executors.http_request import HttpRequestExecutor
from nodeflow.executors.triggers import TriggerExecutor
from nodeflow.models import Connection, Node, NodeType, WorkflowGraph
from nodeflow.registry import ExecutorRegistry


@pytest.fixture
def triggered():
    return []


@pytest.fixture
def client(workflows, executions, http_session, make_orchestrator, triggered):
    registry = ExecutorRegistry()
    registry.register(NodeType.MANUAL_TRIGGER, TriggerExecutor())
    registry.register(NodeType.HTTP_REQUEST, HttpRequestExecutor(session=http_session))
    services = Services(
        settings=get_settings(),
        workflows=workflows,
        executions=executions,
        registry=registry,
        orchestrator=make_orchestrator(registry),
    )
    workflows.save_graph(
        WorkflowGraph(
            workflow_id="wf-1",
            owner_id="user-1",
            nodes=[
                Node(id="trigger", type=NodeType.MANUAL_TRIGGER),
                Node(
                    id="api",
                    type=NodeType.HTTP_REQUEST,
                    data={"variableName": "api", "endpoint": "https://api.test/items/{{ itemId }}"},
                ),
            ],
            connections=[Connection(from_node_id="trigger", to_node_id="api")],
        )
    )

    def fake_trigger(workflow_id, initial_data=None, correlation_id=None):
        triggered.append((workflow_id, initial_data, correlation_id))
        return correlation_id or "generated-id"

    app.dependency_overrides[get_services] = lambda: services
    app.dependency_overrides[get_trigger] = lambda: fake_trigger
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health_check(client):
    """Test health check endpoint."""
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_root_endpoint(client):
    """Test root endpoint."""
    response = client.get("/")

    assert response.status_code == 200
    assert response.json()["service"] == "nodeflow"


def test_execute_workflow_enqueues_run(client, triggered):
    response = client.post("/v1/workflows/wf-1/execute", json={"initial_data": {"itemId": 5}})

    assert response.status_code == 202
    assert response.json() == {"workflow_id": "wf-1", "correlation_id": "generated-id"}
    assert triggered == [("wf-1", {"itemId": 5}, None)]


def test_execute_workflow_with_correlation_id(client, triggered):
    response = client.post(
        "/v1/workflows/wf-1/execute",
        json={"initial_data": {}, "correlation_id": "evt_123"},
    )

    assert response.status_code == 202
    assert response.json()["correlation_id"] == "evt_123"


def test_node_test_success(client, http_session, make_response):
    http_session.queue(make_response(200, json_body={"id": 5, "name": "widget"}))

    response = client.post(
        "/v1/workflows/wf-1/nodes/api/test",
        json={"mock_context": {"itemId": 5}},
        headers={"X-User-Id": "user-1"},
    )

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["output"] == {"status": 200, "statusText": "OK", "data": {"id": 5, "name": "widget"}}
    assert http_session.requests[0]["url"] == "https://api.test/items/5"


@pytest.mark.parametrize(
    "node_id,user_id,status_code,error_type",
    [
        ("ghost", "user-1", 404, "NOT_FOUND"),
        ("api", "intruder", 403, "UNAUTHORIZED"),
        ("trigger", "user-1", 400, "UNSUPPORTED_NODE_CLASS"),
    ],
)
def test_node_test_failures(client, node_id, user_id, status_code, error_type):
    response = client.post(
        f"/v1/workflows/wf-1/nodes/{node_id}/test",
        json={},
        headers={"X-User-Id": user_id},
    )

    assert response.status_code == status_code
    assert response.json()["detail"]["error_type"] == error_type


def test_node_test_execution_error(client, http_session, make_response):
    http_session.queue(make_response(400, text="bad", reason="Bad Request"))

    response = client.post(
        "/v1/workflows/wf-1/nodes/api/test",
        json={"mock_context": {"itemId": 1}},
        headers={"X-User-Id": "user-1"},
    )

    assert response.status_code == 500
    assert "400" in response.json()["detail"]["error"]


def test_node_test_requires_user_header(client):
    response = client.post("/v1/workflows/wf-1/nodes/api/test", json={})

    assert response.status_code == 422


def test_get_execution(client, executions):
    executions.create_running("corr-1", "wf-1")
    executions.finalize_success("corr-1", {"api": {"status": 200}})

    response = client.get("/v1/executions/corr-1")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "SUCCESS"
    assert data["workflow_id"] == "wf-1"
    assert data["output"] == {"api": {"status": 200}}


def test_get_execution_not_found(client):
    response = client.get("/v1/executions/missing")

    assert response.status_code == 404
    assert "not found" in response.json()["detail"].lower()


def test_readiness(client):
    response = client.get("/health/ready")

    assert response.status_code == 200
    assert response.json() == {"status": "ready", "checks": {"database": True, "redis": True}}


def test_readiness_reports_unreachable_redis(client, workflows):
    services = app.dependency_overrides[get_services]()
    broken = MagicMock()
    broken.ping.side_effect = redis.ConnectionError("refused")
    app.dependency_overrides[get_services] = lambda: replace(services, redis_client=broken)

    response = client.get("/health/ready")

    assert response.status_code == 503
    assert response.json()["checks"] == {"database": True, "redis": False}


def test_refresh_schedule(client, workflows):
    workflows.save_graph(
        WorkflowGraph(
            workflow_id="wf-cron",
            owner_id="user-1",
            nodes=[Node(id="cron", type=NodeType.SCHEDULED_TRIGGER, data={"cronExpression": "0 0 1 1 *"})],
        )
    )

    response = client.put("/v1/workflows/wf-cron/schedule")

    assert response.status_code == 200
    data = response.json()
    assert data["workflow_id"] == "wf-cron"
    assert data["next_run_at"].startswith(f"{datetime.now(timezone.utc).year + 1}-01-01T00:00:00")
    assert workflows.get_next_run_at("wf-cron") is not None


def test_refresh_schedule_without_cron(client):
    response = client.put("/v1/workflows/wf-1/schedule")

    assert response.status_code == 200
    assert response.json()["next_run_at"] is None


def test_unknown_workflow_maps_to_404(client):
    response = client.put("/v1/workflows/missing/schedule")

    assert response.status_code == 404
    assert response.json()["error_type"] == "NotFoundError"
