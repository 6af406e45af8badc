"""Workflow execution routes."""
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel, Field

from nodeflow.bootstrap import Services, get_services
from nodeflow.integrations.tasks import trigger_workflow
from nodeflow.observability import get_logger
from nodeflow.scheduling import ScheduledWorkflowRunner
from nodeflow.single_node import NodeTestErrorType, NodeTestResult

logger = get_logger(__name__)
router = APIRouter()

ERROR_STATUS_CODES = {
    NodeTestErrorType.NOT_FOUND: 404,
    NodeTestErrorType.UNAUTHORIZED: 403,
    NodeTestErrorType.UNSUPPORTED_NODE_CLASS: 400,
    NodeTestErrorType.EXECUTION_ERROR: 500,
}


class ExecuteWorkflowRequest(BaseModel):
    """Request model for triggering a workflow."""

    initial_data: dict[str, Any] = Field(
        default_factory=dict,
        description="Trigger payload seeding the execution context",
    )
    correlation_id: str | None = Field(
        default=None,
        description="Optional idempotency key, e.g. the triggering event id",
    )


class ExecuteWorkflowResponse(BaseModel):
    """Response model for a triggered workflow."""

    workflow_id: str = Field(..., description="Workflow id")
    correlation_id: str = Field(..., description="Correlation id of the enqueued run")


class TestNodeRequest(BaseModel):
    """Request model for testing a node."""

    mock_context: dict[str, Any] = Field(
        default_factory=dict,
        description="Values standing in for upstream outputs",
    )


class ScheduleResponse(BaseModel):
    """Response model for a recomputed schedule."""

    workflow_id: str
    next_run_at: datetime | None = Field(
        default=None,
        description="Next fire time, or null when the workflow has no valid schedule",
    )


class ExecutionResponse(BaseModel):
    """Response model for an execution record."""

    correlation_id: str
    workflow_id: str
    status: str
    started_at: datetime
    completed_at: datetime | None = None
    output: dict[str, Any] | None = None
    error: str | None = None


def get_trigger():
    """Dependency returning the enqueue function."""
    return trigger_workflow


@router.post(
    "/v1/workflows/{workflow_id}/execute",
    response_model=ExecuteWorkflowResponse,
    status_code=202,
)
def execute_workflow(
    workflow_id: str,
    request: ExecuteWorkflowRequest,
    trigger=Depends(get_trigger),
) -> ExecuteWorkflowResponse:
    """
    Enqueue a workflow run.

    Args:
        workflow_id: Workflow to run
        request: Trigger payload and optional correlation id

    Returns:
        The run's correlation id
    """
    correlation_id = trigger(workflow_id, request.initial_data, request.correlation_id)
    logger.info(
        "Workflow triggered via API",
        extra={"workflow_id": workflow_id, "correlation_id": correlation_id},
    )
    return ExecuteWorkflowResponse(workflow_id=workflow_id, correlation_id=correlation_id)


@router.post("/v1/workflows/{workflow_id}/nodes/{node_id}/test", response_model=NodeTestResult)
def run_node_test(
    workflow_id: str,
    node_id: str,
    request: TestNodeRequest,
    x_user_id: str = Header(..., alias="X-User-Id"),
    services: Services = Depends(get_services),
) -> NodeTestResult:
    """
    Run a single node against a mock context.

    Raises:
        HTTPException: 404, 403, 400 or 500 for the typed failures
    """
    result = services.execute_node_for_test(workflow_id, node_id, x_user_id, request.mock_context)
    if not result.success:
        raise HTTPException(
            status_code=ERROR_STATUS_CODES[result.error_type or NodeTestErrorType.EXECUTION_ERROR],
            detail={"error": result.error, "error_type": result.error_type.value if result.error_type else None},
        )
    return result


@router.get("/v1/executions/{correlation_id}", response_model=ExecutionResponse)
def get_execution(
    correlation_id: str,
    services: Services = Depends(get_services),
) -> ExecutionResponse:
    """
    Get an execution record.

    Raises:
        HTTPException: If no execution has this correlation id
    """
    record = services.executions.get(correlation_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Execution not found")
    return ExecutionResponse(
        correlation_id=record.correlation_id,
        workflow_id=record.workflow_id,
        status=record.status.value,
        started_at=record.started_at,
        completed_at=record.completed_at,
        output=record.output,
        error=record.error,
    )


@router.put("/v1/workflows/{workflow_id}/schedule", response_model=ScheduleResponse)
def refresh_schedule(
    workflow_id: str,
    services: Services = Depends(get_services),
    trigger=Depends(get_trigger),
) -> ScheduleResponse:
    """
    Recompute a workflow's next scheduled run after its graph was saved.

    Unknown workflows answer 404 through the application's error handler.
    """
    next_run_at = ScheduledWorkflowRunner(services.workflows, trigger).refresh(workflow_id)
    logger.info(
        "Workflow schedule refreshed",
        extra={"workflow_id": workflow_id, "next_run_at": next_run_at.isoformat() if next_run_at else None},
    )
    return ScheduleResponse(workflow_id=workflow_id, next_run_at=next_run_at)
