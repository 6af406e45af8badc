"""Celery tasks for workflow execution and scheduling."""
import uuid
from typing import Any

from nodeflow.bootstrap import get_services
from nodeflow.errors import WorkflowError
from nodeflow.integrations.celery_app import celery_app
from nodeflow.observability import get_logger, setup_logging
from nodeflow.scheduling import ScheduledWorkflowRunner

setup_logging()
logger = get_logger(__name__)


@celery_app.task(name="run_workflow", bind=True)
def run_workflow(
    self,
    workflow_id: str,
    correlation_id: str,
    initial_data: dict[str, Any] | None = None,
) -> dict:
    """
    Execute one workflow run.

    Args:
        workflow_id: Workflow to run
        correlation_id: Idempotency key of the run
        initial_data: Trigger payload

    Returns:
        Status summary of the finalized execution
    """
    extra = {"correlation_id": correlation_id, "workflow_id": workflow_id}
    logger.info("Workflow task received", extra={**extra, "delivery": self.request.retries})

    try:
        record = get_services().orchestrator.run(workflow_id, correlation_id, initial_data)
    except WorkflowError as e:
        # Business failure: the record is already FAILED, redelivery cannot help
        logger.warning("Workflow task finished with failure", extra={**extra, "error": str(e)})
        return {"correlation_id": correlation_id, "status": "FAILED", "error": str(e)}

    return {"correlation_id": correlation_id, "status": record.status.value}


def trigger_workflow(
    workflow_id: str,
    initial_data: dict[str, Any] | None = None,
    correlation_id: str | None = None,
) -> str:
    """
    Enqueue one workflow run, fire-and-forget.

    Every call without an explicit ``correlation_id`` is a separate run.

    Returns:
        The run's correlation id
    """
    correlation_id = correlation_id or str(uuid.uuid4())
    run_workflow.delay(workflow_id, correlation_id, initial_data or {})
    logger.info(
        "Workflow run enqueued",
        extra={"correlation_id": correlation_id, "workflow_id": workflow_id},
    )
    return correlation_id


@celery_app.task(name="run_scheduled_workflows")
def run_scheduled_workflows() -> dict:
    """Beat entry point: enqueue every scheduled workflow that has come due."""
    runner = ScheduledWorkflowRunner(get_services().workflows, trigger_workflow)
    return runner.tick()
