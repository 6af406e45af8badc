"""
Scheduled workflow runs.

A workflow with a scheduled trigger stores the next fire time of its first
valid cron expression in ``workflows.next_run_at``. Every tick the runner
enqueues each workflow that has come due, after moving ``next_run_at``
forward with a conditional UPDATE so concurrent schedulers fire a tick once.
"""
from datetime import datetime, timezone
from typing import Any, Callable

from nodeflow.errors import ConfigurationError
from nodeflow.executors.triggers import next_run_after
from nodeflow.models import NodeType, WorkflowGraph
from nodeflow.observability import get_logger
from nodeflow.storage.repositories import WorkflowRepository

logger = get_logger(__name__)

Trigger = Callable[[str, dict[str, Any], str], str]


def scheduled_correlation_id(workflow_id: str, node_id: str, now: datetime) -> str:
    """Idempotency key of one scheduled fire, e.g. ``scheduled:wf:node:2026-03-01T10:05:00.000Z``."""
    stamp = now.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
    return f"scheduled:{workflow_id}:{node_id}:{stamp}"


def next_run_for(graph: WorkflowGraph, now: datetime) -> datetime | None:
    """Next fire time of the workflow's first scheduled trigger with a valid cron."""
    for node in graph.nodes:
        if node.type != NodeType.SCHEDULED_TRIGGER:
            continue
        cron = node.data.get("cronExpression")
        if not cron:
            continue
        try:
            return next_run_after(str(cron), now)
        except ConfigurationError:
            logger.warning(
                "Invalid cron expression on scheduled trigger",
                extra={"workflow_id": graph.workflow_id, "node_id": node.id, "cron": cron},
            )
    return None


class ScheduledWorkflowRunner:
    """
    Fires due scheduled workflows.

    Args:
        workflows: Repository holding ``next_run_at``
        trigger: Enqueue function taking ``(workflow_id, initial_data, correlation_id)``
        clock: Current time (injected in tests)
    """

    def __init__(
        self,
        workflows: WorkflowRepository,
        trigger: Trigger,
        clock: Callable[[], datetime] | None = None,
    ):
        self.workflows = workflows
        self.trigger = trigger
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def refresh(self, workflow_id: str, now: datetime | None = None) -> datetime | None:
        """Recompute ``next_run_at`` after a workflow's graph changed."""
        now = now or self.clock()
        next_run_at = next_run_for(self.workflows.load_graph(workflow_id), now)
        self.workflows.set_next_run_at(workflow_id, next_run_at)
        return next_run_at

    def tick(self, now: datetime | None = None) -> dict[str, Any]:
        """
        Enqueue every workflow that is due.

        Workflows with a scheduled trigger but no ``next_run_at`` are
        scheduled first; they fire from their next cron time onwards.

        Returns:
            ``{checked, triggered, triggeredWorkflows}``
        """
        now = now or self.clock()

        for graph in self.workflows.find_unscheduled():
            next_run_at = next_run_for(graph, now)
            if next_run_at is not None:
                self.workflows.set_next_run_at(graph.workflow_id, next_run_at)

        due = self.workflows.find_due_scheduled(now)
        triggered: list[str] = []
        for graph in due:
            try:
                if self._fire(graph, now):
                    triggered.append(graph.workflow_id)
            except Exception as e:
                logger.error(
                    "Scheduled workflow could not be triggered",
                    extra={"workflow_id": graph.workflow_id, "error": str(e)},
                    exc_info=True,
                )

        logger.info(
            "Scheduler tick finished",
            extra={"checked": len(due), "triggered": len(triggered)},
        )
        return {"checked": len(due), "triggered": len(triggered), "triggeredWorkflows": triggered}

    def _fire(self, graph: WorkflowGraph, now: datetime) -> bool:
        for node in graph.nodes:
            if node.type != NodeType.SCHEDULED_TRIGGER:
                continue
            cron = node.data.get("cronExpression")
            if not cron:
                logger.warning(
                    "Scheduled trigger has no cron expression",
                    extra={"workflow_id": graph.workflow_id, "node_id": node.id},
                )
                continue
            try:
                next_run_at = next_run_after(str(cron), now)
            except ConfigurationError:
                logger.warning(
                    "Invalid cron expression on scheduled trigger",
                    extra={"workflow_id": graph.workflow_id, "node_id": node.id, "cron": cron},
                )
                continue

            if not self.workflows.claim_schedule(graph.workflow_id, now, next_run_at):
                logger.info(
                    "Scheduled run already claimed",
                    extra={"workflow_id": graph.workflow_id, "node_id": node.id},
                )
                return False

            initial_data = {
                "scheduled": {
                    "timestamp": now.astimezone(timezone.utc).isoformat(),
                    "cronExpression": cron,
                    "nodeId": node.id,
                }
            }
            self.trigger(
                graph.workflow_id,
                initial_data,
                scheduled_correlation_id(graph.workflow_id, node.id, now),
            )
            return True

        # No usable schedule left; stop matching this workflow every tick
        self.workflows.set_next_run_at(graph.workflow_id, None)
        return False
