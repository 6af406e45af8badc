"""Workflow orchestrator: the run state machine."""
import traceback
from typing import Any, Callable

from pydantic_core import to_jsonable_python

from nodeflow.context import ExecutionContext
from nodeflow.graph import compile_workflow
from nodeflow.models import ExecutionRecord, WorkflowGraph
from nodeflow.observability import get_logger, with_trace_context
from nodeflow.quota import QuotaGuard
from nodeflow.registry import ExecutorRegistry
from nodeflow.runtime.cleanup import CleanupScope
from nodeflow.runtime.contracts import ExecutorInput, StatusPublisher, StepRunner
from nodeflow.storage.repositories import ExecutionRepository, WorkflowRepository

logger = get_logger(__name__)


class WorkflowOrchestrator:
    """
    Runs one workflow execution end to end.

    RUNNING is recorded first, keyed by correlation id. The graph is then
    loaded, the owner's quota checked, the graph compiled, and every node
    outside the skip-set dispatched in order, each replacing the running
    context with its result. The first error stops the run and the record is
    finalized FAILED; otherwise it is finalized SUCCESS with the final
    context as output. No retries happen here: transient failures are
    retried by the step runner inside each executor.
    """

    def __init__(
        self,
        registry: ExecutorRegistry,
        workflows: WorkflowRepository,
        executions: ExecutionRepository,
        quota: QuotaGuard,
        step_runner_factory: Callable[[str], StepRunner],
        status_publisher: StatusPublisher,
    ):
        self.registry = registry
        self.workflows = workflows
        self.executions = executions
        self.quota = quota
        self.step_runner_factory = step_runner_factory
        self.status_publisher = status_publisher

    def run(
        self,
        workflow_id: str,
        correlation_id: str,
        initial_data: dict[str, Any] | None = None,
    ) -> ExecutionRecord:
        """
        Execute a workflow once per correlation id.

        Args:
            workflow_id: Workflow to run
            correlation_id: Idempotency key of the triggering event
            initial_data: Trigger payload seeding the context

        Returns:
            The finalized execution record. A duplicate delivery for a run
            that already finished returns that run's record untouched.

        Raises:
            Whatever aborted the run, after the record is finalized FAILED
        """
        extra = with_trace_context(correlation_id=correlation_id, workflow_id=workflow_id)
        record, created = self.executions.create_running(correlation_id, workflow_id)
        if not created:
            if record.status.is_terminal:
                logger.info("Duplicate delivery for finished run ignored", extra=extra)
                return record
            logger.info("Resuming run from checkpoints", extra=extra)

        logger.info("Workflow run started", extra=extra)
        try:
            context = self._execute(workflow_id, correlation_id, initial_data)
            output = to_jsonable_python(context, fallback=str)
        except Exception as e:
            self.executions.finalize_failure(
                correlation_id,
                str(e) or e.__class__.__name__,
                traceback.format_exc(),
            )
            logger.error(
                "Workflow run failed",
                extra={**extra, "error": str(e), "error_type": e.__class__.__name__},
                exc_info=True,
            )
            raise

        self.executions.finalize_success(correlation_id, output)
        logger.info("Workflow run succeeded", extra=extra)
        return self.executions.get(correlation_id)

    def _execute(
        self,
        workflow_id: str,
        correlation_id: str,
        initial_data: dict[str, Any] | None,
    ) -> ExecutionContext:
        graph = self.workflows.load_graph(workflow_id)
        self.quota.check(graph.owner_id, correlation_id)

        compiled = compile_workflow(graph.nodes, graph.connections)
        graph = WorkflowGraph(
            workflow_id=graph.workflow_id,
            owner_id=graph.owner_id,
            nodes=graph.nodes,
            connections=compiled.connections,
        )
        user_id = graph.owner_id
        step_runner = self.step_runner_factory(correlation_id)
        context: ExecutionContext = dict(initial_data or {})

        for node in compiled.order:
            if node.id in compiled.skip_set:
                logger.debug(
                    "Node runs through its agent hub",
                    extra=with_trace_context(correlation_id=correlation_id, node_id=node.id),
                )
                continue

            executor = self.registry.get_executor(node.type)
            logger.info(
                "Dispatching node",
                extra=with_trace_context(
                    correlation_id=correlation_id,
                    workflow_id=workflow_id,
                    node_id=node.id,
                    node_type=node.type.value,
                ),
            )
            with CleanupScope() as scope:
                context = executor.execute(
                    ExecutorInput(
                        data=node.data,
                        node_id=node.id,
                        user_id=user_id,
                        context=context,
                        step_runner=step_runner,
                        status_publisher=self.status_publisher,
                        node_type=node.type,
                        credential_id=node.credential_id,
                        workflow=graph,
                        cleanup=scope,
                        correlation_id=correlation_id,
                    )
                )
        return context
