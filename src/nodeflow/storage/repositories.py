"""Repositories for workflow graphs and execution records."""
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from nodeflow.errors import NotFoundError
from nodeflow.models import (
    Connection,
    ExecutionRecord,
    ExecutionStatus,
    Node,
    NodeType,
    WorkflowGraph,
)
from nodeflow.observability import get_logger
from nodeflow.storage.session import session_scope
from nodeflow.storage.tables import ConnectionRow, ExecutionRow, NodeRow, WorkflowRow

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowRepository:
    """Read access to workflows, nodes and connections."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def load_graph(self, workflow_id: str) -> WorkflowGraph:
        """
        Load a workflow with its nodes and connections.

        Raises:
            NotFoundError: If the workflow does not exist
        """
        with session_scope(self.session_factory) as db:
            row = db.get(WorkflowRow, workflow_id)
            if row is None:
                raise NotFoundError(f"Workflow not found: {workflow_id}")
            return WorkflowGraph(
                workflow_id=row.id,
                owner_id=row.owner_id,
                nodes=[
                    Node(
                        id=n.id,
                        type=NodeType(n.type),
                        data=dict(n.data or {}),
                        credential_id=n.credential_id,
                    )
                    for n in row.nodes
                ],
                connections=[
                    Connection(
                        from_node_id=c.from_node_id,
                        to_node_id=c.to_node_id,
                        from_output=c.from_output,
                        to_input=c.to_input,
                    )
                    for c in row.connections
                ],
            )

    def get_owner_id(self, workflow_id: str) -> str:
        with session_scope(self.session_factory) as db:
            owner_id = db.scalar(select(WorkflowRow.owner_id).where(WorkflowRow.id == workflow_id))
        if owner_id is None:
            raise NotFoundError(f"Workflow not found: {workflow_id}")
        return owner_id

    def save_graph(self, graph: WorkflowGraph, name: str = "") -> None:
        """Insert or replace a workflow with its nodes and connections."""
        with session_scope(self.session_factory) as db:
            row = db.get(WorkflowRow, graph.workflow_id)
            if row is None:
                row = WorkflowRow(id=graph.workflow_id, owner_id=graph.owner_id, name=name)
                db.add(row)
            row.owner_id = graph.owner_id
            row.nodes = [
                NodeRow(
                    id=node.id,
                    type=node.type.value,
                    data=node.data,
                    credential_id=node.credential_id,
                    position=position,
                )
                for position, node in enumerate(graph.nodes)
            ]
            row.connections = [
                ConnectionRow(
                    from_node_id=c.from_node_id,
                    to_node_id=c.to_node_id,
                    from_output=c.from_output,
                    to_input=c.to_input,
                )
                for c in graph.connections
            ]

    def _scheduled_ids(self, *criteria: Any) -> list[str]:
        has_schedule = (
            select(NodeRow.id)
            .where(NodeRow.workflow_id == WorkflowRow.id)
            .where(NodeRow.type == NodeType.SCHEDULED_TRIGGER.value)
            .exists()
        )
        with session_scope(self.session_factory) as db:
            return list(
                db.scalars(select(WorkflowRow.id).where(has_schedule, *criteria).order_by(WorkflowRow.id))
            )

    def find_due_scheduled(self, now: datetime) -> list[WorkflowGraph]:
        """Workflows with a scheduled trigger whose next run is at or before ``now``."""
        ids = self._scheduled_ids(WorkflowRow.next_run_at.is_not(None), WorkflowRow.next_run_at <= now)
        return [self.load_graph(workflow_id) for workflow_id in ids]

    def find_unscheduled(self) -> list[WorkflowGraph]:
        """Workflows with a scheduled trigger but no next run recorded."""
        return [self.load_graph(workflow_id) for workflow_id in self._scheduled_ids(WorkflowRow.next_run_at.is_(None))]

    def get_next_run_at(self, workflow_id: str) -> datetime | None:
        with session_scope(self.session_factory) as db:
            value = db.scalar(select(WorkflowRow.next_run_at).where(WorkflowRow.id == workflow_id))
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value

    def set_next_run_at(self, workflow_id: str, next_run_at: datetime | None) -> None:
        with session_scope(self.session_factory) as db:
            db.execute(
                update(WorkflowRow)
                .where(WorkflowRow.id == workflow_id)
                .values(next_run_at=next_run_at, updated_at=WorkflowRow.updated_at)
            )

    def claim_schedule(self, workflow_id: str, due_by: datetime, next_run_at: datetime) -> bool:
        """
        Move a due workflow's next run forward.

        The UPDATE only matches while the stored next run is still at or
        before ``due_by``, so of several schedulers racing for the same
        tick exactly one claims it.

        Returns:
            Whether this call claimed the run
        """
        with session_scope(self.session_factory) as db:
            result = db.execute(
                update(WorkflowRow)
                .where(WorkflowRow.id == workflow_id)
                .where(WorkflowRow.next_run_at <= due_by)
                .values(next_run_at=next_run_at, updated_at=WorkflowRow.updated_at)
            )
            return result.rowcount == 1


class ExecutionRepository:
    """Execution records keyed by correlation id."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def create_running(self, correlation_id: str, workflow_id: str) -> tuple[ExecutionRecord, bool]:
        """
        Create a RUNNING record unless one exists for the correlation id.

        Returns:
            The record and whether this call created it
        """
        existing = self.get(correlation_id)
        if existing is not None:
            return existing, False

        try:
            with session_scope(self.session_factory) as db:
                row = ExecutionRow(
                    correlation_id=correlation_id,
                    workflow_id=workflow_id,
                    status=ExecutionStatus.RUNNING.value,
                    started_at=_utcnow(),
                )
                db.add(row)
                db.flush()
                record = ExecutionRecord.model_validate(row)
        except IntegrityError:
            # Lost the race against a concurrent delivery of the same event
            existing = self.get(correlation_id)
            if existing is None:
                raise
            return existing, False
        return record, True

    def get(self, correlation_id: str) -> ExecutionRecord | None:
        with session_scope(self.session_factory) as db:
            row = db.scalar(select(ExecutionRow).where(ExecutionRow.correlation_id == correlation_id))
            return ExecutionRecord.model_validate(row) if row is not None else None

    def finalize_success(self, correlation_id: str, output: dict[str, Any]) -> bool:
        return self._finalize(
            correlation_id,
            status=ExecutionStatus.SUCCESS.value,
            completed_at=_utcnow(),
            output=output,
        )

    def finalize_failure(self, correlation_id: str, error: str, error_detail: str | None = None) -> bool:
        return self._finalize(
            correlation_id,
            status=ExecutionStatus.FAILED.value,
            completed_at=_utcnow(),
            error=error,
            error_detail=error_detail,
        )

    def _finalize(self, correlation_id: str, **values: Any) -> bool:
        """Move a RUNNING record to a terminal state; no-op otherwise."""
        with session_scope(self.session_factory) as db:
            result = db.execute(
                update(ExecutionRow)
                .where(
                    ExecutionRow.correlation_id == correlation_id,
                    ExecutionRow.status == ExecutionStatus.RUNNING.value,
                )
                .values(**values)
            )
            updated = result.rowcount == 1
        if not updated:
            logger.warning(
                "Execution already finalized",
                extra={"correlation_id": correlation_id, "status": values.get("status")},
            )
        return updated

    def count_owner_executions_since(
        self,
        owner_id: str,
        since: datetime,
        exclude_correlation_id: str | None = None,
    ) -> int:
        """Executions of all workflows owned by ``owner_id`` started at or after ``since``."""
        stmt = (
            select(func.count(ExecutionRow.id))
            .join(WorkflowRow, WorkflowRow.id == ExecutionRow.workflow_id)
            .where(WorkflowRow.owner_id == owner_id, ExecutionRow.started_at >= since)
        )
        if exclude_correlation_id is not None:
            stmt = stmt.where(ExecutionRow.correlation_id != exclude_correlation_id)
        with session_scope(self.session_factory) as db:
            return db.scalar(stmt) or 0
