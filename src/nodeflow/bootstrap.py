"""Wiring of the engine's collaborators from settings."""
from dataclasses import dataclass
from typing import Any

import redis
from sqlalchemy.orm import sessionmaker

from nodeflow.config import Settings, get_settings
from nodeflow.executors import build_default_registry
from nodeflow.orchestrator import WorkflowOrchestrator
from nodeflow.quota import EntitlementChecker, PolarEntitlementChecker, QuotaGuard, StaticEntitlementChecker
from nodeflow.registry import ExecutorRegistry
from nodeflow.runtime.publisher import RedisStatusPublisher
from nodeflow.runtime.steps import CheckpointedStepRunner, RedisCheckpointStore
from nodeflow.single_node import NodeTestResult, execute_node_for_test
from nodeflow.storage.credentials import SqlCredentialStore
from nodeflow.storage.repositories import ExecutionRepository, WorkflowRepository
from nodeflow.storage.session import get_session_factory


@dataclass
class Services:
    """Process-wide engine services."""

    settings: Settings
    workflows: WorkflowRepository
    executions: ExecutionRepository
    registry: ExecutorRegistry
    orchestrator: WorkflowOrchestrator
    redis_client: redis.Redis | None = None

    def execute_node_for_test(
        self,
        workflow_id: str,
        node_id: str,
        caller_id: str,
        mock_context: dict[str, Any] | None = None,
    ) -> NodeTestResult:
        return execute_node_for_test(
            workflow_id,
            node_id,
            caller_id,
            mock_context,
            workflows=self.workflows,
            registry=self.registry,
        )


def build_entitlement_checker(settings: Settings) -> EntitlementChecker:
    if settings.polar_access_token is None:
        return StaticEntitlementChecker()
    return PolarEntitlementChecker(
        settings.polar_access_token.get_secret_value(),
        server=settings.polar_server,
    )


def build_services(
    settings: Settings | None = None,
    session_factory: sessionmaker | None = None,
    redis_client: redis.Redis | None = None,
    registry: ExecutorRegistry | None = None,
    entitlements: EntitlementChecker | None = None,
) -> Services:
    """
    Build repositories, registry and orchestrator.

    Every collaborator can be injected; the rest come from settings.
    """
    settings = settings or get_settings()
    session_factory = session_factory or get_session_factory()
    redis_client = redis_client or redis.from_url(settings.redis_url, decode_responses=True)

    workflows = WorkflowRepository(session_factory)
    executions = ExecutionRepository(session_factory)
    if registry is None:
        encryption_key = settings.encryption_key.get_secret_value() if settings.encryption_key else None
        registry = build_default_registry(SqlCredentialStore(session_factory, encryption_key), settings)

    checkpoints = RedisCheckpointStore(redis_client, ttl_s=settings.step_checkpoint_ttl_s)

    def step_runner_factory(run_id: str) -> CheckpointedStepRunner:
        return CheckpointedStepRunner(
            run_id,
            checkpoints,
            max_attempts=settings.step_max_attempts,
            base_delay_s=settings.step_retry_base_delay_s,
        )

    orchestrator = WorkflowOrchestrator(
        registry=registry,
        workflows=workflows,
        executions=executions,
        quota=QuotaGuard(
            executions,
            entitlements or build_entitlement_checker(settings),
            monthly_limit=settings.free_monthly_execution_limit,
        ),
        step_runner_factory=step_runner_factory,
        status_publisher=RedisStatusPublisher(redis_client, settings.status_channel_prefix),
    )
    return Services(
        settings=settings,
        workflows=workflows,
        executions=executions,
        registry=registry,
        orchestrator=orchestrator,
        redis_client=redis_client,
    )


_services: Services | None = None


def get_services() -> Services:
    """Get or create the global services."""
    global _services
    if _services is None:
        _services = build_services()
    return _services


def reset_services() -> None:
    """Reset services (useful for testing)."""
    global _services
    _services = None
