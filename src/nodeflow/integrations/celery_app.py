"""Celery application: workflow run queue and the scheduler beat."""
from typing import Any

from celery import Celery

from nodeflow.config import Settings, get_settings


def build_beat_schedule(settings: Settings) -> dict[str, Any]:
    """Periodic tasks; empty when the scheduler is disabled."""
    if not settings.scheduler_enabled:
        return {}
    return {
        "run-scheduled-workflows": {
            "task": "run_scheduled_workflows",
            "schedule": settings.scheduler_interval_s,
            # A tick that waited past the next one is redundant
            "options": {"queue": settings.scheduler_queue, "expires": settings.scheduler_interval_s},
        }
    }


def create_celery_app(settings: Settings | None = None) -> Celery:
    """
    Build the Celery application.

    Workflow runs and scheduler ticks go to separate queues so a backlog
    of runs never delays the next tick.
    """
    settings = settings or get_settings()
    app = Celery(
        "nodeflow",
        broker=settings.broker_url,
        backend=settings.redis_url,
        include=["nodeflow.integrations.tasks"],
    )
    app.conf.update(
        task_time_limit=settings.celery_task_time_limit,
        task_soft_time_limit=settings.celery_task_soft_time_limit,
        task_acks_late=True,  # Redelivery replays the run from its checkpoints
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,
        task_track_started=True,
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        result_expires=3600,
        task_default_queue=settings.workflow_queue,
        task_routes={
            "run_workflow": {"queue": settings.workflow_queue},
            "run_scheduled_workflows": {"queue": settings.scheduler_queue},
        },
        beat_schedule=build_beat_schedule(settings),
        timezone="UTC",
        enable_utc=True,
    )
    return app


celery_app = create_celery_app()
