"""Trigger executors.

Triggers only mark the start of a run: the trigger payload is already in the
initial context, so they publish status and pass the context through.
"""
from datetime import datetime

import croniter

from nodeflow.context import ExecutionContext
from nodeflow.errors import ConfigurationError
from nodeflow.executors.base import NodeExecutor
from nodeflow.runtime.contracts import ExecutorInput


def validate_cron(expr: str) -> None:
    """
    Reject anything but a valid five-field cron expression.

    Raises:
        ConfigurationError: If the expression does not parse
    """
    if len(expr.split()) != 5 or not croniter.croniter.is_valid(expr):
        raise ConfigurationError(
            f"Scheduled trigger node: invalid cron expression {expr!r}, expected 5 valid fields"
        )


def next_run_after(expr: str, now: datetime) -> datetime:
    """First fire time of ``expr`` strictly after ``now``."""
    validate_cron(expr)
    return croniter.croniter(expr, now).get_next(datetime)


class TriggerExecutor(NodeExecutor):
    label = "Trigger"

    def execute(self, params: ExecutorInput) -> ExecutionContext:
        with self.reporting(params):
            self.validate(params)
        return dict(params.context)

    def validate(self, params: ExecutorInput) -> None:
        return None


class ScheduledTriggerExecutor(TriggerExecutor):
    label = "Scheduled trigger"

    def validate(self, params: ExecutorInput) -> None:
        cron = params.data.get("cronExpression")
        if cron is None:
            return
        validate_cron(str(cron))
