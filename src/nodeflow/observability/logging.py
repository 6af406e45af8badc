"""Structured JSON logging with run context."""
import logging
import sys
from typing import Any

from pythonjsonlogger import jsonlogger

from nodeflow.config import get_settings

TRACE_FIELDS = ("correlation_id", "workflow_id", "node_id", "node_type")


class TraceContextFilter(logging.Filter):
    """Default the run context fields on every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        for field in TRACE_FIELDS:
            if not hasattr(record, field):
                setattr(record, field, None)
        return True


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter with standardized field names."""

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        """Add custom fields to the log record."""
        super().add_fields(log_record, record, message_dict)

        if "timestamp" not in log_record:
            log_record["timestamp"] = self.formatTime(record, self.datefmt)

        log_record["level"] = record.levelname
        log_record["logger"] = record.name

        # Drop empty context fields so lines stay short
        for field in TRACE_FIELDS:
            if log_record.get(field) is None:
                log_record.pop(field, None)


def setup_logging() -> None:
    """Configure structured JSON logging for the application."""
    settings = get_settings()

    handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter(
        "%(timestamp)s %(level)s %(name)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    handler.setFormatter(formatter)
    handler.addFilter(TraceContextFilter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(settings.log_level)

    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("celery").setLevel(logging.INFO)


def get_logger(name: str) -> logging.LoggerAdapter:
    """
    Get a logger with run context support.

    Args:
        name: Logger name (typically __name__)

    Returns:
        LoggerAdapter that can accept run context in extra dict
    """
    logger = logging.getLogger(name)
    return logging.LoggerAdapter(logger, extra={})


def with_trace_context(
    correlation_id: str | None = None,
    workflow_id: str | None = None,
    node_id: str | None = None,
    node_type: str | None = None,
    **kwargs: Any,
) -> dict[str, Any]:
    """
    Create an extra dict with run context for logging.

    Args:
        correlation_id: Execution correlation id
        workflow_id: Workflow id
        node_id: Node currently executing
        node_type: Type tag of that node
        **kwargs: Additional context fields

    Returns:
        Dict to pass as extra parameter to logger methods
    """
    extra = kwargs.copy()
    if correlation_id:
        extra["correlation_id"] = correlation_id
    if workflow_id:
        extra["workflow_id"] = workflow_id
    if node_id:
        extra["node_id"] = node_id
    if node_type:
        extra["node_type"] = node_type
    return extra
