"""Structured logging configuration using structlog."""

import logging
import sys
from typing import Any, Optional

import structlog


def configure_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    correlation_id: Optional[str] = None,
) -> structlog.BoundLogger:
    """Configure structured logging.

    Args:
        log_level: Log level (DEBUG, INFO, WARN, ERROR, CRITICAL)
        log_format: Log format ('json' or 'console')
        correlation_id: Optional correlation ID for this process

    Returns:
        Configured logger instance
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )
    # APScheduler logs every trigger firing at INFO
    logging.getLogger("apscheduler").setLevel(max(level, logging.WARNING))

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logger = structlog.get_logger("archival")
    if correlation_id:
        structlog.contextvars.bind_contextvars(correlation_id=correlation_id)

    return logger


def get_logger(name: Optional[str] = None) -> structlog.BoundLogger:
    """Get a logger instance.

    Args:
        name: Optional logger name

    Returns:
        Logger instance
    """
    if name:
        return structlog.get_logger(name)
    return structlog.get_logger()


def bind_job_context(job_id: int, job_name: Optional[str] = None) -> None:
    """Bind job identity to every log line emitted by the current task.

    Context variables are task-local, so concurrent invocations of different
    jobs keep their own bindings.
    """
    values: dict[str, Any] = {"job_id": job_id}
    if job_name:
        values["job_name"] = job_name
    structlog.contextvars.bind_contextvars(**values)


def clear_job_context() -> None:
    """Remove bindings added by :func:`bind_job_context`."""
    structlog.contextvars.unbind_contextvars("job_id", "job_name")
