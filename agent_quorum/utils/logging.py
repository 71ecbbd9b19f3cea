"""
Logging configuration and utilities for Agent Quorum.
"""

import logging
import sys
from typing import Any, Optional

import structlog


def configure_logging(level: str = "INFO", json_format: bool = False) -> None:
    """
    Configure structured logging for the orchestration engine.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Emit one JSON object per line instead of console output
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level.upper()),
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name

    Returns:
        structlog.BoundLogger: Configured logger instance
    """
    return structlog.get_logger(name)


def bind_task_context(task_id: str, topic: Optional[str] = None) -> None:
    """Attach task identifiers to every log line emitted by the current context."""
    context = {"task_id": task_id}
    if topic:
        context["topic"] = topic
    structlog.contextvars.bind_contextvars(**context)


def clear_task_context() -> None:
    structlog.contextvars.unbind_contextvars("task_id", "topic")


class LoggerMixin:
    """
    Mixin class to add logging capabilities to any class.
    """

    @property
    def logger(self) -> structlog.BoundLogger:
        """Get logger for this class."""
        if not hasattr(self, '_logger'):
            class_name = self.__class__.__name__
            module_name = self.__class__.__module__
            self._logger = get_logger(f"{module_name}.{class_name}")
        return self._logger

    def log_transition(self, task_id: str, old_status: Any, new_status: Any, **context: Any) -> None:
        """Log a task state transition."""
        self.logger.info(
            "Task transition",
            task_id=task_id,
            from_status=getattr(old_status, "value", old_status),
            to_status=getattr(new_status, "value", new_status),
            **context
        )
