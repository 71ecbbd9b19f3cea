"""
Error classification, logging and statistics for agent failures.
"""

import asyncio
import uuid
from collections import defaultdict
from typing import Any, Dict, Optional

from ..models.errors import (
    AgentQuorumError, ErrorCategory, ErrorDetails, ErrorSeverity
)
from .logging import get_logger


def describe_error(error: BaseException) -> str:
    """Human-readable failure reason stored on a task."""
    if isinstance(error, AgentQuorumError):
        return f"{type(error).__name__}: {error.message}"
    if isinstance(error, asyncio.TimeoutError):
        return "Timeout: operation exceeded its time budget"
    text = str(error)
    return f"{type(error).__name__}: {text}" if text else type(error).__name__


class ErrorHandler:
    """Classifies agent failures and keeps per-agent error statistics."""

    def __init__(self):
        self.logger = get_logger(f"{__name__}.ErrorHandler")
        self.error_stats: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))

    def handle_agent_error(
        self,
        agent_id: str,
        error: BaseException,
        task_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> ErrorDetails:
        """Record a failure raised while an agent produced its opinion."""
        context = dict(context or {})
        error_details = self._create_error_details(error, context, agent_id=agent_id, task_id=task_id)
        self._log_error(error_details)
        self._update_error_stats(agent_id, error_details.category.value)
        return error_details

    def _create_error_details(
        self,
        error: BaseException,
        context: Dict[str, Any],
        agent_id: Optional[str] = None,
        task_id: Optional[str] = None
    ) -> ErrorDetails:
        if isinstance(error, AgentQuorumError):
            category = error.category
            severity = error.severity
            message = error.message
            context.update({k: v for k, v in error.context.items() if k not in context})
        else:
            category = self._classify_error(error)
            severity = self._determine_severity(category)
            message = str(error) or type(error).__name__

        return ErrorDetails(
            error_id=str(uuid.uuid4()),
            category=category,
            severity=severity,
            message=message,
            error_type=type(error).__name__,
            context=context,
            agent_id=agent_id,
            task_id=task_id,
            recoverable=self._is_recoverable(category)
        )

    def _classify_error(self, error: BaseException) -> ErrorCategory:
        """Classify error into appropriate category."""
        if isinstance(error, asyncio.TimeoutError):
            return ErrorCategory.TIMEOUT

        error_type = type(error).__name__.lower()
        if "timeout" in error_type:
            return ErrorCategory.TIMEOUT
        elif any(keyword in error_type for keyword in ["validation", "value", "type"]):
            return ErrorCategory.VALIDATION
        elif any(keyword in error_type for keyword in ["io", "os", "permission", "storage"]):
            return ErrorCategory.PERSISTENCE
        else:
            return ErrorCategory.EXECUTION

    def _determine_severity(self, category: ErrorCategory) -> ErrorSeverity:
        if category == ErrorCategory.VALIDATION:
            return ErrorSeverity.HIGH
        elif category == ErrorCategory.PERSISTENCE:
            return ErrorSeverity.CRITICAL
        elif category == ErrorCategory.TIMEOUT:
            return ErrorSeverity.MEDIUM
        else:
            return ErrorSeverity.LOW

    def _is_recoverable(self, category: ErrorCategory) -> bool:
        return category not in (ErrorCategory.VALIDATION, ErrorCategory.AUTHORIZATION)

    def _log_error(self, error_details: ErrorDetails):
        """Log error with level matched to its severity."""
        log_data = {
            "error_id": error_details.error_id,
            "category": error_details.category.value,
            "severity": error_details.severity.value,
            "error_type": error_details.error_type,
            "agent_id": error_details.agent_id,
            "task_id": error_details.task_id,
        }

        if error_details.severity == ErrorSeverity.CRITICAL:
            self.logger.critical(error_details.message, **log_data)
        elif error_details.severity == ErrorSeverity.HIGH:
            self.logger.error(error_details.message, **log_data)
        elif error_details.severity == ErrorSeverity.MEDIUM:
            self.logger.warning(error_details.message, **log_data)
        else:
            self.logger.info(error_details.message, **log_data)

    def _update_error_stats(self, agent_id: str, category: str):
        self.error_stats[agent_id][category] += 1
        self.error_stats[agent_id]["total"] += 1

    def get_error_stats(self) -> Dict[str, Dict[str, int]]:
        """Error counts per agent and category."""
        return {agent: dict(counts) for agent, counts in self.error_stats.items()}

    def reset_error_stats(self):
        self.error_stats.clear()
