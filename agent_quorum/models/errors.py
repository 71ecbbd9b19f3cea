"""
Error handling models and exceptions for Agent Quorum.
"""

from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, Dict, Any
from datetime import datetime
from enum import Enum


class ErrorSeverity(str, Enum):
    """Error severity levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(str, Enum):
    """Categories of errors."""
    VALIDATION = "validation"
    STATE = "state"
    AUTHORIZATION = "authorization"
    AVAILABILITY = "availability"
    EXECUTION = "execution"
    TIMEOUT = "timeout"
    PERSISTENCE = "persistence"
    SYSTEM = "system"


class ErrorDetails(BaseModel):
    """Detailed error information."""
    error_id: str = Field(..., min_length=1)
    category: ErrorCategory
    severity: ErrorSeverity
    message: str = Field(..., min_length=1)
    error_type: str = "Exception"
    context: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.now)
    agent_id: Optional[str] = None
    task_id: Optional[str] = None
    recoverable: bool = True


class PartialFailure(BaseModel):
    """One participant's failure inside a strategy run.

    Recorded as data on the task, never raised.
    """
    model_config = ConfigDict(frozen=True)

    agent_id: str = Field(..., min_length=1)
    error_type: str
    message: str
    round: int = Field(default=1, ge=1)
    timestamp: datetime = Field(default_factory=datetime.now)

    @classmethod
    def from_exception(cls, agent_id: str, error: BaseException, round: int = 1) -> "PartialFailure":
        message = getattr(error, "message", None) or str(error) or type(error).__name__
        return cls(agent_id=agent_id, error_type=type(error).__name__, message=message, round=round)


# Custom exceptions
class AgentQuorumError(Exception):
    """Base exception for Agent Quorum."""

    def __init__(self, message: str, category: ErrorCategory = ErrorCategory.SYSTEM,
                 severity: ErrorSeverity = ErrorSeverity.MEDIUM, **kwargs):
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.context = kwargs


class ValidationError(AgentQuorumError):
    """Rejected input to a factory or operation."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, ErrorCategory.VALIDATION, ErrorSeverity.HIGH, **kwargs)


class InvalidTransition(AgentQuorumError):
    """Illegal state-machine move."""

    def __init__(self, task_id: str, current: Any, attempted: str, **kwargs):
        current_value = getattr(current, "value", current)
        super().__init__(
            f"Cannot {attempted} task {task_id} in state {current_value}",
            ErrorCategory.STATE, ErrorSeverity.MEDIUM,
            task_id=task_id, current_status=current_value, attempted=attempted, **kwargs
        )
        self.task_id = task_id
        self.current = current


class Unauthorized(AgentQuorumError):
    """Actor lacks permission for the requested mutation."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, ErrorCategory.AUTHORIZATION, ErrorSeverity.HIGH, **kwargs)


class NoAvailableAgent(AgentQuorumError):
    """Selection found no eligible candidate."""

    def __init__(self, message: str = "No available agent", **kwargs):
        super().__init__(message, ErrorCategory.AVAILABILITY, ErrorSeverity.HIGH, **kwargs)


class AllParticipantsFailed(AgentQuorumError):
    """Every agent in a strategy run failed."""

    def __init__(self, message: str = "All participants failed", failures=None, **kwargs):
        super().__init__(message, ErrorCategory.EXECUTION, ErrorSeverity.HIGH, **kwargs)
        self.failures = list(failures or [])


class OrchestrationTimeout(AgentQuorumError):
    """Bounded wait exceeded."""

    def __init__(self, message: str, timeout_seconds: float, **kwargs):
        super().__init__(message, ErrorCategory.TIMEOUT, ErrorSeverity.MEDIUM,
                         timeout_seconds=timeout_seconds, **kwargs)
        self.timeout_seconds = timeout_seconds


class AgentTimeout(OrchestrationTimeout):
    """A single agent call exceeded its timeout."""

    def __init__(self, agent_id: str, timeout_seconds: float, **kwargs):
        super().__init__(f"Agent {agent_id} timed out after {timeout_seconds}s",
                         timeout_seconds, agent_id=agent_id, **kwargs)
        self.agent_id = agent_id


class SessionTimeout(OrchestrationTimeout):
    """A whole task exceeded its wall-clock budget."""

    def __init__(self, task_id: str, timeout_seconds: float, **kwargs):
        super().__init__(f"Task {task_id} timed out after {timeout_seconds}s",
                         timeout_seconds, task_id=task_id, **kwargs)
        self.task_id = task_id


class PersistenceUnavailable(AgentQuorumError):
    """The storage collaborator failed."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, ErrorCategory.PERSISTENCE, ErrorSeverity.CRITICAL, **kwargs)


class TaskCancelled(AgentQuorumError):
    """Raised inside a strategy run once its task has been cancelled."""

    def __init__(self, task_id: str, **kwargs):
        super().__init__(f"Task {task_id} was cancelled", ErrorCategory.STATE, ErrorSeverity.LOW,
                         task_id=task_id, **kwargs)
        self.task_id = task_id
