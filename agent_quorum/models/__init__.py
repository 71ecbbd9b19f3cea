"""
Data models and error taxonomy for Agent Quorum.
"""

from .core import (
    Agent, AgentStatus, AgentType, AnalysisDepth, AnalysisType, ConsensusLevel,
    ExecutionMode, HealthWindow, Opinion, Recommendation, Result, Task, TaskSpec, TaskStatus,
    assign_agent_types, calculate_priority
)
from .errors import (
    AgentQuorumError, AgentTimeout, AllParticipantsFailed, InvalidTransition,
    NoAvailableAgent, OrchestrationTimeout, PartialFailure, PersistenceUnavailable,
    SessionTimeout, TaskCancelled, Unauthorized, ValidationError
)

__all__ = [
    'Agent', 'AgentStatus', 'AgentType', 'AnalysisDepth', 'AnalysisType', 'ConsensusLevel',
    'ExecutionMode', 'HealthWindow', 'Opinion', 'Recommendation', 'Result', 'Task', 'TaskSpec', 'TaskStatus',
    'assign_agent_types', 'calculate_priority',
    'AgentQuorumError', 'AgentTimeout', 'AllParticipantsFailed', 'InvalidTransition',
    'NoAvailableAgent', 'OrchestrationTimeout', 'PartialFailure', 'PersistenceUnavailable',
    'SessionTimeout', 'TaskCancelled', 'Unauthorized', 'ValidationError',
]
