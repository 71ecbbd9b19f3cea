"""
Core Pydantic data models for Agent Quorum.
"""

import time
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import PartialFailure, ValidationError


# Average response time at or below which an agent earns the full response score.
RESPONSE_TIME_TARGET_MS = 5000.0


class AgentType(str, Enum):
    """Analytical capability of an agent."""
    TECHNICAL = "technical"
    FUNDAMENTAL = "fundamental"
    SENTIMENT = "sentiment"
    RISK = "risk"
    MARKET = "market"
    DECISION = "decision"
    MONITORING = "monitoring"


class AgentStatus(str, Enum):
    """Agent status enumeration."""
    ACTIVE = "active"
    INACTIVE = "inactive"
    ERROR = "error"
    BUSY = "busy"


class ExecutionMode(str, Enum):
    """How the participants of a task are run."""
    SINGLE_AGENT = "single_agent"
    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"
    STRUCTURED_DEBATE = "structured_debate"
    CONSENSUS_BUILDING = "consensus_building"


class TaskStatus(str, Enum):
    """Status of orchestrated tasks."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ConsensusLevel(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    ERROR = "error"


class AnalysisType(str, Enum):
    """Kind of analysis requested for a single subject."""
    TECHNICAL = "technical"
    FUNDAMENTAL = "fundamental"
    SENTIMENT = "sentiment"
    REAL_TIME = "real_time"
    COMPREHENSIVE = "comprehensive"


class AnalysisDepth(str, Enum):
    QUICK = "quick"
    STANDARD = "standard"
    DEEP = "deep"


class Recommendation(str, Enum):
    STRONG_BUY = "STRONG_BUY"
    BUY = "BUY"
    HOLD = "HOLD"
    SELL = "SELL"
    STRONG_SELL = "STRONG_SELL"


def _now_millis() -> int:
    return int(time.time() * 1000)


def generate_task_id() -> str:
    """Identifier for single-subject analysis tasks."""
    return f"TASK_{_now_millis()}_{uuid.uuid4().hex[:8].upper()}"


def generate_session_id() -> str:
    """Identifier for multi-agent collaboration sessions."""
    return f"collab_{_now_millis()}_{uuid.uuid4().hex[:8]}"


class HealthWindow(BaseModel):
    """Counters of an agent at the moment its current health window opened."""
    started_at: Optional[datetime] = None
    total_tasks: int = Field(default=0, ge=0)
    completed_tasks: int = Field(default=0, ge=0)
    total_calls: int = Field(default=0, ge=0)
    avg_response_time_ms: float = Field(default=0.0, ge=0.0)


class Agent(BaseModel):
    """A registered unit of analytical capability with load and performance state."""
    agent_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    agent_type: AgentType
    status: AgentStatus = AgentStatus.ACTIVE
    enabled: bool = True
    current_concurrency: int = Field(default=0, ge=0)
    max_concurrency: int = Field(default=5, ge=1)
    total_tasks: int = Field(default=0, ge=0)
    completed_tasks: int = Field(default=0, ge=0)
    failed_tasks: int = Field(default=0, ge=0)
    total_calls: int = Field(default=0, ge=0)
    avg_response_time_ms: float = Field(default=0.0, ge=0.0)
    avg_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    confidence_samples: int = Field(default=0, ge=0)
    avg_accuracy: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    accuracy_samples: int = Field(default=0, ge=0)
    last_active_time: Optional[datetime] = None
    error_since: Optional[datetime] = None
    health_window: HealthWindow = Field(default_factory=HealthWindow)
    registered_at: datetime = Field(default_factory=datetime.now)
    sequence: int = Field(default=0, ge=0)

    @property
    def load_rate(self) -> float:
        return self.current_concurrency / self.max_concurrency

    @property
    def success_rate(self) -> Optional[float]:
        """Completed over attempted tasks, undefined before the first task."""
        if self.total_tasks == 0:
            return None
        return self.completed_tasks / self.total_tasks

    @property
    def window_success_rate(self) -> Optional[float]:
        """Success rate over tasks started since the health window opened."""
        tasks = self.total_tasks - self.health_window.total_tasks
        if tasks <= 0:
            return None
        completed = self.completed_tasks - self.health_window.completed_tasks
        return min(1.0, max(0.0, completed / tasks))

    @property
    def window_response_time_ms(self) -> float:
        """Average response time of the calls made since the health window opened."""
        window = self.health_window
        calls = self.total_calls - window.total_calls
        if calls <= 0:
            return 0.0
        elapsed = self.avg_response_time_ms * self.total_calls - window.avg_response_time_ms * window.total_calls
        return max(0.0, elapsed / calls)

    @property
    def performance_score(self) -> float:
        """Weighted blend of success rate, response speed and confidence in [0, 1]."""
        success = self.success_rate if self.success_rate is not None else 1.0
        if self.avg_response_time_ms <= RESPONSE_TIME_TARGET_MS:
            response_score = 1.0
        else:
            response_score = RESPONSE_TIME_TARGET_MS / self.avg_response_time_ms
        return 0.4 * success + 0.3 * response_score + 0.3 * self.avg_confidence

    @property
    def is_available(self) -> bool:
        return (
            self.enabled
            and self.status == AgentStatus.ACTIVE
            and self.current_concurrency < self.max_concurrency
        )

    def record_call(self, response_time_ms: float, confidence: Optional[float] = None) -> None:
        """Fold one finished call into the rolling averages."""
        self.total_calls += 1
        n = self.total_calls
        self.avg_response_time_ms = (self.avg_response_time_ms * (n - 1) + response_time_ms) / n
        if confidence is not None:
            self.confidence_samples += 1
            m = self.confidence_samples
            self.avg_confidence = (self.avg_confidence * (m - 1) + confidence) / m

    def open_health_window(self, now: datetime) -> None:
        """Judge future health only on work done from now on."""
        self.health_window = HealthWindow(
            started_at=now,
            total_tasks=self.total_tasks,
            completed_tasks=self.completed_tasks,
            total_calls=self.total_calls,
            avg_response_time_ms=self.avg_response_time_ms,
        )

    def record_accuracy(self, accuracy: float) -> None:
        self.accuracy_samples += 1
        n = self.accuracy_samples
        previous = self.avg_accuracy or 0.0
        self.avg_accuracy = (previous * (n - 1) + accuracy) / n


class Opinion(BaseModel):
    """One agent's contribution to a task, optionally scoped to a debate round."""
    model_config = ConfigDict(frozen=True)

    opinion_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    agent_id: str = Field(..., min_length=1)
    agent_type: Optional[AgentType] = None
    content: str
    reasoning: str = ""
    confidence: float = Field(..., ge=0.0, le=1.0)
    round: int = Field(default=1, ge=1)
    recommendation: Optional[Recommendation] = None
    timestamp: datetime = Field(default_factory=datetime.now)

    @classmethod
    def create(cls, agent_id: str, content: str, confidence: float, reasoning: str = "",
               round: int = 1, agent_type: Optional[AgentType] = None,
               recommendation: Optional[Recommendation] = None) -> "Opinion":
        """Validated factory; raises ValidationError on out-of-range input."""
        try:
            return cls(
                agent_id=agent_id,
                agent_type=agent_type,
                content=content,
                reasoning=reasoning,
                confidence=confidence,
                round=round,
                recommendation=recommendation,
            )
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid opinion from {agent_id}: {e}", agent_id=agent_id) from e


class Result(BaseModel):
    """Synthesized outcome of a completed task."""
    model_config = ConfigDict(frozen=True)

    recommendation: Recommendation = Recommendation.HOLD
    confidence: float = Field(..., ge=0.0, le=1.0)
    consensus_score: float = Field(..., ge=0.0, le=1.0)
    consensus_level: ConsensusLevel
    participant_count: int = Field(..., ge=0)
    failed_count: int = Field(default=0, ge=0)
    key_insights: List[str] = Field(default_factory=list)
    synthesis: str = ""
    round_consensus: List[float] = Field(default_factory=list)
    target_price: Optional[float] = Field(default=None, ge=0.0)
    created_at: datetime = Field(default_factory=datetime.now)

    @classmethod
    def error(cls, message: str) -> "Result":
        return cls(
            confidence=0.0,
            consensus_score=0.0,
            consensus_level=ConsensusLevel.ERROR,
            participant_count=0,
            synthesis=f"Collaboration failed: {message}",
        )


class TaskSpec(BaseModel):
    """Request to create a task."""
    topic: str
    mode: ExecutionMode = ExecutionMode.PARALLEL
    participants: List[str] = Field(default_factory=list)
    owner_id: str = Field(..., min_length=1)
    analysis_type: AnalysisType = AnalysisType.COMPREHENSIVE
    analysis_depth: AnalysisDepth = AnalysisDepth.STANDARD
    retry_limit: int = Field(default=3, ge=0)
    rounds: int = Field(default=3, ge=1)
    consensus_threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    context: Dict[str, Any] = Field(default_factory=dict)
    timeout_seconds: Optional[float] = Field(default=None, gt=0)

    @field_validator('participants')
    @classmethod
    def dedupe_participants(cls, v: List[str]) -> List[str]:
        return list(dict.fromkeys(v))


class Task(BaseModel):
    """Orchestrated unit of work: a single-agent analysis or a collaboration session."""
    task_id: str = Field(..., min_length=1)
    topic: str = Field(..., min_length=1)
    mode: ExecutionMode
    participants: List[str] = Field(default_factory=list)
    owner_id: str = Field(..., min_length=1)
    analysis_type: AnalysisType = AnalysisType.COMPREHENSIVE
    analysis_depth: AnalysisDepth = AnalysisDepth.STANDARD
    status: TaskStatus = TaskStatus.PENDING
    progress: float = Field(default=0.0, ge=0.0, le=100.0)
    current_step: Optional[str] = None
    priority: int = Field(default=5, ge=1, le=10)
    retry_count: int = Field(default=0, ge=0)
    retry_limit: int = Field(default=3, ge=0)
    rounds: int = Field(default=3, ge=1)
    consensus_threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    context: Dict[str, Any] = Field(default_factory=dict)
    timeout_seconds: Optional[float] = None
    assigned_agent_id: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result: Optional[Result] = None
    opinions: List[Opinion] = Field(default_factory=list)
    partial_failures: List[PartialFailure] = Field(default_factory=list)
    failure_reason: Optional[str] = None
    cancelled_by: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        if self.status == TaskStatus.FAILED:
            return not self.can_retry
        return self.status in (TaskStatus.COMPLETED, TaskStatus.CANCELLED)

    @property
    def can_retry(self) -> bool:
        return self.status == TaskStatus.FAILED and self.retry_count < self.retry_limit

    @property
    def is_collaboration(self) -> bool:
        return self.mode != ExecutionMode.SINGLE_AGENT


_TYPE_PRIORITY = {
    AnalysisType.REAL_TIME: 3,
    AnalysisType.TECHNICAL: 2,
    AnalysisType.FUNDAMENTAL: 1,
    AnalysisType.COMPREHENSIVE: -1,
}

_DEPTH_PRIORITY = {
    AnalysisDepth.QUICK: 2,
    AnalysisDepth.STANDARD: 1,
    AnalysisDepth.DEEP: -1,
}


def calculate_priority(analysis_type: AnalysisType, depth: AnalysisDepth) -> int:
    """Score a task from 1 (lowest) to 10 (highest) by its type and depth."""
    priority = 5 + _TYPE_PRIORITY.get(analysis_type, 0) + _DEPTH_PRIORITY.get(depth, 0)
    return max(1, min(10, priority))


def assign_agent_types(analysis_type: AnalysisType, depth: AnalysisDepth) -> List[AgentType]:
    """Agent types that take part in an analysis of the given kind."""
    if analysis_type == AnalysisType.TECHNICAL:
        return [AgentType.TECHNICAL]
    if analysis_type == AnalysisType.FUNDAMENTAL:
        return [AgentType.FUNDAMENTAL]
    if analysis_type == AnalysisType.SENTIMENT:
        return [AgentType.SENTIMENT]
    if analysis_type == AnalysisType.REAL_TIME:
        return [AgentType.TECHNICAL, AgentType.MARKET]

    types = [AgentType.TECHNICAL, AgentType.FUNDAMENTAL, AgentType.SENTIMENT]
    if depth == AnalysisDepth.DEEP:
        types.extend([AgentType.RISK, AgentType.MARKET])
    return types
