"""
Agent registry and selector.

The registry owns the shared per-agent load and performance counters; every
mutation of a single agent happens under that agent's lock. The selector is a
pure function of the agents it is given.
"""

import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import AsyncIterator, Callable, Dict, Iterable, List, Optional

from ..memory.persistence import PersistenceBackend
from ..models.core import Agent, AgentStatus, AgentType
from ..models.errors import NoAvailableAgent, PersistenceUnavailable, ValidationError
from ..utils.config import HealthConfig
from ..utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class CallLease:
    """Handle yielded for one agent call; the caller records the outcome on it."""
    agent_id: str
    started_at: float = field(default_factory=time.monotonic)
    confidence: Optional[float] = None
    succeeded: bool = False

    def record_success(self, confidence: float) -> None:
        self.confidence = confidence
        self.succeeded = True


@dataclass
class HealthReport:
    """Outcome of one health sweep."""
    checked: int = 0
    healthy: List[str] = field(default_factory=list)
    marked_unhealthy: Dict[str, List[str]] = field(default_factory=dict)
    reactivated: List[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=datetime.now)


def selection_key(agent: Agent):
    """Ascending sort key: least loaded, best performing, fastest, first registered."""
    return (
        agent.load_rate,
        -agent.performance_score,
        agent.avg_response_time_ms,
        agent.sequence,
    )


class AgentSelector:
    """Picks the best agent(s) from a candidate set by a deterministic multi-key comparison."""

    def rank(self, candidates: Iterable[Agent], require_available: bool = True) -> List[Agent]:
        """Return candidates ordered best first, optionally filtered to available ones."""
        pool = [a for a in candidates if a.is_available] if require_available else list(candidates)
        return sorted(pool, key=selection_key)

    def select(self, candidates: Iterable[Agent], require_available: bool = True) -> Agent:
        """
        Select the best candidate.

        Args:
            candidates: Agents to choose from
            require_available: Only consider ACTIVE agents below their concurrency limit

        Returns:
            Agent: The chosen agent

        Raises:
            NoAvailableAgent: If no candidate qualifies
        """
        ranked = self.rank(candidates, require_available)
        if not ranked:
            raise NoAvailableAgent("No eligible agent among candidates")
        return ranked[0]


class AgentRegistry:
    """
    Registry of known agents with load and performance tracking.

    Args:
        persistence: Optional storage collaborator; agents are written on
            registration and on status changes
        health_config: Limits of the health predicate
        clock: Source of "now"
    """

    def __init__(self, persistence: Optional[PersistenceBackend] = None,
                 health_config: Optional[HealthConfig] = None,
                 clock: Callable[[], datetime] = datetime.now):
        self.persistence = persistence
        self.health_config = health_config or HealthConfig()
        self._clock = clock
        self._agents: Dict[str, Agent] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._sequence = 0
        self.logger = get_logger(f"{__name__}.AgentRegistry")

    async def register(self, name: str, agent_type: AgentType, max_concurrency: int = 5,
                       agent_id: Optional[str] = None) -> Agent:
        """
        Register a new agent.

        Args:
            name: Display name
            agent_type: Analytical capability
            max_concurrency: Maximum simultaneous calls
            agent_id: Identifier, generated when omitted

        Returns:
            Agent: The registered agent

        Raises:
            ValidationError: If the id is already registered or the limits are invalid
            PersistenceUnavailable: If the agent could not be stored
        """
        agent_id = agent_id or f"{agent_type.value}-{uuid.uuid4().hex[:8]}"
        if agent_id in self._agents:
            raise ValidationError(f"Agent {agent_id} is already registered", agent_id=agent_id)
        if max_concurrency < 1:
            raise ValidationError("max_concurrency must be at least 1", agent_id=agent_id)

        now = self._clock()
        agent = Agent(
            agent_id=agent_id,
            name=name,
            agent_type=agent_type,
            max_concurrency=max_concurrency,
            registered_at=now,
            last_active_time=now,
            sequence=self._sequence,
        )
        if self.persistence is not None:
            await self.persistence.save_agent(agent)

        self._sequence += 1
        self._agents[agent_id] = agent
        self._locks[agent_id] = asyncio.Lock()
        self.logger.info(f"Registered agent {agent_id}", agent_type=agent_type.value)
        return agent

    async def load(self) -> int:
        """Restore agents from persistence; returns how many were loaded."""
        if self.persistence is None:
            return 0
        loaded = 0
        for agent in sorted(await self.persistence.list_agents(), key=lambda a: a.sequence):
            if agent.agent_id in self._agents:
                continue
            # Leases do not survive a restart.
            agent.current_concurrency = 0
            if agent.status == AgentStatus.BUSY:
                agent.status = AgentStatus.ACTIVE
            self._agents[agent.agent_id] = agent
            self._locks[agent.agent_id] = asyncio.Lock()
            self._sequence = max(self._sequence, agent.sequence + 1)
            loaded += 1
        self.logger.info(f"Loaded {loaded} agents from persistence")
        return loaded

    def get(self, agent_id: str) -> Optional[Agent]:
        return self._agents.get(agent_id)

    def require(self, agent_id: str) -> Agent:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise NoAvailableAgent(f"Unknown agent {agent_id}", agent_id=agent_id)
        return agent

    def list_agents(self, agent_type: Optional[AgentType] = None,
                    active_only: bool = False) -> List[Agent]:
        agents = sorted(self._agents.values(), key=lambda a: a.sequence)
        if agent_type is not None:
            agents = [a for a in agents if a.agent_type == agent_type]
        if active_only:
            agents = [a for a in agents if a.enabled and a.status in (AgentStatus.ACTIVE, AgentStatus.BUSY)]
        return agents

    def agents_by_type(self, active_only: bool = True) -> Dict[AgentType, List[Agent]]:
        grouped: Dict[AgentType, List[Agent]] = {}
        for agent in self.list_agents(active_only=active_only):
            grouped.setdefault(agent.agent_type, []).append(agent)
        return grouped

    async def _set_status(self, agent_id: str, status: AgentStatus, enabled: Optional[bool] = None,
                          **fields) -> Agent:
        agent = self.require(agent_id)
        update = dict(fields, status=status, enabled=agent.enabled if enabled is None else enabled)
        updated = agent.model_copy(update=update)
        if self.persistence is not None:
            await self.persistence.save_agent(updated)
        async with self._locks[agent_id]:
            for name in update:
                setattr(agent, name, getattr(updated, name))
        return agent

    async def activate(self, agent_id: str) -> Agent:
        agent = await self._set_status(agent_id, AgentStatus.ACTIVE, enabled=True,
                                       error_since=None, last_active_time=self._clock())
        self.logger.info(f"Activated agent {agent_id}")
        return agent

    async def deactivate(self, agent_id: str) -> Agent:
        """Take an agent out of rotation; agents are never deleted."""
        agent = await self._set_status(agent_id, AgentStatus.INACTIVE)
        self.logger.info(f"Deactivated agent {agent_id}")
        return agent

    async def set_enabled(self, agent_id: str, enabled: bool) -> Agent:
        agent = self.require(agent_id)
        return await self._set_status(agent_id, agent.status, enabled=enabled)

    @asynccontextmanager
    async def lease(self, agent_id: str) -> AsyncIterator[CallLease]:
        """
        Scoped assignment of one call to an agent.

        Increments the agent's concurrency on entry and always decrements it
        on exit, folding the call's response time and confidence into the
        rolling averages.

        Raises:
            NoAvailableAgent: If the agent is unknown, disabled, not ACTIVE or saturated
        """
        agent = self.require(agent_id)
        async with self._locks[agent_id]:
            if not agent.is_available:
                raise NoAvailableAgent(
                    f"Agent {agent_id} is not available (status={agent.status.value}, "
                    f"load={agent.current_concurrency}/{agent.max_concurrency})",
                    agent_id=agent_id
                )
            agent.current_concurrency += 1
            agent.last_active_time = self._clock()
            if agent.current_concurrency >= agent.max_concurrency:
                agent.status = AgentStatus.BUSY

        call = CallLease(agent_id=agent_id)
        try:
            yield call
        finally:
            elapsed_ms = (time.monotonic() - call.started_at) * 1000
            async with self._locks[agent_id]:
                agent.current_concurrency = max(0, agent.current_concurrency - 1)
                if agent.status == AgentStatus.BUSY and agent.current_concurrency < agent.max_concurrency:
                    agent.status = AgentStatus.ACTIVE
                agent.record_call(elapsed_ms, call.confidence if call.succeeded else None)

    async def _update_counters(self, agent_ids: Iterable[str], field_name: str) -> None:
        for agent_id in agent_ids:
            agent = self._agents.get(agent_id)
            if agent is None:
                self.logger.warning(f"Counter update for unknown agent {agent_id}")
                continue
            async with self._locks[agent_id]:
                setattr(agent, field_name, getattr(agent, field_name) + 1)

    async def record_task_started(self, agent_ids: Iterable[str]) -> None:
        await self._update_counters(agent_ids, "total_tasks")

    async def record_task_completed(self, agent_ids: Iterable[str]) -> None:
        await self._update_counters(agent_ids, "completed_tasks")

    async def record_task_failed(self, agent_ids: Iterable[str]) -> None:
        await self._update_counters(agent_ids, "failed_tasks")

    async def record_accuracy(self, agent_id: str, accuracy: float) -> None:
        """Fold externally measured prediction accuracy into the agent's average."""
        if not 0.0 <= accuracy <= 1.0:
            raise ValidationError("accuracy must be within [0, 1]", agent_id=agent_id)
        agent = self.require(agent_id)
        async with self._locks[agent_id]:
            agent.record_accuracy(accuracy)

    def health_issues(self, agent: Agent, now: Optional[datetime] = None) -> List[str]:
        """
        Reasons the agent fails the health predicate; empty when healthy.

        Success rate and response time are measured over the agent's current
        health window, so an agent restored after an error is judged on the
        work it does from then on.
        """
        now = now or self._clock()
        issues = []
        if not agent.enabled:
            issues.append("disabled")
        inactivity = timedelta(seconds=self.health_config.inactivity_threshold_seconds)
        if (agent.status in (AgentStatus.ACTIVE, AgentStatus.BUSY)
                and agent.last_active_time is not None
                and now - agent.last_active_time > inactivity):
            issues.append("inactive")
        success_rate = agent.window_success_rate
        if success_rate is not None and success_rate < self.health_config.min_success_rate:
            issues.append(f"success rate {success_rate:.2f}")
        response_time = agent.window_response_time_ms
        if response_time > self.health_config.max_response_time_ms:
            issues.append(f"response time {response_time:.0f}ms")
        return issues

    def is_healthy(self, agent: Agent, now: Optional[datetime] = None) -> bool:
        return not self.health_issues(agent, now)

    def _recovery_issues(self, agent: Agent, now: datetime) -> List[str]:
        """Reasons an ERROR agent must stay out of rotation."""
        if not agent.enabled:
            return ["disabled"]
        recovery = timedelta(seconds=self.health_config.recovery_after_seconds)
        if agent.error_since is not None and now - agent.error_since < recovery:
            return ["recovering"]
        return []

    async def sweep_health(self, now: Optional[datetime] = None) -> HealthReport:
        """
        Flag unhealthy agents as ERROR and restore ERROR agents whose recovery
        period has passed.

        A restored agent gets a fresh activity timestamp and a new health
        window; it is marked ERROR again by a later sweep if its new work
        fails the predicate. INACTIVE agents were taken out of rotation
        deliberately and are left alone.
        """
        now = now or self._clock()
        report = HealthReport(timestamp=now)

        for agent in self.list_agents():
            if agent.status == AgentStatus.INACTIVE:
                continue
            report.checked += 1
            try:
                if agent.status == AgentStatus.ERROR:
                    issues = self._recovery_issues(agent, now)
                    if issues:
                        report.marked_unhealthy[agent.agent_id] = issues
                        continue
                    restored = agent.model_copy()
                    restored.open_health_window(now)
                    await self._set_status(
                        agent.agent_id, AgentStatus.ACTIVE,
                        error_since=None,
                        last_active_time=now,
                        health_window=restored.health_window,
                    )
                    report.reactivated.append(agent.agent_id)
                    report.healthy.append(agent.agent_id)
                    self.logger.info(f"Agent {agent.agent_id} reactivated")
                    continue

                issues = self.health_issues(agent, now)
                if issues:
                    await self._set_status(agent.agent_id, AgentStatus.ERROR, error_since=now)
                    self.logger.warning(f"Agent {agent.agent_id} marked unhealthy", issues=issues)
                    report.marked_unhealthy[agent.agent_id] = issues
                else:
                    report.healthy.append(agent.agent_id)
            except PersistenceUnavailable as e:
                self.logger.error(f"Could not store health status of {agent.agent_id}: {e.message}")

        self.logger.info(
            "Health sweep finished",
            checked=report.checked,
            unhealthy=len(report.marked_unhealthy),
            reactivated=len(report.reactivated)
        )
        return report

    async def flush(self) -> int:
        """Write every agent's current counters to persistence."""
        if self.persistence is None:
            return 0
        for agent in self.list_agents():
            await self.persistence.save_agent(agent)
        return len(self._agents)

    def get_registry_status(self) -> Dict[str, object]:
        agents = self.list_agents()
        by_status: Dict[str, int] = {}
        for agent in agents:
            by_status[agent.status.value] = by_status.get(agent.status.value, 0) + 1
        return {
            "total_agents": len(agents),
            "by_status": by_status,
            "by_type": {t.value: len(a) for t, a in self.agents_by_type(active_only=False).items()},
            "current_load": sum(a.current_concurrency for a in agents),
            "capacity": sum(a.max_concurrency for a in agents),
        }
