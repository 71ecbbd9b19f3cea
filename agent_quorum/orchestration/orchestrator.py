"""
Agent orchestration engine.

The orchestrator is the boundary at which every task runs: it starts the
task, selects agents, runs the task's execution strategy on the shared
worker pool, synthesizes the result and drives the terminal transition.
Every error raised while a task is RUNNING ends in ``fail()``; only caller
contract violations (InvalidTransition, Unauthorized, ValidationError) are
returned to the caller.
"""

import asyncio
import inspect
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from functools import partial
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Sequence, Union

from ..agents.base import AnalysisProducer, AnalysisRequest, ProducerRegistry
from ..memory.persistence import PersistenceBackend
from ..memory.result_cache import ResultCache
from ..models.core import (
    Agent, AgentType, AnalysisDepth, AnalysisType, ExecutionMode, Opinion, Result,
    Task, TaskSpec, TaskStatus, assign_agent_types
)
from ..models.errors import (
    AgentQuorumError, AgentTimeout, AllParticipantsFailed, InvalidTransition,
    NoAvailableAgent, PartialFailure, PersistenceUnavailable, SessionTimeout, TaskCancelled
)
from ..utils.config import SystemConfig, get_config
from ..utils.error_handler import ErrorHandler, describe_error
from ..utils.logging import bind_task_context, clear_task_context, get_logger
from .aggregator import Synthesizer
from .lifecycle import TaskLifecycleManager
from .notifier import EventNotifier, EventType
from .pool import WorkerPool
from .registry import AgentRegistry, AgentSelector
from .strategies import AgentOutcome, ExecutionStrategy, StrategyRuntime, default_strategies

# A finished collaboration counts as successful above this confidence.
SUCCESS_CONFIDENCE = 0.6


@dataclass
class CollaborationRecord:
    """History entry written when a task reaches a terminal state."""
    task_id: str
    topic: str
    mode: ExecutionMode
    participants: List[str]
    status: TaskStatus
    confidence: Optional[float] = None
    consensus_level: Optional[str] = None
    failure_reason: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: datetime = field(default_factory=datetime.now)

    @property
    def successful(self) -> bool:
        return (
            self.status == TaskStatus.COMPLETED
            and self.confidence is not None
            and self.confidence > SUCCESS_CONFIDENCE
        )


class AgentOrchestrator:
    """
    Main orchestrator for multi-agent analysis tasks and collaboration sessions.

    Args:
        config: System configuration, the process default when omitted
        producers: Analysis producers per agent type
        persistence: Optional storage collaborator shared by registry and lifecycle
        registry: Agent registry, created from config when omitted
        notifier: Event notifier, created when omitted
        clock: Source of "now"
    """

    def __init__(self, config: Optional[SystemConfig] = None,
                 producers: Optional[ProducerRegistry] = None,
                 persistence: Optional[PersistenceBackend] = None,
                 registry: Optional[AgentRegistry] = None,
                 notifier: Optional[EventNotifier] = None,
                 clock: Callable[[], datetime] = datetime.now):
        self.config = config or get_config()
        self.logger = get_logger(__name__)
        self._clock = clock

        orchestration = self.config.orchestration
        self.persistence = persistence
        self.registry = registry or AgentRegistry(persistence, self.config.health, clock)
        self.selector = AgentSelector()
        self.result_cache: ResultCache[Result] = ResultCache(self.config.cache.result_ttl_seconds)
        self.lifecycle = TaskLifecycleManager(self.registry, persistence, self.result_cache, clock)
        self.producers = producers or ProducerRegistry()
        self.strategies: Dict[ExecutionMode, ExecutionStrategy] = default_strategies(
            self.config.consensus.debate_threshold
        )
        self.synthesizer = Synthesizer(self.config.consensus)
        self.notifier = notifier or EventNotifier()
        self.error_handler = ErrorHandler()

        self.agent_pool = WorkerPool(orchestration.worker_pool_size, "agents")
        self.session_pool = WorkerPool(orchestration.max_concurrent_sessions, "sessions")

        self._history: Deque[CollaborationRecord] = deque(maxlen=orchestration.history_limit)
        self._last_collaboration: Dict[str, datetime] = {}

    async def initialize(self) -> None:
        """Prepare persistence and restore stored agents."""
        if self.persistence is not None:
            await self.persistence.initialize()
            await self.registry.load()

    def register_producer(self, key: Union[AgentType, str], producer: AnalysisProducer) -> None:
        self.producers.register(key, producer)

    # Task submission

    async def create_task(self, spec: TaskSpec) -> Task:
        """Validate participants against the registry and create a PENDING task."""
        for agent_id in spec.participants:
            self.registry.require(agent_id)
        return await self.lifecycle.create(spec)

    async def submit(self, spec: TaskSpec) -> Task:
        """
        Create a task and run it in the background.

        Returns:
            Task: The PENDING task; follow it with ``get_task`` or notifications
        """
        task = await self.create_task(spec)
        self.session_pool.submit(self._run_in_background(task.task_id))
        return task

    async def run(self, task_id: str) -> Task:
        """
        Run a PENDING task to a terminal state and return it.

        Raises:
            InvalidTransition: If the task is not PENDING
            PersistenceUnavailable: If the RUNNING transition could not be stored
        """
        async with self.session_pool.slot():
            return await self._execute(task_id)

    async def _run_in_background(self, task_id: str) -> None:
        try:
            await self._execute(task_id)
        except AgentQuorumError as e:
            self.logger.error(f"Background run of task {task_id} did not start: {e.message}")

    async def _execute(self, task_id: str) -> Task:
        task = await self.lifecycle.start(task_id)
        bind_task_context(task_id, task.topic)
        self.notifier.publish(EventType.PROGRESS, task_id, task.topic,
                              {"status": task.status.value, "progress": 0.0, "step": "started"})
        timeout = task.timeout_seconds or self.config.orchestration.session_timeout_seconds

        try:
            result = await asyncio.wait_for(self._perform(task), timeout=timeout)
        except TaskCancelled:
            self.logger.info(f"Task {task_id} was cancelled; discarding in-flight work")
        except asyncio.TimeoutError:
            await self._fail(task_id, SessionTimeout(task_id, timeout))
        except AgentQuorumError as e:
            await self._fail(task_id, e)
        except asyncio.CancelledError:
            await self._fail(task_id, "Execution interrupted by orchestrator shutdown")
            raise
        except Exception as e:
            self.logger.exception(f"Unexpected fault while running task {task_id}")
            await self._fail(task_id, e)
        else:
            await self._finish(task_id, result)
        finally:
            clear_task_context()

        final = self.lifecycle.require(task_id)
        self._record_history(final)
        return final

    async def _perform(self, task: Task) -> Result:
        agents = [self.registry.require(agent_id) for agent_id in task.participants]
        if task.mode == ExecutionMode.SINGLE_AGENT:
            chosen = self.selector.select(agents)
            await self.lifecycle.assign(task.task_id, chosen.agent_id)
            agents = [chosen]

        strategy = self.strategies[task.mode]
        runtime = StrategyRuntime(
            task_id=task.task_id,
            invoke=partial(self._invoke, task),
            is_cancelled=partial(self.lifecycle.is_cancelled, task.task_id),
            report_progress=partial(self._report_progress, task.task_id),
            consensus_threshold=task.consensus_threshold,
        )

        try:
            outcome = await strategy.execute(agents, task.topic, task.context, task.rounds, runtime)
        except AllParticipantsFailed as e:
            await self.lifecycle.record_outcome(task.task_id, [], e.failures)
            raise

        await self.lifecycle.record_outcome(task.task_id, outcome.opinions, outcome.partial_failures)
        await self._report_progress(task.task_id, 95.0, "synthesizing")
        return self.synthesizer.synthesize(
            outcome.opinions, outcome.partial_failures, task.topic, outcome.round_consensus,
            current_price=self._current_price(task)
        )

    def _current_price(self, task: Task) -> Optional[float]:
        """Price supplied in the task context, ignored unless it is a non-negative number."""
        price = task.context.get("current_price")
        if price is None:
            return None
        if isinstance(price, bool) or not isinstance(price, (int, float)) or price < 0:
            self.logger.warning(f"Ignoring invalid current_price {price!r}", task_id=task.task_id)
            return None
        return float(price)

    async def _invoke(self, task: Task, agent: Agent, topic: str, context: Dict[str, Any],
                      prior: List[Opinion], round: int) -> AgentOutcome:
        """Run one agent call; any failure becomes that agent's recorded failure."""
        timeout = self.config.orchestration.agent_timeout_seconds
        request = AnalysisRequest(
            task_id=task.task_id,
            agent_id=agent.agent_id,
            agent_type=agent.agent_type,
            topic=topic,
            mode=task.mode,
            context=context,
            prior_opinions=prior,
            round=round,
        )
        try:
            producer = self.producers.resolve(agent.agent_id, agent.agent_type)
            async with self.agent_pool.slot():
                async with self.registry.lease(agent.agent_id) as lease:
                    opinion = await asyncio.wait_for(self._call_producer(producer, request), timeout=timeout)
                    opinion = self._attribute(opinion, agent, round)
                    lease.record_success(opinion.confidence)
            return AgentOutcome(agent.agent_id, opinion=opinion)
        except asyncio.TimeoutError:
            error: BaseException = AgentTimeout(agent.agent_id, timeout)
        except TaskCancelled:
            raise
        except Exception as e:
            error = e

        self.error_handler.handle_agent_error(agent.agent_id, error, task_id=task.task_id,
                                              context={"round": round})
        return AgentOutcome(agent.agent_id, failure=PartialFailure.from_exception(agent.agent_id, error, round))

    @staticmethod
    async def _call_producer(producer: AnalysisProducer, request: AnalysisRequest) -> Opinion:
        if inspect.iscoroutinefunction(producer.produce):
            return await producer.produce(request)
        return await asyncio.to_thread(producer.produce, request)

    @staticmethod
    def _attribute(opinion: Opinion, agent: Agent, round: int) -> Opinion:
        if not isinstance(opinion, Opinion):
            raise TypeError(f"Producer for {agent.agent_id} returned {type(opinion).__name__}, not Opinion")
        update: Dict[str, Any] = {}
        if opinion.agent_id != agent.agent_id:
            update["agent_id"] = agent.agent_id
        if opinion.agent_type is None:
            update["agent_type"] = agent.agent_type
        if opinion.round != round:
            update["round"] = round
        return opinion.model_copy(update=update) if update else opinion

    async def _report_progress(self, task_id: str, percent: float, step: str) -> None:
        try:
            task = await self.lifecycle.update_progress(task_id, percent, step)
        except InvalidTransition:
            if self.lifecycle.is_cancelled(task_id):
                raise TaskCancelled(task_id)
            raise
        self.notifier.publish(EventType.PROGRESS, task_id, task.topic,
                              {"status": task.status.value, "progress": task.progress, "step": step})

    async def _fail(self, task_id: str, error: Union[BaseException, str]) -> None:
        reason = error if isinstance(error, str) else describe_error(error)
        if self.lifecycle.is_cancelled(task_id):
            self.logger.info(f"Task {task_id} already cancelled; not recording failure", reason=reason)
            return
        try:
            task = await self.lifecycle.fail(task_id, reason)
        except InvalidTransition as e:
            self.logger.warning(f"Could not fail task {task_id}: {e.message}")
            return
        self.notifier.publish(EventType.ERROR, task_id, task.topic,
                              {"reason": reason, "can_retry": task.can_retry})

    async def _finish(self, task_id: str, result: Result) -> None:
        try:
            task = await self.lifecycle.complete(task_id, result)
        except InvalidTransition:
            if self.lifecycle.is_cancelled(task_id):
                self.logger.info(f"Task {task_id} cancelled before completion; result discarded")
                return
            raise
        except PersistenceUnavailable as e:
            await self._fail(task_id, e)
            return
        self._last_collaboration[task.topic] = task.completed_at or self._clock()
        self.notifier.publish(EventType.RESULT, task_id, task.topic, {
            "recommendation": result.recommendation.value,
            "confidence": result.confidence,
            "consensus_level": result.consensus_level.value,
        })

    def _record_history(self, task: Task) -> None:
        self._history.append(CollaborationRecord(
            task_id=task.task_id,
            topic=task.topic,
            mode=task.mode,
            participants=list(task.participants),
            status=task.status,
            confidence=task.result.confidence if task.result else None,
            consensus_level=task.result.consensus_level.value if task.result else None,
            failure_reason=task.failure_reason,
            started_at=task.started_at,
            finished_at=task.completed_at or self._clock(),
        ))

    # Caller operations

    async def cancel(self, task_id: str, requester_id: str) -> Task:
        task = await self.lifecycle.cancel(task_id, requester_id)
        self.notifier.publish(EventType.CANCELLED, task_id, task.topic, {"cancelled_by": requester_id})
        return task

    async def retry(self, task_id: str, run: bool = True) -> Task:
        """Reset a FAILED task to PENDING and, by default, run it again."""
        task = await self.lifecycle.retry(task_id)
        if run:
            return await self.run(task_id)
        return task

    def get_task(self, task_id: str) -> Optional[Task]:
        return self.lifecycle.get(task_id)

    async def get_result(self, task_id: str) -> Optional[Result]:
        return await self.lifecycle.get_result(task_id)

    def best_agents(self, agent_type: AgentType, limit: int = 1) -> List[Agent]:
        """Highest-ranked available agents of a type."""
        return self.selector.rank(self.registry.list_agents(agent_type))[:limit]

    def one_agent_per_type(self, agent_types: Optional[Iterable[AgentType]] = None) -> List[Agent]:
        chosen = []
        for agent_type in agent_types or list(AgentType):
            best = self.best_agents(agent_type, 1)
            if best:
                chosen.append(best[0])
        return chosen

    async def analyze(self, topic: str, analysis_type: AnalysisType = AnalysisType.COMPREHENSIVE,
                      depth: AnalysisDepth = AnalysisDepth.STANDARD, owner_id: str = "system",
                      context: Optional[Dict[str, Any]] = None, wait: bool = True) -> Task:
        """
        Analyze one subject with the agent types its analysis type calls for.

        A single type runs as a single-agent task choosing among every agent
        of that type; several types run in parallel with the best agent of each.

        Raises:
            NoAvailableAgent: If no agent of the required types is registered
        """
        agent_types = assign_agent_types(analysis_type, depth)
        if len(agent_types) == 1:
            mode = ExecutionMode.SINGLE_AGENT
            participants = [a.agent_id for a in self.registry.list_agents(agent_types[0])]
        else:
            mode = ExecutionMode.PARALLEL
            participants = [a.agent_id for a in self.one_agent_per_type(agent_types)]
        if not participants:
            raise NoAvailableAgent(
                f"No agents for {analysis_type.value} analysis",
                agent_types=[t.value for t in agent_types]
            )

        spec = TaskSpec(
            topic=topic,
            mode=mode,
            participants=participants,
            owner_id=owner_id,
            analysis_type=analysis_type,
            analysis_depth=depth,
            retry_limit=self.config.orchestration.default_retry_limit,
            context=context or {},
        )
        if not wait:
            return await self.submit(spec)
        task = await self.create_task(spec)
        return await self.run(task.task_id)

    async def batch_analyze(self, topics: Sequence[str],
                            analysis_type: AnalysisType = AnalysisType.COMPREHENSIVE,
                            depth: AnalysisDepth = AnalysisDepth.STANDARD,
                            owner_id: str = "system",
                            context: Optional[Dict[str, Any]] = None) -> Dict[str, Result]:
        """Analyze several subjects concurrently; failed subjects get an ERROR result."""

        async def analyze_one(topic: str) -> Result:
            try:
                task = await self.analyze(topic, analysis_type, depth, owner_id, context)
            except AgentQuorumError as e:
                return Result.error(describe_error(e))
            if task.status == TaskStatus.COMPLETED and task.result is not None:
                return task.result
            return Result.error(task.failure_reason or f"task ended {task.status.value}")

        results = await asyncio.gather(*(analyze_one(topic) for topic in topics))
        return dict(zip(topics, results))

    async def collaborate(self, topic: str, mode: ExecutionMode = ExecutionMode.PARALLEL,
                          participants: Optional[Sequence[str]] = None,
                          agent_types: Optional[Iterable[AgentType]] = None,
                          owner_id: str = "system", rounds: Optional[int] = None,
                          consensus_threshold: Optional[float] = None,
                          context: Optional[Dict[str, Any]] = None,
                          timeout_seconds: Optional[float] = None) -> Task:
        """
        Run a collaboration session and return the finished task.

        Without explicit participants the best available agent of every
        requested type (all types by default) takes part.
        """
        if participants is None:
            participants = [a.agent_id for a in self.one_agent_per_type(agent_types)]
        spec = TaskSpec(
            topic=topic,
            mode=mode,
            participants=list(participants),
            owner_id=owner_id,
            rounds=rounds or self.config.orchestration.default_rounds,
            consensus_threshold=consensus_threshold,
            retry_limit=self.config.orchestration.default_retry_limit,
            context=context or {},
            timeout_seconds=timeout_seconds,
        )
        task = await self.create_task(spec)
        return await self.run(task.task_id)

    # Reporting

    def get_history(self, limit: Optional[int] = None) -> List[CollaborationRecord]:
        records = list(self._history)
        return records[-limit:] if limit else records

    def collaboration_metrics(self) -> Dict[str, Any]:
        records = list(self._history)
        completed = [r for r in records if r.status == TaskStatus.COMPLETED and r.confidence is not None]
        successful = [r for r in records if r.successful]
        return {
            "total_agents": len(self.registry.list_agents()),
            "active_agents": len(self.registry.list_agents(active_only=True)),
            "running_tasks": len(self.lifecycle.list_tasks(TaskStatus.RUNNING)),
            "total_collaborations": len(records),
            "successful_collaborations": len(successful),
            "success_rate": len(successful) / len(records) if records else None,
            "average_confidence": (
                sum(r.confidence for r in completed) / len(completed) if completed else None
            ),
        }

    def last_collaboration_times(self) -> Dict[str, datetime]:
        return dict(self._last_collaboration)

    def prune_tasks(self, max_age: timedelta) -> List[str]:
        """Drop finished tasks older than ``max_age`` along with their event state."""
        pruned = self.lifecycle.prune_terminal(max_age)
        for task_id in pruned:
            self.notifier.cleanup_task(task_id)
        return pruned

    def prune_collaboration_times(self, max_age: timedelta) -> int:
        cutoff = self._clock() - max_age
        stale = [topic for topic, when in self._last_collaboration.items() if when < cutoff]
        for topic in stale:
            del self._last_collaboration[topic]
        return len(stale)

    def get_orchestrator_status(self) -> Dict[str, Any]:
        return {
            "registry": self.registry.get_registry_status(),
            "tasks": self.lifecycle.get_statistics(),
            "agent_pool": self.agent_pool.stats(),
            "session_pool": self.session_pool.stats(),
            "result_cache": self.result_cache.stats(),
            "errors": self.error_handler.get_error_stats(),
            "history_size": len(self._history),
        }

    async def shutdown(self) -> None:
        """Stop background sessions, then store whatever state can still be stored."""
        self.logger.info("Shutting down orchestrator")
        await self.session_pool.shutdown()
        await self.agent_pool.shutdown()
        try:
            await self.lifecycle.flush()
            await self.registry.flush()
        except PersistenceUnavailable as e:
            self.logger.error(f"State not fully stored on shutdown: {e.message}")
        self.logger.info("Orchestrator shutdown complete")
