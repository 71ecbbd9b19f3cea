"""
Task lifecycle manager.

Owns the state machine of every task:

    PENDING -> RUNNING -> COMPLETED | FAILED
    PENDING | RUNNING -> CANCELLED
    FAILED -> PENDING            (retry, while retry_count < retry_limit)

Transitions on one task are serialized by a per-task lock. Each transition
is built on a copy of the task, written to persistence and only then swapped
in, so readers observe either the old or the new state.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Set

from ..memory.persistence import PersistenceBackend
from ..memory.result_cache import ResultCache
from ..models.core import (
    ExecutionMode, Opinion, Result, Task, TaskSpec, TaskStatus,
    calculate_priority, generate_session_id, generate_task_id
)
from ..models.errors import (
    InvalidTransition, PartialFailure, PersistenceUnavailable, Unauthorized, ValidationError
)
from ..utils.logging import LoggerMixin
from .registry import AgentRegistry


class TaskLifecycleManager(LoggerMixin):
    """
    State machine and store for tasks.

    Args:
        registry: Agent registry whose task counters follow the transitions
        persistence: Optional storage collaborator
        result_cache: TTL cache for results of completed tasks
        clock: Source of "now"
    """

    def __init__(self, registry: AgentRegistry,
                 persistence: Optional[PersistenceBackend] = None,
                 result_cache: Optional[ResultCache] = None,
                 clock: Callable[[], datetime] = datetime.now):
        self.registry = registry
        self.persistence = persistence
        self.result_cache = result_cache if result_cache is not None else ResultCache()
        self._clock = clock
        self._tasks: Dict[str, Task] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._dirty: Set[str] = set()

    def _lock_for(self, task_id: str) -> asyncio.Lock:
        lock = self._locks.get(task_id)
        if lock is None:
            lock = self._locks[task_id] = asyncio.Lock()
        return lock

    def require(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise ValidationError(f"Unknown task {task_id}", task_id=task_id)
        return task

    def get(self, task_id: str) -> Optional[Task]:
        return self._tasks.get(task_id)

    async def load(self, task_id: str) -> Optional[Task]:
        """Look a task up in memory, falling back to persistence."""
        task = self._tasks.get(task_id)
        if task is None and self.persistence is not None:
            task = await self.persistence.load_task(task_id)
        return task

    def list_tasks(self, status: Optional[TaskStatus] = None,
                   owner_id: Optional[str] = None) -> List[Task]:
        """Tasks ordered by priority (highest first), then age."""
        tasks = [
            t for t in self._tasks.values()
            if (status is None or t.status == status) and (owner_id is None or t.owner_id == owner_id)
        ]
        return sorted(tasks, key=lambda t: (-t.priority, t.created_at))

    def is_cancelled(self, task_id: str) -> bool:
        task = self._tasks.get(task_id)
        return task is not None and task.status == TaskStatus.CANCELLED

    @staticmethod
    def participating_agents(task: Task) -> List[str]:
        """Agents whose counters a task affects; a single-agent task counts only its assignee."""
        if task.mode == ExecutionMode.SINGLE_AGENT:
            return [task.assigned_agent_id] if task.assigned_agent_id else []
        return list(task.participants)

    async def _commit(self, candidate: Task, allow_dirty: bool = False) -> Task:
        """Write the candidate state and swap it in.

        With ``allow_dirty`` a failed write still applies the state in memory
        and leaves the task queued for ``flush``.
        """
        if self.persistence is not None:
            try:
                await self.persistence.save_task(candidate)
            except PersistenceUnavailable as e:
                if not allow_dirty:
                    self.logger.error(f"Transition of {candidate.task_id} not applied: {e.message}")
                    raise
                self._dirty.add(candidate.task_id)
                self.logger.error(f"Task {candidate.task_id} kept in memory only: {e.message}")
            else:
                self._dirty.discard(candidate.task_id)
        self._tasks[candidate.task_id] = candidate
        return candidate

    def _expect(self, task: Task, attempted: str, *allowed: TaskStatus) -> None:
        if task.status not in allowed:
            raise InvalidTransition(task.task_id, task.status, attempted)

    async def create(self, spec: TaskSpec, task_id: Optional[str] = None) -> Task:
        """
        Create a PENDING task.

        Args:
            spec: Topic, mode, participants and owner of the task
            task_id: Explicit identifier, generated when omitted

        Returns:
            Task: The created task

        Raises:
            ValidationError: If the topic or participant list is empty
            PersistenceUnavailable: If the task could not be stored
        """
        topic = spec.topic.strip()
        if not topic:
            raise ValidationError("Task topic must not be empty")
        if not spec.participants:
            raise ValidationError("Task needs at least one participant")

        if task_id is None:
            task_id = generate_task_id() if spec.mode == ExecutionMode.SINGLE_AGENT else generate_session_id()
        if task_id in self._tasks:
            raise ValidationError(f"Task {task_id} already exists", task_id=task_id)

        task = Task(
            task_id=task_id,
            topic=topic,
            mode=spec.mode,
            participants=list(spec.participants),
            owner_id=spec.owner_id,
            analysis_type=spec.analysis_type,
            analysis_depth=spec.analysis_depth,
            priority=calculate_priority(spec.analysis_type, spec.analysis_depth),
            retry_limit=spec.retry_limit,
            rounds=spec.rounds,
            consensus_threshold=spec.consensus_threshold,
            context=dict(spec.context),
            timeout_seconds=spec.timeout_seconds,
            created_at=self._clock(),
        )
        async with self._lock_for(task_id):
            await self._commit(task)
        self.logger.info(f"Created task {task_id}", mode=task.mode.value, priority=task.priority)
        return task

    async def start(self, task_id: str) -> Task:
        """PENDING -> RUNNING."""
        async with self._lock_for(task_id):
            task = self.require(task_id)
            self._expect(task, "start", TaskStatus.PENDING)
            if not task.participants:
                raise InvalidTransition(task_id, task.status, "start without participants")
            candidate = task.model_copy(deep=True, update={
                "status": TaskStatus.RUNNING,
                "started_at": self._clock(),
                "progress": 0.0,
                "current_step": "started",
            })
            await self._commit(candidate)
            await self.registry.record_task_started(self.participating_agents(candidate))
        self.log_transition(task_id, TaskStatus.PENDING, TaskStatus.RUNNING)
        return candidate

    async def assign(self, task_id: str, agent_id: str) -> Task:
        """Bind a running single-agent task to the agent chosen from its candidates."""
        async with self._lock_for(task_id):
            task = self.require(task_id)
            self._expect(task, "assign", TaskStatus.RUNNING)
            if agent_id not in task.participants:
                raise ValidationError(f"Agent {agent_id} is not a candidate of {task_id}", task_id=task_id)
            if task.assigned_agent_id is not None:
                raise InvalidTransition(task_id, task.status, "reassign")
            candidate = task.model_copy(deep=True, update={"assigned_agent_id": agent_id})
            await self._commit(candidate)
            if task.mode == ExecutionMode.SINGLE_AGENT:
                await self.registry.record_task_started([agent_id])
        self.logger.info(f"Assigned {agent_id} to task {task_id}")
        return candidate

    async def update_progress(self, task_id: str, percent: float, step: Optional[str] = None) -> Task:
        """
        Record progress of a running task.

        The percentage is clamped to [0, 100] and never moves backwards.
        Progress is advisory, so a failed write keeps the update in memory.
        """
        async with self._lock_for(task_id):
            task = self.require(task_id)
            self._expect(task, "update progress of", TaskStatus.RUNNING)
            clamped = max(0.0, min(100.0, float(percent)))
            update = {"progress": max(task.progress, clamped)}
            if step is not None:
                update["current_step"] = step
            candidate = task.model_copy(deep=True, update=update)
            return await self._commit(candidate, allow_dirty=True)

    async def record_outcome(self, task_id: str, opinions: Iterable[Opinion],
                             failures: Iterable[PartialFailure]) -> Task:
        """Append opinions and partial failures to a running task's log."""
        async with self._lock_for(task_id):
            task = self.require(task_id)
            self._expect(task, "record opinions on", TaskStatus.RUNNING)
            candidate = task.model_copy(deep=True, update={
                "opinions": task.opinions + list(opinions),
                "partial_failures": task.partial_failures + list(failures),
            })
            return await self._commit(candidate)

    async def complete(self, task_id: str, result: Result) -> Task:
        """
        RUNNING -> COMPLETED, storing the result.

        The task record, which embeds the result, is written first; the
        separate result record is only written once the task is COMPLETED in
        storage. A failed result write is logged and left to the task record.

        Raises:
            PersistenceUnavailable: If the completed task could not be stored;
                nothing is written and the task stays RUNNING
        """
        async with self._lock_for(task_id):
            task = self.require(task_id)
            self._expect(task, "complete", TaskStatus.RUNNING)
            candidate = task.model_copy(deep=True, update={
                "status": TaskStatus.COMPLETED,
                "result": result,
                "progress": 100.0,
                "current_step": "completed",
                "completed_at": self._clock(),
            })
            await self._commit(candidate)
            if self.persistence is not None:
                try:
                    await self.persistence.save_result(task_id, result)
                except PersistenceUnavailable as e:
                    self.logger.error(f"Result of {task_id} stored with the task only: {e.message}")
            await self.registry.record_task_completed(self.participating_agents(candidate))
            self.result_cache.put(task_id, result)
        self.log_transition(task_id, TaskStatus.RUNNING, TaskStatus.COMPLETED,
                            confidence=result.confidence, consensus=result.consensus_level.value)
        return candidate

    async def fail(self, task_id: str, reason: str) -> Task:
        """
        RUNNING -> FAILED.

        Always takes effect in memory; if storage is down the task is queued
        for ``flush`` so it can never be left RUNNING.
        """
        async with self._lock_for(task_id):
            task = self.require(task_id)
            self._expect(task, "fail", TaskStatus.RUNNING)
            candidate = task.model_copy(deep=True, update={
                "status": TaskStatus.FAILED,
                "failure_reason": reason,
                "current_step": "failed",
                "completed_at": self._clock(),
            })
            await self._commit(candidate, allow_dirty=True)
            await self.registry.record_task_failed(self.participating_agents(candidate))
        self.log_transition(task_id, TaskStatus.RUNNING, TaskStatus.FAILED,
                            reason=reason, can_retry=candidate.can_retry)
        return candidate

    async def cancel(self, task_id: str, requester_id: str) -> Task:
        """
        PENDING | RUNNING -> CANCELLED, by the task's owner only.

        Raises:
            Unauthorized: If the requester does not own the task
            InvalidTransition: If the task is no longer PENDING or RUNNING
        """
        async with self._lock_for(task_id):
            task = self.require(task_id)
            if requester_id != task.owner_id:
                raise Unauthorized(
                    f"{requester_id} may not cancel task {task_id}",
                    task_id=task_id, requester_id=requester_id
                )
            self._expect(task, "cancel", TaskStatus.PENDING, TaskStatus.RUNNING)
            previous = task.status
            candidate = task.model_copy(deep=True, update={
                "status": TaskStatus.CANCELLED,
                "cancelled_by": requester_id,
                "current_step": "cancelled",
                "completed_at": self._clock(),
            })
            await self._commit(candidate)
        self.log_transition(task_id, previous, TaskStatus.CANCELLED, cancelled_by=requester_id)
        return candidate

    async def retry(self, task_id: str) -> Task:
        """FAILED -> PENDING while retries remain; clears the previous attempt."""
        async with self._lock_for(task_id):
            task = self._tasks.get(task_id)
            if task is None:
                # Pruned from memory; the stored copy is authoritative.
                task = await self.load(task_id)
                if task is None:
                    raise ValidationError(f"Unknown task {task_id}", task_id=task_id)
                self._tasks[task_id] = task
            self._expect(task, "retry", TaskStatus.FAILED)
            if not task.can_retry:
                raise InvalidTransition(
                    task_id, task.status,
                    f"retry (retry_count {task.retry_count} == retry_limit {task.retry_limit})"
                )
            candidate = task.model_copy(deep=True, update={
                "status": TaskStatus.PENDING,
                "retry_count": task.retry_count + 1,
                "progress": 0.0,
                "current_step": None,
                "started_at": None,
                "completed_at": None,
                "result": None,
                "opinions": [],
                "partial_failures": [],
                "failure_reason": None,
                "assigned_agent_id": None,
            })
            await self._commit(candidate)
            self.result_cache.invalidate(task_id)
        self.log_transition(task_id, TaskStatus.FAILED, TaskStatus.PENDING, retry_count=candidate.retry_count)
        return candidate

    async def get_result(self, task_id: str) -> Optional[Result]:
        """Result of a completed task from the cache, the task itself or persistence."""
        result = self.result_cache.get(task_id)
        if result is not None:
            return result
        task = self._tasks.get(task_id)
        if task is not None and task.result is not None:
            self.result_cache.put(task_id, task.result)
            return task.result
        if self.persistence is not None:
            result = await self.persistence.load_result(task_id)
            if result is None:
                stored = await self.persistence.load_task(task_id)
                if stored is not None and stored.status == TaskStatus.COMPLETED:
                    result = stored.result
            if result is not None:
                self.result_cache.put(task_id, result)
            return result
        return None

    async def flush(self) -> int:
        """Retry writes of tasks whose last transition could not be stored."""
        if self.persistence is None or not self._dirty:
            return 0
        flushed = 0
        for task_id in list(self._dirty):
            async with self._lock_for(task_id):
                task = self._tasks.get(task_id)
                if task is None:
                    self._dirty.discard(task_id)
                    continue
                try:
                    await self.persistence.save_task(task)
                except PersistenceUnavailable as e:
                    self.logger.warning(f"Task {task_id} still not stored: {e.message}")
                    continue
                self._dirty.discard(task_id)
                flushed += 1
        return flushed

    def prune_terminal(self, max_age: timedelta) -> List[str]:
        """
        Drop finished tasks older than ``max_age`` from memory.

        FAILED tasks are pruned too, whether or not retries remain; ``load``
        and ``retry`` read them back from storage. Tasks whose last state was
        never stored stay in memory until ``flush`` succeeds.

        Returns:
            List[str]: Identifiers of the pruned tasks
        """
        finished = (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)
        cutoff = self._clock() - max_age
        stale = [
            task_id for task_id, task in self._tasks.items()
            if task.status in finished and task.completed_at is not None
            and task.completed_at < cutoff and task_id not in self._dirty
        ]
        for task_id in stale:
            del self._tasks[task_id]
            lock = self._locks.get(task_id)
            if lock is not None and not lock.locked():
                del self._locks[task_id]
        if stale:
            self.logger.info(f"Pruned {len(stale)} finished tasks from memory")
        return stale

    def get_statistics(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in TaskStatus}
        for task in self._tasks.values():
            counts[task.status.value] += 1
        counts["total"] = len(self._tasks)
        counts["unsaved"] = len(self._dirty)
        return counts
