"""
Collaboration scheduler.

Every trigger runs in its own asyncio loop and starts its job as a separate
task, so a slow collaboration never delays another trigger. A tick that
arrives while the previous run of the same trigger is still going is
skipped; missed ticks are not made up.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from croniter import croniter

from ..models.core import Agent, AgentType, ExecutionMode, Task, TaskStatus
from ..models.errors import AgentQuorumError, PersistenceUnavailable, ValidationError
from ..utils.config import SchedulerConfig
from ..utils.logging import get_logger
from .orchestrator import AgentOrchestrator
from .registry import HealthReport

Job = Callable[[], Awaitable[Any]]

SCHEDULER_OWNER = "scheduler"
MAX_EMERGENCY_PARTICIPANTS = 4
MIN_EMERGENCY_PARTICIPANTS = 2

# Types consulted first for each kind of emergency, most relevant first.
EMERGENCY_TYPE_BIAS: Dict[str, List[AgentType]] = {
    "market_crash": [AgentType.DECISION, AgentType.RISK, AgentType.MARKET, AgentType.TECHNICAL,
                     AgentType.FUNDAMENTAL, AgentType.SENTIMENT],
    "volatility_spike": [AgentType.DECISION, AgentType.RISK, AgentType.TECHNICAL, AgentType.MARKET,
                         AgentType.SENTIMENT, AgentType.FUNDAMENTAL],
    "system_error": [AgentType.MONITORING, AgentType.TECHNICAL, AgentType.MARKET,
                     AgentType.FUNDAMENTAL, AgentType.SENTIMENT, AgentType.RISK],
    "data_anomaly": [AgentType.MONITORING, AgentType.TECHNICAL, AgentType.MARKET,
                     AgentType.FUNDAMENTAL, AgentType.SENTIMENT, AgentType.RISK],
}


class Trigger(ABC):
    """A named job fired by a schedule."""

    def __init__(self, name: str, job: Job, respect_global_flag: bool = True):
        self.name = name
        self.job = job
        self.enabled = True
        self.respect_global_flag = respect_global_flag
        self.run_count = 0
        self.failure_count = 0
        self.skipped_count = 0
        self.last_run: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self.loop_task: Optional[asyncio.Task] = None
        self.running_job: Optional[asyncio.Task] = None

    @abstractmethod
    def seconds_until_next(self, now: datetime) -> float:
        pass

    @abstractmethod
    def describe(self) -> str:
        pass

    @property
    def busy(self) -> bool:
        return self.running_job is not None and not self.running_job.done()


class IntervalTrigger(Trigger):
    def __init__(self, name: str, seconds: float, job: Job, respect_global_flag: bool = True):
        if seconds <= 0:
            raise ValidationError(f"Interval of trigger {name} must be positive")
        super().__init__(name, job, respect_global_flag)
        self.seconds = seconds

    def seconds_until_next(self, now: datetime) -> float:
        return self.seconds

    def describe(self) -> str:
        return f"every {self.seconds:g}s"


class CronTrigger(Trigger):
    def __init__(self, name: str, expression: str, job: Job, respect_global_flag: bool = True):
        if not croniter.is_valid(expression):
            raise ValidationError(f"Invalid cron expression for trigger {name}: {expression!r}")
        super().__init__(name, job, respect_global_flag)
        self.expression = expression

    def next_fire_time(self, now: datetime) -> datetime:
        return croniter(self.expression, now).get_next(datetime)

    def seconds_until_next(self, now: datetime) -> float:
        return max(0.0, (self.next_fire_time(now) - now).total_seconds())

    def describe(self) -> str:
        return f"cron '{self.expression}'"


class CollaborationScheduler:
    """
    Time- and event-driven triggers that run orchestration work.

    Args:
        orchestrator: Engine the scheduled sessions run on
        config: Trigger settings and warning floors
        clock: Source of "now"
        sleep: Awaitable used to wait between ticks
    """

    def __init__(self, orchestrator: AgentOrchestrator,
                 config: Optional[SchedulerConfig] = None,
                 clock: Callable[[], datetime] = datetime.now,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.orchestrator = orchestrator
        self.config = config or orchestrator.config.scheduler
        self._clock = clock
        self._sleep = sleep
        self._enabled = self.config.enabled
        self._running = False
        self._triggers: Dict[str, Trigger] = {}
        self.logger = get_logger(f"{__name__}.CollaborationScheduler")

    @property
    def enabled(self) -> bool:
        return self._enabled

    def set_enabled(self, enabled: bool) -> None:
        """Global switch for every trigger that respects it."""
        self._enabled = enabled
        self.logger.info(f"Scheduler {'enabled' if enabled else 'disabled'}")

    def set_trigger_enabled(self, name: str, enabled: bool) -> None:
        self._require(name).enabled = enabled

    def _require(self, name: str) -> Trigger:
        trigger = self._triggers.get(name)
        if trigger is None:
            raise ValidationError(f"Unknown trigger {name}")
        return trigger

    def add_trigger(self, trigger: Trigger) -> Trigger:
        if trigger.name in self._triggers:
            raise ValidationError(f"Trigger {trigger.name} already exists")
        self._triggers[trigger.name] = trigger
        if self._running:
            trigger.loop_task = asyncio.create_task(self._trigger_loop(trigger))
        return trigger

    def every(self, name: str, seconds: float, job: Job, respect_global_flag: bool = True) -> Trigger:
        """Run ``job`` every ``seconds``."""
        return self.add_trigger(IntervalTrigger(name, seconds, job, respect_global_flag))

    def cron(self, name: str, expression: str, job: Job, respect_global_flag: bool = True) -> Trigger:
        """Run ``job`` on a cron expression."""
        return self.add_trigger(CronTrigger(name, expression, job, respect_global_flag))

    def register_default_jobs(self) -> None:
        self.every("health_check", self.config.health_check_interval_seconds, self.run_health_check)
        self.every("market_analysis", self.config.market_analysis_interval_seconds, self.run_market_analysis)
        self.every("risk_assessment", self.config.risk_assessment_interval_seconds, self.run_risk_assessment)
        self.cron("strategy_review", self.config.strategy_review_cron, self.run_strategy_review)
        self.cron("maintenance", self.config.maintenance_cron, self.run_maintenance,
                  respect_global_flag=False)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        for trigger in self._triggers.values():
            trigger.loop_task = asyncio.create_task(self._trigger_loop(trigger))
        self.logger.info(f"Scheduler started with {len(self._triggers)} triggers")

    async def stop(self) -> None:
        """Stop every trigger loop and cancel jobs still running."""
        self._running = False
        tasks = []
        for trigger in self._triggers.values():
            for task in (trigger.loop_task, trigger.running_job):
                if task is not None and not task.done():
                    task.cancel()
                    tasks.append(task)
            trigger.loop_task = None
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self.logger.info("Scheduler stopped")

    async def _trigger_loop(self, trigger: Trigger) -> None:
        while self._running:
            try:
                delay = trigger.seconds_until_next(self._clock())
            except (ValueError, KeyError) as e:
                self.logger.error(f"Trigger {trigger.name} cannot compute its next run: {e}")
                return
            await self._sleep(delay)
            if self._running:
                self.fire(trigger.name)

    def fire(self, name: str) -> Optional[asyncio.Task]:
        """Start a trigger's job in the background unless it is disabled or still running."""
        trigger = self._require(name)
        if not trigger.enabled or (trigger.respect_global_flag and not self._enabled):
            trigger.skipped_count += 1
            self.logger.debug(f"Trigger {name} is disabled; tick skipped")
            return None
        if trigger.busy:
            trigger.skipped_count += 1
            self.logger.warning(f"Trigger {name} still running; tick skipped")
            return None
        trigger.running_job = asyncio.create_task(self._run_job(trigger))
        return trigger.running_job

    async def _run_job(self, trigger: Trigger) -> Any:
        trigger.last_run = self._clock()
        trigger.run_count += 1
        try:
            return await trigger.job()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            trigger.failure_count += 1
            trigger.last_error = str(e)
            self.logger.exception(f"Scheduled job {trigger.name} failed")
            return None

    async def trigger_manually(self, name: str) -> Any:
        """Run a trigger's job now, regardless of the enable flags, and return its outcome."""
        trigger = self._require(name)
        self.logger.info(f"Manually triggering {name}")
        return await self._run_job(trigger)

    def schedule_status(self) -> Dict[str, Any]:
        now = self._clock()
        triggers = {}
        for name, trigger in self._triggers.items():
            entry = {
                "schedule": trigger.describe(),
                "enabled": trigger.enabled,
                "running": trigger.busy,
                "run_count": trigger.run_count,
                "failure_count": trigger.failure_count,
                "skipped_count": trigger.skipped_count,
                "last_run": trigger.last_run.isoformat() if trigger.last_run else None,
                "last_error": trigger.last_error,
            }
            if isinstance(trigger, CronTrigger):
                entry["next_run"] = trigger.next_fire_time(now).isoformat()
            triggers[name] = entry
        return {
            "enabled": self._enabled,
            "running": self._running,
            "in_trading_window": self.config.trading_window.contains(now),
            "triggers": triggers,
        }

    # Jobs

    async def run_health_check(self) -> HealthReport:
        """Sweep agent health and drop expired results from the cache."""
        report = await self.orchestrator.registry.sweep_health(self._clock())
        self.orchestrator.result_cache.sweep_expired()
        return report

    def _best(self, agent_type: AgentType, limit: int) -> List[Agent]:
        return self.orchestrator.best_agents(agent_type, limit)

    async def _run_collaboration(self, label: str, topic: str, mode: ExecutionMode,
                                 participants: List[Agent], **kwargs: Any) -> Optional[Task]:
        try:
            task = await self.orchestrator.collaborate(
                topic, mode,
                participants=[a.agent_id for a in participants],
                owner_id=SCHEDULER_OWNER,
                **kwargs
            )
        except AgentQuorumError as e:
            self.logger.error(f"{label} could not run: {e.message}")
            return None
        if task.status == TaskStatus.COMPLETED:
            self.logger.info(
                f"{label} completed",
                task_id=task.task_id,
                recommendation=task.result.recommendation.value,
                confidence=round(task.result.confidence, 3),
                consensus=task.result.consensus_level.value
            )
        else:
            self.logger.warning(f"{label} ended {task.status.value}", task_id=task.task_id,
                                reason=task.failure_reason)
        return task

    async def run_market_analysis(self) -> Optional[Task]:
        """Market trend collaboration, only inside the trading window."""
        now = self._clock()
        if not self.config.trading_window.contains(now):
            self.logger.debug("Outside trading window; market analysis skipped")
            return None

        participants = self._best(AgentType.MARKET, 2) + self._best(AgentType.TECHNICAL, 2)
        if len(participants) < 2:
            self.logger.warning("Not enough agents for market analysis", available=len(participants))
            return None
        return await self._run_collaboration(
            "Market analysis",
            "Current market trend analysis and opportunity identification",
            ExecutionMode.PARALLEL,
            participants,
        )

    async def run_risk_assessment(self) -> Optional[Task]:
        participants = (
            self._best(AgentType.RISK, 2)
            + self._best(AgentType.DECISION, 2)
            + self._best(AgentType.MONITORING, 2)
        )
        if len(participants) < 2:
            self.logger.warning("Not enough agents for risk assessment", available=len(participants))
            return None

        task = await self._run_collaboration(
            "Risk assessment",
            "Portfolio risk assessment and exposure review",
            ExecutionMode.CONSENSUS_BUILDING,
            participants,
            consensus_threshold=self.config.risk_consensus_threshold,
        )
        if task is not None and task.result is not None \
                and task.result.confidence < self.config.risk_confidence_warning:
            self.logger.warning(
                "Risk assessment confidence below warning level",
                confidence=round(task.result.confidence, 3),
                warning_level=self.config.risk_confidence_warning
            )
        return task

    async def run_strategy_review(self) -> Optional[Task]:
        """Daily debate with one agent of every available type."""
        participants = self.orchestrator.one_agent_per_type()
        if len(participants) < 3:
            self.logger.warning("Strategy review needs at least three agent types",
                                available_types=len(participants))
            return None

        task = await self._run_collaboration(
            "Strategy review",
            "Daily investment strategy review and adjustment",
            ExecutionMode.STRUCTURED_DEBATE,
            participants,
        )
        if task is not None and task.result is not None:
            for insight in task.result.key_insights:
                self.logger.info(f"Strategy insight: {insight}")
        return task

    async def run_maintenance(self) -> Dict[str, Any]:
        """Clear caches, prune history and warn when collaboration quality degrades."""
        orchestrator = self.orchestrator
        cleared = orchestrator.result_cache.clear()
        pruned_tasks = len(orchestrator.prune_tasks(
            timedelta(hours=self.config.terminal_task_retention_hours)
        ))
        try:
            flushed = await orchestrator.lifecycle.flush()
        except PersistenceUnavailable as e:
            self.logger.error(f"Maintenance could not store pending tasks: {e.message}")
            flushed = 0

        metrics = orchestrator.collaboration_metrics()
        warnings = []
        success_rate = metrics["success_rate"]
        if success_rate is not None and success_rate < self.config.success_rate_floor:
            warnings.append(f"success rate {success_rate:.2f} below {self.config.success_rate_floor}")
        average_confidence = metrics["average_confidence"]
        if average_confidence is not None and average_confidence < self.config.confidence_floor:
            warnings.append(f"average confidence {average_confidence:.2f} below {self.config.confidence_floor}")
        for warning in warnings:
            self.logger.warning(f"Collaboration quality degraded: {warning}")

        pruned_times = orchestrator.prune_collaboration_times(
            timedelta(days=self.config.collaboration_retention_days)
        )
        summary = {
            "cleared_cache_entries": cleared,
            "pruned_tasks": pruned_tasks,
            "flushed_tasks": flushed,
            "pruned_collaboration_times": pruned_times,
            "metrics": metrics,
            "warnings": warnings,
        }
        self.logger.info("Maintenance finished", cleared=cleared, pruned_tasks=pruned_tasks,
                         warnings=len(warnings))
        return summary

    def emergency_participants(self, kind: str) -> List[Agent]:
        """Up to four agents biased toward the types relevant to ``kind``, at least two when possible."""
        selector = self.orchestrator.selector
        available = selector.rank(self.orchestrator.registry.list_agents(active_only=True))
        bias = EMERGENCY_TYPE_BIAS.get(kind, list(AgentType))

        chosen: List[Agent] = []
        for agent_type in bias:
            best = next((a for a in available if a.agent_type == agent_type), None)
            if best is not None:
                chosen.append(best)
            if len(chosen) >= MAX_EMERGENCY_PARTICIPANTS:
                break

        for agent in available:
            if len(chosen) >= MIN_EMERGENCY_PARTICIPANTS:
                break
            if agent not in chosen:
                chosen.append(agent)
        return chosen

    async def trigger_emergency(self, kind: str, context: Optional[Dict[str, Any]] = None) -> Optional[Task]:
        """
        Run a fast parallel collaboration on an anomaly.

        Never raises; an emergency that cannot run is logged as an error.
        """
        self.logger.warning(f"Emergency triggered: {kind}", context=context or {})
        participants = self.emergency_participants(kind)
        if len(participants) < MIN_EMERGENCY_PARTICIPANTS:
            self.logger.error(
                f"Emergency {kind} cannot be handled: fewer than {MIN_EMERGENCY_PARTICIPANTS} active agents",
                available=len(participants)
            )
            return None

        emergency_context = {"emergency_type": kind, **(context or {})}
        try:
            return await self._run_collaboration(
                f"Emergency {kind}",
                f"Emergency analysis: {kind}",
                ExecutionMode.PARALLEL,
                participants,
                context=emergency_context,
            )
        except Exception:
            self.logger.exception(f"Emergency {kind} failed")
            return None
