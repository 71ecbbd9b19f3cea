"""
Execution strategies.

A strategy runs a set of agents against a topic and returns their opinions
together with the failures of the agents that could not produce one. It
never raises for an individual agent; it raises AllParticipantsFailed only
when no opinion at all was produced.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from ..models.core import Agent, ExecutionMode, Opinion
from ..models.errors import AllParticipantsFailed, PartialFailure, TaskCancelled
from ..utils.logging import get_logger
from .consensus import round_consensus

logger = get_logger(__name__)


@dataclass
class AgentOutcome:
    """Either the opinion an agent produced or the failure it ran into."""
    agent_id: str
    opinion: Optional[Opinion] = None
    failure: Optional[PartialFailure] = None

    @property
    def succeeded(self) -> bool:
        return self.opinion is not None


# invoke(agent, topic, context, prior_opinions, round) -> AgentOutcome
Invoker = Callable[[Agent, str, Dict[str, Any], List[Opinion], int], Awaitable[AgentOutcome]]
ProgressReporter = Callable[[float, str], Awaitable[None]]


@dataclass
class StrategyRuntime:
    """Services a strategy needs from the engine running it."""
    task_id: str
    invoke: Invoker
    is_cancelled: Callable[[], bool] = lambda: False
    report_progress: Optional[ProgressReporter] = None
    consensus_threshold: Optional[float] = None

    def raise_if_cancelled(self) -> None:
        if self.is_cancelled():
            raise TaskCancelled(self.task_id)

    async def progress(self, percent: float, step: str) -> None:
        if self.report_progress is not None:
            await self.report_progress(percent, step)


@dataclass
class StrategyOutcome:
    opinions: List[Opinion] = field(default_factory=list)
    partial_failures: List[PartialFailure] = field(default_factory=list)
    round_consensus: List[float] = field(default_factory=list)
    rounds_completed: int = 0


# Share of the progress bar covered by strategy execution; synthesis takes the rest.
EXECUTION_PROGRESS = 90.0


async def fan_out(runtime: StrategyRuntime, agents: Sequence[Agent], topic: str,
                  context: Dict[str, Any], prior: List[Opinion], round: int,
                  on_done: Optional[Callable[[int, int], Awaitable[None]]] = None) -> List[AgentOutcome]:
    """
    Run one call per agent concurrently and wait for all of them.

    Outcomes are returned in participant order. If the caller is cancelled,
    the calls still in flight are cancelled too.
    """
    pending = [
        asyncio.ensure_future(runtime.invoke(agent, topic, dict(context), list(prior), round))
        for agent in agents
    ]
    try:
        finished = 0
        for next_done in asyncio.as_completed(pending):
            await next_done
            finished += 1
            if on_done is not None:
                await on_done(finished, len(pending))
    finally:
        for future in pending:
            if not future.done():
                future.cancel()
    return [future.result() for future in pending]


class ExecutionStrategy(ABC):
    """Base class for strategies."""

    mode: ExecutionMode

    def __init__(self):
        self.logger = get_logger(f"{__name__}.{type(self).__name__}")

    @abstractmethod
    async def execute(self, participants: Sequence[Agent], topic: str, context: Dict[str, Any],
                      rounds: int, runtime: StrategyRuntime) -> StrategyOutcome:
        """
        Run the participants against the topic.

        Args:
            participants: Agents in the order they should be offered work
            topic: Subject of the task
            context: Caller-supplied key/value inputs
            rounds: Round budget for multi-round strategies
            runtime: Invoker, cancellation check and progress reporter

        Returns:
            StrategyOutcome: Opinions and partial failures

        Raises:
            AllParticipantsFailed: If no agent produced an opinion
            TaskCancelled: If the task was cancelled at a suspension point
        """
        pass

    def _finish(self, outcome: StrategyOutcome) -> StrategyOutcome:
        if not outcome.opinions:
            raise AllParticipantsFailed(
                f"All {len({f.agent_id for f in outcome.partial_failures})} participants failed",
                failures=outcome.partial_failures
            )
        if outcome.partial_failures:
            self.logger.warning(
                "Strategy finished with partial failures",
                opinions=len(outcome.opinions),
                failures=len(outcome.partial_failures)
            )
        return outcome


class SingleAgentAnalysis(ExecutionStrategy):
    """One already-selected agent produces one opinion."""

    mode = ExecutionMode.SINGLE_AGENT

    async def execute(self, participants, topic, context, rounds, runtime):
        if len(participants) != 1:
            raise ValueError("Single-agent analysis takes exactly one participant")
        runtime.raise_if_cancelled()
        agent = participants[0]
        result = await runtime.invoke(agent, topic, dict(context), [], 1)
        runtime.raise_if_cancelled()

        outcome = StrategyOutcome(rounds_completed=1)
        if result.succeeded:
            outcome.opinions.append(result.opinion)
        else:
            outcome.partial_failures.append(result.failure)
        await runtime.progress(EXECUTION_PROGRESS, f"{agent.agent_id} finished")
        return self._finish(outcome)


class ParallelAnalysis(ExecutionStrategy):
    """Every agent analyzes the same topic concurrently."""

    mode = ExecutionMode.PARALLEL

    async def execute(self, participants, topic, context, rounds, runtime):
        runtime.raise_if_cancelled()

        async def on_done(finished: int, total: int) -> None:
            await runtime.progress(EXECUTION_PROGRESS * finished / total,
                                   f"{finished}/{total} agents finished")

        results = await fan_out(runtime, participants, topic, context, [], 1, on_done)
        runtime.raise_if_cancelled()

        outcome = StrategyOutcome(rounds_completed=1)
        for result in results:
            if result.succeeded:
                outcome.opinions.append(result.opinion)
            else:
                outcome.partial_failures.append(result.failure)
        return self._finish(outcome)


class SequentialPipeline(ExecutionStrategy):
    """
    Agents run one after another.

    Each step sees the opinions of all earlier successful steps and a context
    extended with their recommendations. A failed step is recorded and
    skipped.
    """

    mode = ExecutionMode.SEQUENTIAL

    async def execute(self, participants, topic, context, rounds, runtime):
        outcome = StrategyOutcome(rounds_completed=1)
        accumulated = dict(context)
        total = len(participants)

        for step, agent in enumerate(participants, 1):
            runtime.raise_if_cancelled()
            result = await runtime.invoke(agent, topic, dict(accumulated), list(outcome.opinions), 1)
            if result.succeeded:
                outcome.opinions.append(result.opinion)
                if result.opinion.recommendation is not None:
                    accumulated[f"{agent.agent_type.value}_view"] = result.opinion.recommendation.value
                accumulated["pipeline_step"] = step
            else:
                outcome.partial_failures.append(result.failure)
                self.logger.warning(f"Pipeline step {step} ({agent.agent_id}) failed, continuing")
            await runtime.progress(EXECUTION_PROGRESS * step / total, f"Step {step}/{total}: {agent.agent_id}")

        runtime.raise_if_cancelled()
        return self._finish(outcome)


class StructuredDebate(ExecutionStrategy):
    """
    Multi-round debate.

    In every round all agents answer concurrently, each informed by the
    previous round's opinions. The debate ends early once a round's
    consensus exceeds the threshold.
    """

    mode = ExecutionMode.STRUCTURED_DEBATE

    def __init__(self, threshold: float = 0.8):
        super().__init__()
        self.threshold = threshold

    def _threshold(self, runtime: StrategyRuntime) -> float:
        return self.threshold

    def _reached(self, score: float, threshold: float) -> bool:
        return score > threshold

    async def execute(self, participants, topic, context, rounds, runtime):
        threshold = self._threshold(runtime)
        outcome = StrategyOutcome()
        previous: List[Opinion] = []

        for round_number in range(1, rounds + 1):
            runtime.raise_if_cancelled()
            results = await fan_out(runtime, participants, topic, context, previous, round_number)
            runtime.raise_if_cancelled()

            round_opinions = [r.opinion for r in results if r.succeeded]
            outcome.partial_failures.extend(r.failure for r in results if not r.succeeded)
            outcome.opinions.extend(round_opinions)
            outcome.rounds_completed = round_number

            if not round_opinions:
                self.logger.warning(f"Round {round_number} produced no opinions")
                await runtime.progress(EXECUTION_PROGRESS * round_number / rounds,
                                       f"Round {round_number}/{rounds}: no opinions")
                continue

            score = round_consensus(round_opinions)
            outcome.round_consensus.append(score)
            previous = round_opinions
            self.logger.info(f"Round {round_number} consensus {score:.3f}", threshold=threshold)
            await runtime.progress(EXECUTION_PROGRESS * round_number / rounds,
                                   f"Round {round_number}/{rounds}: consensus {score:.2f}")

            if self._reached(score, threshold):
                self.logger.info(f"Consensus reached after round {round_number}")
                break

        return self._finish(outcome)


class ConsensusBuilding(StructuredDebate):
    """Debate that stops as soon as a caller-supplied agreement bar is met."""

    mode = ExecutionMode.CONSENSUS_BUILDING

    def _threshold(self, runtime: StrategyRuntime) -> float:
        if runtime.consensus_threshold is not None:
            return runtime.consensus_threshold
        return self.threshold

    def _reached(self, score: float, threshold: float) -> bool:
        return score >= threshold


def default_strategies(debate_threshold: float = 0.8) -> Dict[ExecutionMode, ExecutionStrategy]:
    return {
        ExecutionMode.SINGLE_AGENT: SingleAgentAnalysis(),
        ExecutionMode.PARALLEL: ParallelAnalysis(),
        ExecutionMode.SEQUENTIAL: SequentialPipeline(),
        ExecutionMode.STRUCTURED_DEBATE: StructuredDebate(debate_threshold),
        ExecutionMode.CONSENSUS_BUILDING: ConsensusBuilding(debate_threshold),
    }
