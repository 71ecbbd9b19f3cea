"""
Pytest configuration and fixtures for Agent Quorum tests.
"""

import asyncio
from typing import Dict, Iterable, List, Optional

import pytest

from agent_quorum.agents.base import AnalysisProducer, AnalysisRequest, ProducerRegistry
from agent_quorum.memory.persistence import InMemoryPersistence
from agent_quorum.models.core import Agent, AgentType, Opinion, Recommendation
from agent_quorum.orchestration.orchestrator import AgentOrchestrator
from agent_quorum.orchestration.registry import AgentRegistry
from agent_quorum.utils.config import OrchestrationConfig, SystemConfig, set_config


class ScriptedProducer(AnalysisProducer):
    """Producer with canned output and per-agent failure, delay and content overrides."""

    def __init__(self, name: str = "scripted", confidence: float = 0.75,
                 recommendation: Recommendation = Recommendation.BUY,
                 content: Optional[str] = None, delay: float = 0.0,
                 failing: Iterable[str] = (), slow: Iterable[str] = (), slow_delay: float = 5.0,
                 contents: Optional[Dict[str, str]] = None,
                 confidences: Optional[Dict[str, float]] = None):
        super().__init__(name)
        self.confidence = confidence
        self.recommendation = recommendation
        self.content = content
        self.delay = delay
        self.failing = set(failing)
        self.slow = set(slow)
        self.slow_delay = slow_delay
        self.contents = contents or {}
        self.confidences = confidences or {}
        self.calls: List[AnalysisRequest] = []
        self.in_flight = 0
        self.peak_in_flight = 0

    async def produce(self, request: AnalysisRequest) -> Opinion:
        self.calls.append(request)
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            delay = self.slow_delay if request.agent_id in self.slow else self.delay
            if delay:
                await asyncio.sleep(delay)
            if request.agent_id in self.failing:
                raise RuntimeError(f"{request.agent_id} data feed down")
            content = self.contents.get(
                request.agent_id,
                self.content or f"{self.recommendation.value} on {request.topic} with steady momentum"
            )
            return Opinion.create(
                agent_id=request.agent_id,
                content=content,
                confidence=self.confidences.get(request.agent_id, self.confidence),
                round=request.round,
                recommendation=self.recommendation,
            )
        finally:
            self.in_flight -= 1


@pytest.fixture(autouse=True)
def reset_global_config():
    """Keep the process-wide configuration from leaking between tests."""
    set_config(None)
    yield
    set_config(None)


@pytest.fixture
def fast_config() -> SystemConfig:
    """Configuration with timeouts short enough for tests."""
    return SystemConfig(
        orchestration=OrchestrationConfig(
            worker_pool_size=8,
            max_concurrent_sessions=4,
            agent_timeout_seconds=1.0,
            session_timeout_seconds=5.0,
        )
    )


@pytest.fixture
def producer() -> ScriptedProducer:
    return ScriptedProducer()


@pytest.fixture
def producers(producer: ScriptedProducer) -> ProducerRegistry:
    registry = ProducerRegistry()
    for agent_type in AgentType:
        registry.register(agent_type, producer)
    return registry


@pytest.fixture
def persistence() -> InMemoryPersistence:
    return InMemoryPersistence()


@pytest.fixture
def registry() -> AgentRegistry:
    return AgentRegistry()


@pytest.fixture
def orchestrator(fast_config: SystemConfig, producers: ProducerRegistry) -> AgentOrchestrator:
    return AgentOrchestrator(config=fast_config, producers=producers)


@pytest.fixture
def add_agents():
    """Factory registering agents of the given types with ids ``<type>-<n>``."""

    async def _add(registry: AgentRegistry, *agent_types: AgentType,
                   max_concurrency: int = 5) -> List[Agent]:
        counts: Dict[AgentType, int] = {}
        agents = []
        for agent_type in agent_types:
            counts[agent_type] = counts.get(agent_type, len(registry.list_agents(agent_type))) + 1
            agents.append(await registry.register(
                f"{agent_type.value} analyst {counts[agent_type]}",
                agent_type,
                max_concurrency=max_concurrency,
                agent_id=f"{agent_type.value}-{counts[agent_type]}",
            ))
        return agents

    return _add
