"""
Analysis producer interface and registry.

A producer turns a topic and context into one Opinion for one agent. How it
gets there (templates, heuristics, scraped data) is its own business.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from ..models.core import AgentType, ExecutionMode, Opinion
from ..models.errors import NoAvailableAgent
from ..utils.logging import get_logger


class AnalysisRequest(BaseModel):
    """Everything a producer is told about the call it is serving."""
    task_id: str
    agent_id: str
    agent_type: AgentType
    topic: str
    mode: ExecutionMode = ExecutionMode.PARALLEL
    context: Dict[str, Any] = Field(default_factory=dict)
    prior_opinions: List[Opinion] = Field(default_factory=list)
    round: int = Field(default=1, ge=1)


class AnalysisProducer(ABC):
    """
    Abstract base class for analysis producers.

    ``produce`` may be a coroutine function or a plain function; plain
    functions are run in a worker thread.
    """

    def __init__(self, name: str):
        self.name = name
        self.logger = get_logger(f"agent_quorum.agents.{name}")

    @abstractmethod
    async def produce(self, request: AnalysisRequest) -> Opinion:
        """
        Produce this agent's opinion on the request's topic.

        Args:
            request: Topic, context and prior opinions

        Returns:
            Opinion: Attributed to ``request.agent_id`` and ``request.round``
        """
        pass


class ProducerRegistry:
    """Maps agent types, and optionally individual agent ids, to producers."""

    def __init__(self):
        self._by_type: Dict[AgentType, AnalysisProducer] = {}
        self._by_agent: Dict[str, AnalysisProducer] = {}
        self.logger = get_logger(f"{__name__}.ProducerRegistry")

    def register(self, key: Union[AgentType, str], producer: AnalysisProducer) -> None:
        """
        Register a producer for every agent of a type, or for one agent id.

        Args:
            key: AgentType, or an agent id to override the type's producer
            producer: Producer instance
        """
        if isinstance(key, AgentType):
            self._by_type[key] = producer
        else:
            self._by_agent[key] = producer
        self.logger.info(f"Registered producer {producer.name}", key=getattr(key, "value", key))

    def resolve(self, agent_id: str, agent_type: AgentType) -> AnalysisProducer:
        producer = self._by_agent.get(agent_id) or self._by_type.get(agent_type)
        if producer is None:
            raise NoAvailableAgent(
                f"No analysis producer for agent {agent_id} ({agent_type.value})",
                agent_id=agent_id
            )
        return producer

    def get(self, agent_type: AgentType) -> Optional[AnalysisProducer]:
        return self._by_type.get(agent_type)

    def registered_types(self) -> List[AgentType]:
        return list(self._by_type)
