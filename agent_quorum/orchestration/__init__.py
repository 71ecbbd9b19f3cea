"""
Orchestration engine for Agent Quorum.

This package provides:
- Agent registry, health sweeps and load/performance based selection
- Task lifecycle state machine with retry and cancellation
- Parallel, sequential, debate and consensus-building execution strategies
- Opinion synthesis with similarity-based consensus scoring
- Interval and cron scheduling of collaborations
"""

from .aggregator import Synthesizer, majority_recommendation, target_price
from .consensus import round_consensus, similarity, tokenize, weighted_consensus
from .lifecycle import TaskLifecycleManager
from .notifier import EventNotifier, EventType
from .orchestrator import AgentOrchestrator, CollaborationRecord
from .pool import PoolClosed, WorkerPool
from .registry import AgentRegistry, AgentSelector, CallLease, HealthReport
from .scheduler import CollaborationScheduler, CronTrigger, IntervalTrigger
from .strategies import (
    AgentOutcome,
    ConsensusBuilding,
    ExecutionStrategy,
    ParallelAnalysis,
    SequentialPipeline,
    SingleAgentAnalysis,
    StrategyOutcome,
    StrategyRuntime,
    StructuredDebate,
)

__all__ = [
    # Registry components
    'AgentRegistry',
    'AgentSelector',
    'CallLease',
    'HealthReport',

    # Lifecycle and orchestration
    'TaskLifecycleManager',
    'AgentOrchestrator',
    'CollaborationRecord',
    'EventNotifier',
    'EventType',
    'WorkerPool',
    'PoolClosed',

    # Strategies
    'ExecutionStrategy',
    'StrategyRuntime',
    'StrategyOutcome',
    'AgentOutcome',
    'SingleAgentAnalysis',
    'ParallelAnalysis',
    'SequentialPipeline',
    'StructuredDebate',
    'ConsensusBuilding',

    # Aggregation
    'Synthesizer',
    'majority_recommendation',
    'target_price',
    'similarity',
    'tokenize',
    'round_consensus',
    'weighted_consensus',

    # Scheduling
    'CollaborationScheduler',
    'IntervalTrigger',
    'CronTrigger',
]
