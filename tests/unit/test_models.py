"""
Unit tests for core data models.
"""

import re
from datetime import datetime

import pytest
from hypothesis import given, settings, strategies as st

from agent_quorum.models.core import (
    Agent, AgentStatus, AgentType, AnalysisDepth, AnalysisType, ConsensusLevel, ExecutionMode,
    Opinion, Recommendation, Result, Task, TaskSpec, TaskStatus,
    assign_agent_types, calculate_priority, generate_session_id, generate_task_id
)
from agent_quorum.models.errors import (
    AgentTimeout, ErrorCategory, InvalidTransition, PartialFailure, SessionTimeout, ValidationError
)


class TestAgent:
    """Test Agent model properties."""

    def test_fresh_agent_defaults(self):
        agent = Agent(agent_id="technical-1", name="Technical", agent_type=AgentType.TECHNICAL)
        assert agent.status == AgentStatus.ACTIVE
        assert agent.max_concurrency == 5
        assert agent.load_rate == 0.0
        assert agent.success_rate is None
        assert agent.is_available

    def test_fresh_agent_performance_score(self):
        agent = Agent(agent_id="a", name="A", agent_type=AgentType.RISK)
        # Full success and response credit, no confidence yet.
        assert agent.performance_score == pytest.approx(0.7)

    def test_performance_score_blends_components(self):
        agent = Agent(
            agent_id="a", name="A", agent_type=AgentType.RISK,
            total_tasks=4, completed_tasks=2,
            avg_response_time_ms=10000.0, avg_confidence=0.5
        )
        assert agent.success_rate == 0.5
        assert agent.performance_score == pytest.approx(0.4 * 0.5 + 0.3 * 0.5 + 0.3 * 0.5)

    def test_saturated_agent_is_not_available(self):
        agent = Agent(agent_id="a", name="A", agent_type=AgentType.MARKET,
                      max_concurrency=2, current_concurrency=2)
        assert agent.load_rate == 1.0
        assert not agent.is_available

    @pytest.mark.parametrize("status", [AgentStatus.INACTIVE, AgentStatus.ERROR, AgentStatus.BUSY])
    def test_non_active_agent_is_not_available(self, status):
        agent = Agent(agent_id="a", name="A", agent_type=AgentType.MARKET, status=status)
        assert not agent.is_available

    def test_disabled_agent_is_not_available(self):
        agent = Agent(agent_id="a", name="A", agent_type=AgentType.MARKET, enabled=False)
        assert not agent.is_available

    def test_record_call_averages(self):
        agent = Agent(agent_id="a", name="A", agent_type=AgentType.TECHNICAL)
        agent.record_call(100.0, 0.8)
        agent.record_call(300.0, 0.6)
        assert agent.total_calls == 2
        assert agent.avg_response_time_ms == pytest.approx(200.0)
        assert agent.avg_confidence == pytest.approx(0.7)

    def test_failed_call_does_not_dilute_confidence(self):
        agent = Agent(agent_id="a", name="A", agent_type=AgentType.TECHNICAL)
        agent.record_call(100.0, 0.8)
        agent.record_call(100.0, None)
        assert agent.total_calls == 2
        assert agent.avg_confidence == pytest.approx(0.8)

    def test_record_accuracy(self):
        agent = Agent(agent_id="a", name="A", agent_type=AgentType.TECHNICAL)
        assert agent.avg_accuracy is None
        agent.record_accuracy(1.0)
        agent.record_accuracy(0.5)
        assert agent.avg_accuracy == pytest.approx(0.75)

    def test_health_window_metrics(self):
        agent = Agent(agent_id="a", name="A", agent_type=AgentType.TECHNICAL,
                      total_tasks=4, completed_tasks=1)
        agent.record_call(50000.0)
        assert agent.window_success_rate == 0.25
        assert agent.window_response_time_ms == pytest.approx(50000.0)

        agent.open_health_window(datetime(2024, 3, 4, 12, 0))
        assert agent.window_success_rate is None
        assert agent.window_response_time_ms == 0.0

        agent.total_tasks += 2
        agent.completed_tasks += 2
        agent.record_call(1000.0)
        assert agent.window_success_rate == 1.0
        assert agent.window_response_time_ms == pytest.approx(1000.0)
        assert agent.success_rate == 0.5

    def test_invalid_max_concurrency(self):
        with pytest.raises(Exception):
            Agent(agent_id="a", name="A", agent_type=AgentType.TECHNICAL, max_concurrency=0)


class TestOpinion:
    """Test Opinion creation and validation."""

    def test_create_valid_opinion(self):
        opinion = Opinion.create("technical-1", "BUY on AAPL", 0.8, round=2,
                                 recommendation=Recommendation.BUY)
        assert opinion.agent_id == "technical-1"
        assert opinion.confidence == 0.8
        assert opinion.round == 2
        assert opinion.opinion_id

    @pytest.mark.parametrize("confidence", [-0.1, 1.01, 5.0])
    def test_confidence_out_of_range(self, confidence):
        with pytest.raises(ValidationError):
            Opinion.create("technical-1", "BUY", confidence)

    def test_round_must_be_positive(self):
        with pytest.raises(ValidationError):
            Opinion.create("technical-1", "BUY", 0.5, round=0)

    def test_opinions_are_immutable(self):
        opinion = Opinion.create("technical-1", "BUY", 0.5)
        with pytest.raises(Exception):
            opinion.confidence = 0.9


class TestResult:

    def test_error_result(self):
        result = Result.error("no agents")
        assert result.consensus_level == ConsensusLevel.ERROR
        assert result.confidence == 0.0
        assert result.participant_count == 0
        assert result.recommendation == Recommendation.HOLD
        assert result.synthesis == "Collaboration failed: no agents"


class TestTask:
    """Test Task and TaskSpec models."""

    def test_spec_deduplicates_participants(self):
        spec = TaskSpec(topic="AAPL", participants=["a", "b", "a", "c", "b"], owner_id="alice")
        assert spec.participants == ["a", "b", "c"]

    def test_spec_defaults(self):
        spec = TaskSpec(topic="AAPL", participants=["a"], owner_id="alice")
        assert spec.mode == ExecutionMode.PARALLEL
        assert spec.retry_limit == 3
        assert spec.rounds == 3

    def test_failed_task_with_retries_is_not_terminal(self):
        task = Task(task_id="t", topic="AAPL", mode=ExecutionMode.PARALLEL, participants=["a"],
                    owner_id="alice", status=TaskStatus.FAILED, retry_count=1, retry_limit=2)
        assert task.can_retry
        assert not task.is_terminal

    def test_failed_task_without_retries_is_terminal(self):
        task = Task(task_id="t", topic="AAPL", mode=ExecutionMode.PARALLEL, participants=["a"],
                    owner_id="alice", status=TaskStatus.FAILED, retry_count=2, retry_limit=2)
        assert not task.can_retry
        assert task.is_terminal

    @pytest.mark.parametrize("status,terminal", [
        (TaskStatus.PENDING, False),
        (TaskStatus.RUNNING, False),
        (TaskStatus.COMPLETED, True),
        (TaskStatus.CANCELLED, True),
    ])
    def test_terminal_states(self, status, terminal):
        task = Task(task_id="t", topic="AAPL", mode=ExecutionMode.PARALLEL, participants=["a"],
                    owner_id="alice", status=status)
        assert task.is_terminal is terminal

    def test_is_collaboration(self):
        single = Task(task_id="t", topic="AAPL", mode=ExecutionMode.SINGLE_AGENT,
                      participants=["a"], owner_id="alice")
        debate = Task(task_id="u", topic="AAPL", mode=ExecutionMode.STRUCTURED_DEBATE,
                      participants=["a", "b"], owner_id="alice")
        assert not single.is_collaboration
        assert debate.is_collaboration

    def test_identifier_formats(self):
        assert re.fullmatch(r"TASK_\d+_[0-9A-F]{8}", generate_task_id())
        assert re.fullmatch(r"collab_\d+_[0-9a-f]{8}", generate_session_id())
        assert generate_task_id() != generate_task_id()


class TestPriority:
    """Test task priority scoring."""

    @pytest.mark.parametrize("analysis_type,depth,expected", [
        (AnalysisType.REAL_TIME, AnalysisDepth.QUICK, 10),
        (AnalysisType.TECHNICAL, AnalysisDepth.STANDARD, 8),
        (AnalysisType.FUNDAMENTAL, AnalysisDepth.DEEP, 5),
        (AnalysisType.SENTIMENT, AnalysisDepth.STANDARD, 6),
        (AnalysisType.COMPREHENSIVE, AnalysisDepth.DEEP, 3),
        (AnalysisType.COMPREHENSIVE, AnalysisDepth.QUICK, 6),
    ])
    def test_priority_table(self, analysis_type, depth, expected):
        assert calculate_priority(analysis_type, depth) == expected

    @given(st.sampled_from(list(AnalysisType)), st.sampled_from(list(AnalysisDepth)))
    @settings(max_examples=50, deadline=None)
    def test_priority_is_bounded(self, analysis_type, depth):
        assert 1 <= calculate_priority(analysis_type, depth) <= 10


class TestAgentTypeAssignment:

    def test_single_type_analyses(self):
        assert assign_agent_types(AnalysisType.TECHNICAL, AnalysisDepth.DEEP) == [AgentType.TECHNICAL]
        assert assign_agent_types(AnalysisType.FUNDAMENTAL, AnalysisDepth.QUICK) == [AgentType.FUNDAMENTAL]
        assert assign_agent_types(AnalysisType.SENTIMENT, AnalysisDepth.STANDARD) == [AgentType.SENTIMENT]

    def test_real_time_analysis(self):
        assert assign_agent_types(AnalysisType.REAL_TIME, AnalysisDepth.QUICK) == [
            AgentType.TECHNICAL, AgentType.MARKET
        ]

    def test_comprehensive_analysis(self):
        assert assign_agent_types(AnalysisType.COMPREHENSIVE, AnalysisDepth.STANDARD) == [
            AgentType.TECHNICAL, AgentType.FUNDAMENTAL, AgentType.SENTIMENT
        ]

    def test_deep_comprehensive_adds_risk_and_market(self):
        types = assign_agent_types(AnalysisType.COMPREHENSIVE, AnalysisDepth.DEEP)
        assert types[-2:] == [AgentType.RISK, AgentType.MARKET]
        assert len(types) == 5


class TestErrors:
    """Test exception types."""

    def test_invalid_transition_message(self):
        error = InvalidTransition("t1", TaskStatus.COMPLETED, "cancel")
        assert error.message == "Cannot cancel task t1 in state completed"
        assert error.category == ErrorCategory.STATE
        assert error.context["current_status"] == "completed"

    def test_timeouts_share_a_category(self):
        assert AgentTimeout("a", 1.0).category == ErrorCategory.TIMEOUT
        assert SessionTimeout("t", 2.0).timeout_seconds == 2.0

    def test_partial_failure_from_exception(self):
        failure = PartialFailure.from_exception("a", RuntimeError("feed down"), round=2)
        assert failure.error_type == "RuntimeError"
        assert failure.message == "feed down"
        assert failure.round == 2

    def test_partial_failure_from_quorum_error_uses_message(self):
        failure = PartialFailure.from_exception("a", AgentTimeout("a", 1.5))
        assert failure.error_type == "AgentTimeout"
        assert failure.message == "Agent a timed out after 1.5s"

    def test_partial_failure_from_blank_exception(self):
        failure = PartialFailure.from_exception("a", RuntimeError())
        assert failure.message == "RuntimeError"
