"""
Unit tests for the collaboration scheduler.
"""

import asyncio
from datetime import datetime, timedelta

import pytest

from agent_quorum.models.core import AgentType, ExecutionMode, TaskStatus
from agent_quorum.models.errors import ValidationError
from agent_quorum.orchestration.notifier import EventType
from agent_quorum.orchestration.orchestrator import AgentOrchestrator
from agent_quorum.orchestration.scheduler import CollaborationScheduler, CronTrigger, IntervalTrigger

MONDAY_MORNING = datetime(2024, 3, 4, 10, 0)
SATURDAY = datetime(2024, 3, 9, 10, 0)


def scheduler_for(orchestrator, now=MONDAY_MORNING, sleep=asyncio.sleep):
    return CollaborationScheduler(orchestrator, clock=lambda: now, sleep=sleep)


class TestTriggers:
    """Test trigger definitions."""

    def test_interval_must_be_positive(self):
        async def job():
            return None

        with pytest.raises(ValidationError):
            IntervalTrigger("bad", 0, job)

    def test_invalid_cron_expression(self):
        async def job():
            return None

        with pytest.raises(ValidationError):
            CronTrigger("bad", "not a cron", job)

    def test_cron_next_fire_time(self):
        async def job():
            return None

        trigger = CronTrigger("review", "0 9 * * 1-5", job)
        friday_evening = datetime(2024, 3, 8, 18, 0)
        assert trigger.next_fire_time(friday_evening) == datetime(2024, 3, 11, 9, 0)
        assert trigger.seconds_until_next(datetime(2024, 3, 11, 8, 0)) == 3600.0

    def test_default_jobs(self, orchestrator):
        scheduler = scheduler_for(orchestrator)
        scheduler.register_default_jobs()
        status = scheduler.schedule_status()

        assert set(status["triggers"]) == {
            "health_check", "market_analysis", "risk_assessment", "strategy_review", "maintenance"
        }
        assert status["triggers"]["health_check"]["schedule"] == "every 300s"
        assert status["triggers"]["maintenance"]["next_run"] == "2024-03-05T02:00:00"
        assert status["in_trading_window"] is True

    def test_duplicate_trigger_name(self, orchestrator):
        async def job():
            return None

        scheduler = scheduler_for(orchestrator)
        scheduler.every("job", 10, job)
        with pytest.raises(ValidationError):
            scheduler.every("job", 20, job)


class TestFiring:
    """Test enable flags and overlap protection."""

    @pytest.mark.asyncio
    async def test_global_flag_skips_ticks(self, orchestrator):
        runs = []

        async def job():
            runs.append(1)

        scheduler = scheduler_for(orchestrator)
        scheduler.every("job", 10, job)
        scheduler.every("maintenance", 10, job, respect_global_flag=False)
        scheduler.set_enabled(False)

        assert scheduler.fire("job") is None
        await scheduler.fire("maintenance")
        assert len(runs) == 1
        assert scheduler.schedule_status()["triggers"]["job"]["skipped_count"] == 1

    @pytest.mark.asyncio
    async def test_disabled_trigger_skips_ticks(self, orchestrator):
        async def job():
            return "ran"

        scheduler = scheduler_for(orchestrator)
        scheduler.every("job", 10, job)
        scheduler.set_trigger_enabled("job", False)
        assert scheduler.fire("job") is None
        scheduler.set_trigger_enabled("job", True)
        assert await scheduler.fire("job") == "ran"

    @pytest.mark.asyncio
    async def test_busy_trigger_skips_ticks(self, orchestrator):
        release = asyncio.Event()

        async def job():
            await release.wait()
            return "finished"

        scheduler = scheduler_for(orchestrator)
        scheduler.every("slow", 10, job)
        running = scheduler.fire("slow")
        await asyncio.sleep(0)
        assert scheduler.fire("slow") is None

        release.set()
        assert await running == "finished"
        assert scheduler.schedule_status()["triggers"]["slow"]["skipped_count"] == 1

    @pytest.mark.asyncio
    async def test_failed_job_is_counted(self, orchestrator):
        async def job():
            raise RuntimeError("job broke")

        scheduler = scheduler_for(orchestrator)
        scheduler.every("broken", 10, job)
        assert await scheduler.trigger_manually("broken") is None

        status = scheduler.schedule_status()["triggers"]["broken"]
        assert status["failure_count"] == 1
        assert status["last_error"] == "job broke"

    @pytest.mark.asyncio
    async def test_loop_fires_after_each_wait(self, orchestrator):
        waits = []
        runs = []

        async def fake_sleep(seconds):
            waits.append(seconds)
            await asyncio.sleep(0.001)

        async def job():
            runs.append(1)

        scheduler = scheduler_for(orchestrator, sleep=fake_sleep)
        scheduler.every("fast", 42, job)
        await scheduler.start()
        await asyncio.sleep(0.05)
        await scheduler.stop()

        assert runs
        assert set(waits) == {42}
        assert scheduler.schedule_status()["running"] is False

    @pytest.mark.asyncio
    async def test_unknown_trigger(self, orchestrator):
        scheduler = scheduler_for(orchestrator)
        with pytest.raises(ValidationError):
            await scheduler.trigger_manually("missing")


class TestJobs:
    """Test the built-in scheduled jobs."""

    @pytest.mark.asyncio
    async def test_market_analysis_outside_trading_window(self, orchestrator, add_agents):
        await add_agents(orchestrator.registry, AgentType.MARKET, AgentType.TECHNICAL)
        assert await scheduler_for(orchestrator, SATURDAY).run_market_analysis() is None
        assert orchestrator.lifecycle.list_tasks() == []

    @pytest.mark.asyncio
    async def test_market_analysis(self, orchestrator, add_agents):
        await add_agents(orchestrator.registry, AgentType.MARKET, AgentType.MARKET, AgentType.MARKET,
                         AgentType.TECHNICAL, AgentType.RISK)
        task = await scheduler_for(orchestrator).run_market_analysis()

        assert task.status == TaskStatus.COMPLETED
        assert task.mode == ExecutionMode.PARALLEL
        assert task.owner_id == "scheduler"
        assert task.participants == ["market-1", "market-2", "technical-1"]

    @pytest.mark.asyncio
    async def test_market_analysis_needs_two_agents(self, orchestrator, add_agents):
        await add_agents(orchestrator.registry, AgentType.MARKET)
        assert await scheduler_for(orchestrator).run_market_analysis() is None

    @pytest.mark.asyncio
    async def test_risk_assessment_builds_consensus(self, orchestrator, add_agents):
        await add_agents(orchestrator.registry, AgentType.RISK, AgentType.DECISION, AgentType.MONITORING)
        task = await scheduler_for(orchestrator).run_risk_assessment()

        assert task.mode == ExecutionMode.CONSENSUS_BUILDING
        assert task.consensus_threshold == 0.7
        assert task.status == TaskStatus.COMPLETED
        assert task.result.round_consensus == [1.0]

    @pytest.mark.asyncio
    async def test_strategy_review_needs_three_types(self, orchestrator, add_agents):
        await add_agents(orchestrator.registry, AgentType.TECHNICAL, AgentType.TECHNICAL, AgentType.RISK)
        assert await scheduler_for(orchestrator).run_strategy_review() is None

    @pytest.mark.asyncio
    async def test_strategy_review_debates(self, orchestrator, add_agents):
        await add_agents(orchestrator.registry, AgentType.TECHNICAL, AgentType.TECHNICAL,
                         AgentType.RISK, AgentType.FUNDAMENTAL)
        task = await scheduler_for(orchestrator).run_strategy_review()

        assert task.mode == ExecutionMode.STRUCTURED_DEBATE
        assert task.participants == ["technical-1", "fundamental-1", "risk-1"]
        assert task.status == TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_health_check(self, orchestrator, add_agents):
        await add_agents(orchestrator.registry, AgentType.TECHNICAL)
        report = await scheduler_for(orchestrator, datetime.now()).run_health_check()
        assert report.checked == 1

    @pytest.mark.asyncio
    async def test_health_check_sweeps_expired_results(self, orchestrator, add_agents, mocker):
        await add_agents(orchestrator.registry, AgentType.TECHNICAL, AgentType.RISK)
        task = await orchestrator.collaborate("AAPL", participants=["technical-1", "risk-1"])
        assert len(orchestrator.result_cache) == 1

        later = orchestrator.result_cache._clock() + orchestrator.result_cache.ttl_seconds + 1
        mocker.patch.object(orchestrator.result_cache, "_clock", return_value=later)
        await scheduler_for(orchestrator, datetime.now()).run_health_check()

        assert len(orchestrator.result_cache) == 0
        assert orchestrator.result_cache.stats()["misses"] == 0
        assert (await orchestrator.get_result(task.task_id)).recommendation == task.result.recommendation

    @pytest.mark.asyncio
    async def test_maintenance_prunes_old_tasks_and_their_events(self, fast_config, producers, add_agents):
        clock = [datetime(2024, 3, 4, 10, 0)]
        orchestrator = AgentOrchestrator(config=fast_config, producers=producers, clock=lambda: clock[0])
        await add_agents(orchestrator.registry, AgentType.TECHNICAL, AgentType.RISK)
        events = []
        task = await orchestrator.collaborate("AAPL", participants=["technical-1", "risk-1"])
        orchestrator.notifier.subscribe_task(task.task_id, events.append)
        assert orchestrator.notifier.latest(task.task_id) is not None

        clock[0] += timedelta(hours=25)
        scheduler = CollaborationScheduler(orchestrator, clock=lambda: clock[0])
        summary = await scheduler.run_maintenance()

        assert summary["pruned_tasks"] == 1
        assert orchestrator.get_task(task.task_id) is None
        assert orchestrator.notifier.latest(task.task_id) is None
        orchestrator.notifier.publish(EventType.PROGRESS, task.task_id, "AAPL", {})
        assert events == []

    @pytest.mark.asyncio
    async def test_maintenance_warns_on_low_quality(self, orchestrator, producer, add_agents):
        producer.confidence = 0.5
        await add_agents(orchestrator.registry, AgentType.TECHNICAL, AgentType.RISK)
        task = await orchestrator.collaborate("AAPL", participants=["technical-1", "risk-1"])
        assert task.status == TaskStatus.COMPLETED

        summary = await scheduler_for(orchestrator).run_maintenance()
        assert summary["cleared_cache_entries"] == 1
        assert summary["metrics"]["success_rate"] == 0.0
        assert len(summary["warnings"]) == 2
        assert len(orchestrator.result_cache) == 0

    @pytest.mark.asyncio
    async def test_maintenance_quiet_when_healthy(self, orchestrator, add_agents):
        await add_agents(orchestrator.registry, AgentType.TECHNICAL, AgentType.RISK)
        await orchestrator.collaborate("AAPL", participants=["technical-1", "risk-1"])
        summary = await scheduler_for(orchestrator).run_maintenance()
        assert summary["warnings"] == []
        assert summary["metrics"]["successful_collaborations"] == 1


class TestEmergencies:
    """Test event-driven emergency collaborations."""

    @pytest.mark.asyncio
    async def test_market_crash_prefers_decision_and_risk(self, orchestrator, add_agents):
        await add_agents(orchestrator.registry, AgentType.SENTIMENT, AgentType.TECHNICAL, AgentType.MARKET,
                         AgentType.RISK, AgentType.DECISION, AgentType.FUNDAMENTAL)
        chosen = scheduler_for(orchestrator).emergency_participants("market_crash")
        assert [a.agent_id for a in chosen] == ["decision-1", "risk-1", "market-1", "technical-1"]

    @pytest.mark.asyncio
    async def test_system_error_prefers_monitoring(self, orchestrator, add_agents):
        await add_agents(orchestrator.registry, AgentType.TECHNICAL, AgentType.MONITORING)
        chosen = scheduler_for(orchestrator).emergency_participants("system_error")
        assert [a.agent_id for a in chosen] == ["monitoring-1", "technical-1"]

    @pytest.mark.asyncio
    async def test_participants_topped_up_to_two(self, orchestrator, add_agents):
        await add_agents(orchestrator.registry, AgentType.SENTIMENT, AgentType.SENTIMENT)
        chosen = scheduler_for(orchestrator).emergency_participants("market_crash")
        assert [a.agent_id for a in chosen] == ["sentiment-1", "sentiment-2"]

    @pytest.mark.asyncio
    async def test_emergency_runs_parallel_session(self, orchestrator, producer, add_agents):
        await add_agents(orchestrator.registry, AgentType.RISK, AgentType.DECISION)
        task = await scheduler_for(orchestrator).trigger_emergency("volatility_spike", {"vix": 42})

        assert task.status == TaskStatus.COMPLETED
        assert task.mode == ExecutionMode.PARALLEL
        assert task.topic == "Emergency analysis: volatility_spike"
        assert producer.calls[0].context == {"emergency_type": "volatility_spike", "vix": 42}

    @pytest.mark.asyncio
    async def test_emergency_with_too_few_agents(self, orchestrator, add_agents):
        await add_agents(orchestrator.registry, AgentType.RISK)
        assert await scheduler_for(orchestrator).trigger_emergency("market_crash") is None
        assert orchestrator.lifecycle.list_tasks() == []
