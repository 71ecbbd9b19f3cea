"""
Unit tests for event notifications.
"""

import asyncio

import pytest

from agent_quorum.orchestration.notifier import EventNotifier, EventType


class TestEventNotifier:
    """Test subscriber fan-out."""

    def test_task_and_topic_subscribers(self):
        notifier = EventNotifier()
        by_task, by_topic = [], []
        notifier.subscribe_task("t1", by_task.append)
        notifier.subscribe_topic("AAPL", by_topic.append)

        notifier.publish(EventType.PROGRESS, "t1", "AAPL", {"progress": 30.0})
        notifier.publish(EventType.RESULT, "t2", "MSFT")

        assert [e["progress"] for e in by_task] == [30.0]
        assert [e["event"] for e in by_topic] == ["progress"]
        assert notifier.latest("t2")["event"] == "result"

    def test_failing_subscriber_is_isolated(self):
        notifier = EventNotifier()
        received = []

        def broken(event):
            raise RuntimeError("subscriber down")

        notifier.subscribe_task("t1", broken)
        notifier.subscribe_task("t1", received.append)
        notifier.publish(EventType.ERROR, "t1", "AAPL", {"reason": "x"})
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_async_subscribers_are_scheduled(self):
        notifier = EventNotifier()
        received = []

        async def on_event(event):
            received.append(event["event"])

        async def broken(event):
            raise RuntimeError("async subscriber down")

        notifier.subscribe_task("t1", on_event)
        notifier.subscribe_task("t1", broken)
        notifier.publish(EventType.CANCELLED, "t1", "AAPL")
        await asyncio.sleep(0.01)
        assert received == ["cancelled"]

    def test_cleanup(self):
        notifier = EventNotifier()
        received = []
        notifier.subscribe_task("t1", received.append)
        notifier.publish(EventType.PROGRESS, "t1", "AAPL")
        notifier.cleanup_task("t1")
        notifier.publish(EventType.PROGRESS, "t1", "AAPL")
        assert len(received) == 1
