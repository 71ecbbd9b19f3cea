"""
Best-effort progress, result and error notifications.

Subscribers register callbacks per task id or per topic. Delivery is
fire-and-forget: a failing subscriber is logged and never affects the task.
"""

import asyncio
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from ..utils.logging import get_logger


class EventType(str, Enum):
    PROGRESS = "progress"
    RESULT = "result"
    ERROR = "error"
    CANCELLED = "cancelled"


Callback = Callable[[Dict[str, Any]], Any]


class EventNotifier:
    """Fans task events out to subscribers keyed by task id and by topic."""

    def __init__(self):
        self.logger = get_logger(f"{__name__}.EventNotifier")
        self._task_callbacks: Dict[str, List[Callback]] = {}
        self._topic_callbacks: Dict[str, List[Callback]] = {}
        self._latest: Dict[str, Dict[str, Any]] = {}
        self._pending: Set[asyncio.Task] = set()

    def subscribe_task(self, task_id: str, callback: Callback) -> None:
        self._task_callbacks.setdefault(task_id, []).append(callback)

    def subscribe_topic(self, topic: str, callback: Callback) -> None:
        self._topic_callbacks.setdefault(topic, []).append(callback)

    def publish(self, event_type: EventType, task_id: str, topic: str,
                payload: Optional[Dict[str, Any]] = None) -> None:
        """Deliver an event to every matching subscriber without waiting for them."""
        event = {
            "event": event_type.value,
            "task_id": task_id,
            "topic": topic,
            "timestamp": datetime.now().isoformat(),
            **(payload or {}),
        }
        self._latest[task_id] = event

        callbacks = self._task_callbacks.get(task_id, []) + self._topic_callbacks.get(topic, [])
        for callback in callbacks:
            try:
                outcome = callback(event)
                if asyncio.iscoroutine(outcome):
                    pending = asyncio.ensure_future(outcome)
                    self._pending.add(pending)
                    pending.add_done_callback(self._on_async_done)
            except Exception as e:
                self.logger.error(f"Notification callback failed for task {task_id}: {e}")

    def _on_async_done(self, future: asyncio.Future) -> None:
        self._pending.discard(future)
        if not future.cancelled() and future.exception() is not None:
            self.logger.error(f"Async notification callback failed: {future.exception()}")

    def latest(self, task_id: str) -> Optional[Dict[str, Any]]:
        """Most recent event published for a task."""
        return self._latest.get(task_id)

    def cleanup_task(self, task_id: str) -> None:
        self._task_callbacks.pop(task_id, None)
        self._latest.pop(task_id, None)
