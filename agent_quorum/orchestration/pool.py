"""
Bounded worker pool shared by every agent invocation and scheduled session.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Dict, Set

from ..utils.logging import get_logger


class PoolClosed(RuntimeError):
    """Raised when work is offered to a pool that has been shut down."""


class WorkerPool:
    """
    Fixed number of execution slots guarded by a semaphore.

    Callers either hold a slot around their own awaitable (``slot``) or hand
    a coroutine off as tracked background work (``submit``).
    """

    def __init__(self, size: int, name: str = "workers"):
        if size < 1:
            raise ValueError("Pool size must be at least 1")
        self.size = size
        self.name = name
        self._semaphore = asyncio.Semaphore(size)
        self._active = 0
        self._waiting = 0
        self._completed = 0
        self._background: Set[asyncio.Task] = set()
        self._closed = False
        self.logger = get_logger(f"{__name__}.WorkerPool")

    @property
    def closed(self) -> bool:
        return self._closed

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        if self._closed:
            raise PoolClosed(f"Pool '{self.name}' is shut down")
        self._waiting += 1
        try:
            await self._semaphore.acquire()
        finally:
            self._waiting -= 1
        self._active += 1
        try:
            yield
        finally:
            self._active -= 1
            self._completed += 1
            self._semaphore.release()

    def submit(self, coro: Awaitable[Any]) -> asyncio.Task:
        """Schedule a coroutine to run in a slot without awaiting it."""
        if self._closed:
            if asyncio.iscoroutine(coro):
                coro.close()
            raise PoolClosed(f"Pool '{self.name}' is shut down")

        async def _guarded():
            async with self.slot():
                return await coro

        task = asyncio.create_task(_guarded())
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def stats(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "size": self.size,
            "active": self._active,
            "waiting": self._waiting,
            "completed": self._completed,
            "background": len(self._background),
            "closed": self._closed,
        }

    async def shutdown(self, cancel: bool = True) -> None:
        """Refuse new work and wait for (or cancel) background work."""
        self._closed = True
        pending = list(self._background)
        if cancel:
            for task in pending:
                task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self.logger.info(f"Worker pool '{self.name}' shut down", drained=len(pending))
