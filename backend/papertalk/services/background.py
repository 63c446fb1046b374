"""
Background task runner.

Keeps handles to fire-and-forget coroutines (grading jobs, delayed re-queues,
audio generation) so failures are logged with tracebacks and can be inspected,
and so everything still running can be cancelled on shutdown.
"""

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional, Set

from papertalk.config import logger


class BackgroundTaskRunner:
    """Owns asyncio tasks spawned outside a request/response cycle."""

    def __init__(self, max_failures_kept: int = 100):
        self._tasks: Set[asyncio.Task] = set()
        self._max_failures_kept = max_failures_kept
        self.failures: List[dict] = []

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Awaitable, name: Optional[str] = None) -> asyncio.Task:
        """Run a coroutine in the background and return its handle."""
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def schedule(self, delay: float, fn: Callable[[], Awaitable], name: Optional[str] = None) -> asyncio.Task:
        """Run ``fn()`` after ``delay`` seconds."""
        return self.spawn(self._delayed(delay, fn), name=name)

    @staticmethod
    async def _delayed(delay: float, fn: Callable[[], Awaitable]):
        await asyncio.sleep(delay)
        await fn()

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        logger.error(f"Background task {task.get_name()} failed: {exc}", exc_info=exc)
        self.failures.append({
            "task": task.get_name(),
            "error": f"{type(exc).__name__}: {exc}",
            "failed_at": datetime.now(timezone.utc).isoformat(),
        })
        del self.failures[:-self._max_failures_kept]

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait until every task (including ones spawned meanwhile) has finished."""
        async def _wait_all():
            while self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)

        await asyncio.wait_for(_wait_all(), timeout=timeout)

    async def shutdown(self) -> None:
        """Cancel everything still running."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"⏹️  Cancelled {len(tasks)} background task(s)")
