"""
Worker pool for concurrent query loops.

Each worker is an asyncio task running ``worker_factory(worker_id, stop_signal)``.
Stopping is cooperative: a worker's own ``stop_signal`` is set and the worker
exits at its next loop check. Tasks are only cancelled if they overrun the
drain timeout.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

WorkerFactory = Callable[[int, asyncio.Event], Awaitable[None]]


class WorkerPool:
    """Spawns and drains a set of worker tasks."""

    def __init__(self, worker_factory: WorkerFactory, *, name: str = "workers") -> None:
        self.worker_factory = worker_factory
        self.name = name
        self._workers: dict[int, tuple[asyncio.Task, asyncio.Event]] = {}
        self._next_worker_id = 0

    @property
    def count(self) -> int:
        """Number of tasks not yet finished (including ones told to stop)."""
        return sum(1 for t, _ in self._workers.values() if not t.done())

    async def spawn_one(self) -> int:
        wid = self._next_worker_id
        self._next_worker_id += 1
        stop_signal = asyncio.Event()
        task = asyncio.create_task(
            self.worker_factory(wid, stop_signal), name=f"{self.name}-{wid}"
        )
        self._workers[wid] = (task, stop_signal)
        return wid

    async def spawn(self, n: int) -> list[int]:
        """Start ``n`` more workers and return their IDs."""
        return [await self.spawn_one() for _ in range(n)]

    async def stop_all(self, timeout_seconds: float = 30.0) -> None:
        """Signal every worker and wait for them to finish in-flight work."""
        for _, stop_signal in self._workers.values():
            stop_signal.set()
        tasks = [t for t, _ in self._workers.values() if not t.done()]
        if tasks:
            done, pending = await asyncio.wait(tasks, timeout=timeout_seconds)
            if pending:
                logger.warning(
                    "[%s] %d workers still busy after %.1fs drain, cancelling",
                    self.name,
                    len(pending),
                    timeout_seconds,
                )
                for t in pending:
                    t.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
        self._workers.clear()
