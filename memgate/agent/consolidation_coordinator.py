"""Run the consolidation worker on a poll interval in the background."""

from __future__ import annotations

import asyncio
from typing import Any

from memgate.logging import get_logger
from memgate.memory.consolidation import ConsolidationWorker

logger = get_logger(__name__)


class ConsolidationCoordinator:
    """Owns the background poll task for one worker.

    Polls never overlap within one coordinator. Several coordinators (or
    processes) sharing a store may pick up the same pending job; that
    double pickup is tolerated because consolidation writes are idempotent
    enough. Jobs left in ``processing`` by a crashed worker are not requeued.
    """

    def __init__(self, worker: ConsolidationWorker, poll_interval: float = 15.0) -> None:
        self.worker = worker
        self.poll_interval = poll_interval
        self.task: asyncio.Task[Any] | None = None
        self._lock = asyncio.Lock()
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()

    async def run_once(self, limit: int | None = None) -> dict[str, int]:
        """Run a single poll; a poll already in progress is awaited first."""
        async with self._lock:
            return await self.worker.process_pending(limit)

    def start_background(self) -> asyncio.Task[Any] | None:
        """Start the poll loop if it is not already running."""
        if self.running:
            return None
        self._stopping.clear()
        self.task = asyncio.create_task(self._loop())
        return self.task

    async def _loop(self) -> None:
        logger.info("consolidation_poller_started", interval_s=self.poll_interval)
        while not self._stopping.is_set():
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("consolidation_poll_failed")
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                continue
        logger.info("consolidation_poller_stopped")

    async def stop(self, cancel: bool = False) -> None:
        """Stop after the current poll, or immediately when *cancel* is set.

        Cancelling mid-poll can leave a job in ``processing``.
        """
        self._stopping.set()
        running = self.task
        self.task = None
        if running and not running.done():
            if cancel:
                running.cancel()
            try:
                await running
            except (asyncio.CancelledError, Exception):
                pass
