"""Fire-and-forget access touches for surfaced records."""

from __future__ import annotations

import asyncio
from typing import Any, Iterable

from memgate.logging import get_logger
from memgate.storage.base import MemoryStorage

logger = get_logger(__name__)


class TouchDispatcher:
    """Schedules ``storage.touch`` calls as detached tasks.

    At most ``max_inflight`` touches run at once; ids beyond that are dropped.
    Failures are logged at debug level and never reach the caller, and there
    is no ordering guarantee relative to later reads.
    """

    def __init__(self, storage: MemoryStorage, max_inflight: int = 64) -> None:
        self.storage = storage
        self.max_inflight = max_inflight
        self.tasks: set[asyncio.Task[Any]] = set()
        self.dropped = 0

    def dispatch(self, record_ids: Iterable[str]) -> int:
        """Schedule touches; returns how many were scheduled."""
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return 0
        scheduled = 0
        for record_id in record_ids:
            if len(self.tasks) >= self.max_inflight:
                self.dropped += 1
                continue
            task = asyncio.create_task(self._touch(record_id))
            self.tasks.add(task)
            task.add_done_callback(self.tasks.discard)
            scheduled += 1
        return scheduled

    async def _touch(self, record_id: str) -> None:
        try:
            await self.storage.touch(record_id)
        except Exception as e:
            logger.debug("memory_touch_failed", record_id=record_id, error=str(e))

    async def drain(self) -> None:
        """Wait for in-flight touches; used on shutdown and in tests."""
        if self.tasks:
            await asyncio.gather(*list(self.tasks), return_exceptions=True)
