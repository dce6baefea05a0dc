# src/pipeline/progress.py - v1
"""Throttled progress reporting into the generation state."""

from __future__ import annotations

import logging
import time
from typing import Callable

from chunkzip.core.models import OrderKey, ProgressSnapshot
from chunkzip.state.base_state_store import BaseStateStore

logger = logging.getLogger(__name__)


class ProgressReporter:
    """Writes a ProgressSnapshot at most every ``every_files`` files AND
    ``min_interval_s`` seconds, plus once at the end."""

    def __init__(
        self,
        state_store: BaseStateStore | None,
        order_key: OrderKey,
        total: int,
        every_files: int = 50,
        min_interval_s: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._state = state_store
        self._key = order_key
        self._total = total
        self._every = max(1, every_files)
        self._interval = min_interval_s
        self._clock = clock
        self._processed = 0
        self._last_reported = 0
        self._last_time = clock()
        self.reports = 0

    @property
    def processed(self) -> int:
        return self._processed

    async def advance(self, count: int = 1) -> None:
        self._processed += count
        if self._processed - self._last_reported < self._every:
            return
        if self._clock() - self._last_time < self._interval:
            return
        await self._report()

    async def finish(self) -> None:
        if self._processed != self._last_reported:
            await self._report()

    async def _report(self) -> None:
        snapshot = ProgressSnapshot.of(self._processed, self._total)
        self._last_reported = self._processed
        self._last_time = self._clock()
        self.reports += 1
        logger.info(
            "Progress %d/%d (%d%%)", snapshot.processed, snapshot.total, snapshot.percent
        )
        if self._state is not None:
            await self._state.update_progress(self._key, snapshot)
