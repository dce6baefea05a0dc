# src/pipeline/sweeper.py - v1
"""Staleness Sweeper: deletes archives older than the retention window."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable

from chunkzip.core.errors import ArchiveError
from chunkzip.core.models import SweepReport
from chunkzip.storage.base_object_store import DELETE_BATCH_SIZE, BaseObjectStore
from chunkzip.storage.layout import ARCHIVE_SUFFIX, DEFAULT_ROOT, is_staging_key

logger = logging.getLogger(__name__)

MAX_REPORTED_ERRORS = 20


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StalenessSweeper:
    """Periodic job over the whole storage root."""

    def __init__(
        self,
        store: BaseObjectStore,
        retention_s: float = 2 * 3600,
        root: str = DEFAULT_ROOT,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._retention = timedelta(seconds=retention_s)
        self._root = root.strip("/") + "/"
        self._clock = clock

    async def sweep(self) -> SweepReport:
        """Delete every expired archive; staging areas are left alone."""
        cutoff = self._clock() - self._retention
        report = SweepReport()
        errors: list[str] = []
        batch: list[str] = []

        async for item in self._store.iter_prefix(self._root):
            if not item.key.endswith(ARCHIVE_SUFFIX) or is_staging_key(item.key):
                continue
            if item.last_modified is None or item.last_modified >= cutoff:
                continue
            batch.append(item.key)
            if len(batch) >= DELETE_BATCH_SIZE:
                await self._flush(batch, report, errors)
                batch = []
        if batch:
            await self._flush(batch, report, errors)

        report.errors = errors[:MAX_REPORTED_ERRORS]
        logger.info(
            "Sweep finished: %d deleted, %d errors", report.deleted_count, report.error_count
        )
        return report

    async def _flush(self, batch: list[str], report: SweepReport, errors: list[str]) -> None:
        try:
            result = await self._store.batch_delete(batch)
        except ArchiveError as e:
            logger.warning("Batch delete of %d archives failed: %s", len(batch), e.message)
            report.error_count += len(batch)
            errors.append(e.message)
            return
        report.deleted_count += result.deleted
        report.error_count += len(result.errors)
        errors.extend(result.errors)
