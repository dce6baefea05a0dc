# src/pipeline/chunk_worker.py - v1
"""Chunk Worker: stages one chunk of source objects under the run's staging area.

Each source is streamed into ``staging/chunk-{i}/{name}`` without being
held whole in memory. Copies run concurrently up to ``copy_concurrency``.
Missing sources are skipped; transient failures are retried with backoff.
A chunk fails only when nothing at all could be staged.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from chunkzip.config.settings import Settings
from chunkzip.core.errors import ArchiveError, ChunkFailedError, NotFoundError, ValidationError
from chunkzip.core.models import RUN_ID_PATTERN, ChunkJob, ChunkResult
from chunkzip.core.retry import RetryConfig, with_retry
from chunkzip.logging.context import set_component_context, set_order_context
from chunkzip.storage.base_object_store import BaseObjectStore
from chunkzip.storage.layout import (
    DEFAULT_ROOT,
    chunk_staging_prefix,
    entry_name_from_source,
    is_derivative_key,
    source_key,
)
from chunkzip.tracking.metrics import MetricsRecorder

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkerPolicy:
    copy_concurrency: int = 16
    missing_tolerance: float = 0.10
    retry: RetryConfig = field(default_factory=RetryConfig)
    root: str = DEFAULT_ROOT

    @classmethod
    def from_settings(cls, settings: Settings) -> WorkerPolicy:
        return cls(
            copy_concurrency=settings.copy_concurrency,
            missing_tolerance=settings.chunk_missing_tolerance,
            retry=RetryConfig(
                max_retries=settings.transient_max_retries,
                base_delay_s=settings.transient_base_delay_s,
                max_delay_s=settings.transient_max_delay_s,
            ),
            root=settings.storage_root,
        )


@dataclass
class _Tally:
    staged: int = 0
    bytes: int = 0
    missing: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)


def validate_chunk_job(job: ChunkJob) -> None:
    """Reject malformed worker input before touching storage.

    Raises:
        ValidationError: Bad run id, negative index or empty key list.
    """
    if not RUN_ID_PATTERN.match(job.run_id):
        raise ValidationError(f"Invalid run id: {job.run_id!r}")
    if job.chunk_index < 0:
        raise ValidationError(f"Invalid chunk index: {job.chunk_index}")
    if not job.keys:
        raise ValidationError("Chunk has no keys")


class ChunkWorker:
    """Copies one chunk's sources into the staging area."""

    def __init__(
        self,
        store: BaseObjectStore,
        policy: WorkerPolicy | None = None,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        self._store = store
        self._policy = policy or WorkerPolicy()
        self._metrics = metrics

    async def run(self, job: ChunkJob) -> ChunkResult:
        """Stage every key of the chunk.

        Args:
            job: Chunk assignment from the orchestrator.

        Returns:
            ChunkResult with staged/missing counts.

        Raises:
            ValidationError: Malformed job.
            ChunkFailedError: No object could be staged.
        """
        validate_chunk_job(job)
        order_key = job.order_key
        set_order_context(order_key.container_id, order_key.order_id, order_key.archive_kind, job.run_id)
        set_component_context(f"chunk-{job.chunk_index}")
        started = time.monotonic()
        policy = self._policy

        keys = [k for k in job.keys if not is_derivative_key(k)]
        skipped = len(job.keys) - len(keys)
        if skipped:
            logger.info("Filtered %d derivative keys", skipped)

        prefix = chunk_staging_prefix(order_key, job.run_id, job.chunk_index, policy.root)
        semaphore = asyncio.Semaphore(policy.copy_concurrency)
        tally = _Tally()

        async def _copy(name: str) -> None:
            src = source_key(order_key, name, policy.root)
            dst = prefix + entry_name_from_source(order_key, src, policy.root)
            async with semaphore:
                try:
                    copied = await with_retry(
                        self._store.copy_stream, src, dst,
                        label=f"stage {src}",
                        config=policy.retry,
                    )
                except NotFoundError:
                    logger.warning("Source missing, skipped: %s", src)
                    tally.missing += 1
                    return
                except ArchiveError as e:
                    logger.warning("Failed to stage %s: %s", src, e.message)
                    tally.failed += 1
                    tally.errors.append(f"{src}: {e.message}")
                    return
            tally.staged += 1
            tally.bytes += copied

        await asyncio.gather(*(_copy(k) for k in keys))
        duration_ms = int((time.monotonic() - started) * 1000)

        if tally.staged == 0:
            self._record(job, duration_ms, tally, success=False, error="no files staged")
            raise ChunkFailedError(
                f"Chunk {job.chunk_index} staged no files "
                f"({tally.missing} missing, {tally.failed} failed)",
                chunk_index=job.chunk_index,
                errors=tally.errors[:20],
            )

        lost = tally.missing + tally.failed
        if keys and lost / len(keys) > policy.missing_tolerance:
            logger.warning(
                "Chunk %d lost %d/%d files (above %.0f%% tolerance)",
                job.chunk_index, lost, len(keys), policy.missing_tolerance * 100,
                extra={"data": {"errors": tally.errors[:20]}},
            )

        self._record(job, duration_ms, tally)
        logger.info(
            "Chunk %d staged %d files (%d bytes) in %dms",
            job.chunk_index, tally.staged, tally.bytes, duration_ms,
        )
        return ChunkResult(
            chunk_index=job.chunk_index,
            files_staged=tally.staged,
            bytes_staged=tally.bytes,
            files_missing=tally.missing,
            files_failed=tally.failed,
            duration_ms=duration_ms,
        )

    def _record(self, job: ChunkJob, duration_ms: int, tally: _Tally, **kwargs: Any) -> None:
        if self._metrics is None:
            return
        self._metrics.record(
            job.order_key,
            job.run_id,
            "chunk",
            duration_ms=duration_ms,
            files_count=tally.staged,
            worker_count=job.worker_count,
            chunk_index=job.chunk_index,
            bottleneck="copy",
            config={"copy_concurrency": self._policy.copy_concurrency},
            **kwargs,
        )
