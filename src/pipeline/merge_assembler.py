# src/pipeline/merge_assembler.py - v1
"""Merge Assembler: streams objects into one ZIP via a multipart session.

Entries are stored uncompressed. Reads are prefetched by a bounded window
of reader tasks; a single writer feeds ``zipfile`` in entry order and
hands full parts to the PartUploader. The archive becomes visible only
when the session completes; any failure aborts the session.

Used by both paths: ``merge`` reads a run's staging area, ``build_direct``
reads the sources themselves (single path).
"""

from __future__ import annotations

import asyncio
import logging
import time
import zipfile
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from chunkzip.catalog.directory import BaseContainerDirectory
from chunkzip.config.settings import Settings
from chunkzip.core.errors import (
    ArchiveError,
    NotFoundError,
    PartialFailureError,
    StorageError,
    TransientIOError,
)
from chunkzip.core.models import (
    ArchiveRequest,
    MergeJob,
    MergeResult,
    OrderKey,
    Ready,
)
from chunkzip.core.retry import RetryConfig, with_retry
from chunkzip.idempotency.guard import HASH_METADATA_KEY
from chunkzip.logging.context import set_component_context, set_order_context
from chunkzip.pipeline.compensation import CompensatingActions
from chunkzip.pipeline.progress import ProgressReporter
from chunkzip.pipeline.zip_stream import ZIP_SIGNATURE, PartSink, PartUploader
from chunkzip.state.base_state_store import BaseStateStore
from chunkzip.storage.base_object_store import BaseObjectStore, ObjectStream
from chunkzip.storage.layout import (
    DEFAULT_ROOT,
    archive_key,
    entry_name_from_source,
    entry_name_from_staged,
    is_derivative_key,
    source_key,
    staging_prefix,
)
from chunkzip.tracking.metrics import MetricsRecorder

logger = logging.getLogger(__name__)

_EOF = object()


@dataclass(frozen=True)
class MergePolicy:
    """Tuning of the assembly stage."""

    part_size: int = 15 * 1024 * 1024
    max_parts: int = 10_000
    read_concurrency: int = 12
    upload_consumers: int = 4
    queue_depth: int = 4
    feed_depth: int = 4
    failure_tolerance: float = 0.05
    read_timeout_s: float = 120.0
    progress_every_files: int = 50
    progress_min_interval_s: float = 5.0
    retry: RetryConfig = field(default_factory=RetryConfig)
    root: str = DEFAULT_ROOT

    @classmethod
    def from_settings(cls, settings: Settings) -> MergePolicy:
        return cls(
            part_size=settings.part_size_bytes,
            max_parts=settings.max_parts,
            read_concurrency=settings.merge_read_concurrency,
            upload_consumers=settings.part_upload_concurrency,
            queue_depth=settings.part_queue_depth,
            failure_tolerance=settings.merge_failure_tolerance,
            read_timeout_s=settings.object_read_timeout_s,
            progress_every_files=settings.progress_every_files,
            progress_min_interval_s=settings.progress_min_interval_s,
            retry=RetryConfig(
                max_retries=settings.transient_max_retries,
                base_delay_s=settings.transient_base_delay_s,
                max_delay_s=settings.transient_max_delay_s,
            ),
            root=settings.storage_root,
        )


@dataclass
class _Entry:
    name: str
    key: str
    size: int | None = None
    modified: datetime | None = None


@dataclass
class _EntryFeed:
    """Chunks of one entry, produced by a reader task."""

    entry: _Entry
    queue: asyncio.Queue[Any]
    task: asyncio.Task[None] | None = None


@dataclass
class _AssemblyStats:
    files_added: int = 0
    files_failed: int = 0
    archive_size_bytes: int = 0
    parts_count: int = 0
    read_wait_s: float = 0.0
    upload_wait_s: float = 0.0
    failures: list[str] = field(default_factory=list)

    @property
    def bottleneck(self) -> str:
        if self.read_wait_s == 0 and self.upload_wait_s == 0:
            return "none"
        return "read" if self.read_wait_s >= self.upload_wait_s else "upload"


def _zip_date_time(modified: datetime | None) -> tuple[int, int, int, int, int, int]:
    if modified is None or modified.year < 1980:
        return (1980, 1, 1, 0, 0, 0)
    return modified.timetuple()[:6]


class MergeAssembler:
    """Builds and commits archives."""

    def __init__(
        self,
        store: BaseObjectStore,
        state_store: BaseStateStore,
        directory: BaseContainerDirectory | None = None,
        policy: MergePolicy | None = None,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        self._store = store
        self._state = state_store
        self._directory = directory
        self._policy = policy or MergePolicy()
        self._metrics = metrics

    @property
    def policy(self) -> MergePolicy:
        return self._policy

    # --- Entry points ---

    async def merge(self, job: MergeJob) -> MergeResult:
        """Assemble a run's staging area into the archive and commit it.

        Safe to re-run: when the archive for ``job.content_hash`` is already
        committed and the order is READY, the committed archive is reported
        without touching staging or opening a session.

        Raises:
            PartialFailureError: Nothing staged, or too many unreadable entries.
            CapacityExceededError: Archive would exceed max_parts.
            ArchiveError: Any storage failure (session aborted first).
        """
        order_key = job.order_key
        set_order_context(order_key.container_id, order_key.order_id, order_key.archive_kind, job.run_id)
        set_component_context("merge")
        staging = staging_prefix(order_key, job.run_id, self._policy.root)
        started = time.monotonic()

        committed = await self._committed_result(job, started)
        if committed is not None:
            logger.info("Archive %s already committed for this content, merge skipped", committed.archive_key)
            return committed

        entries: list[_Entry] = []
        seen: set[str] = set()
        for item in await self._store.list_all(staging):
            name = entry_name_from_staged(staging, item.key)
            if not name or name in seen:
                continue
            seen.add(name)
            entries.append(_Entry(name=name, key=item.key, size=item.size, modified=item.last_modified))

        try:
            if not entries:
                raise PartialFailureError(f"No staged objects under {staging}", run_id=job.run_id)
            stats, key = await self._assemble(order_key, entries, job.content_hash)
        except ArchiveError as e:
            self._record_metric(order_key, job.run_id, "merge", started, len(entries),
                                worker_count=job.worker_count, success=False, error=e.message)
            raise

        await self._state.set_state(
            order_key,
            Ready(content_hash=job.content_hash, completed_at=datetime.now(timezone.utc)),
        )
        await self._cleanup_staging(staging)
        result = self._result(key, stats, started)
        self._record_metric(
            order_key, job.run_id, "merge", started, stats.files_added,
            worker_count=job.worker_count,
            archive_size_bytes=stats.archive_size_bytes,
            bottleneck=stats.bottleneck,
        )
        logger.info(
            "Merge completed: %s (%d files, %d bytes, %d parts)",
            key, stats.files_added, stats.archive_size_bytes, stats.parts_count,
        )
        return result

    async def build_direct(
        self,
        request: ArchiveRequest,
        keys: list[str],
        content_hash: str | None,
        run_id: str = "single",
    ) -> MergeResult:
        """Single path: stream the sources straight into the archive."""
        set_component_context("single")
        order_key = request.order_key
        started = time.monotonic()
        entries: list[_Entry] = []
        seen: set[str] = set()
        for name in keys:
            if is_derivative_key(name):
                continue
            src = source_key(order_key, name, self._policy.root)
            entry_name = entry_name_from_source(order_key, src, self._policy.root)
            if entry_name in seen:
                continue
            seen.add(entry_name)
            entries.append(_Entry(name=entry_name, key=src))

        try:
            stats, key = await self._assemble(order_key, entries, content_hash)
        except ArchiveError as e:
            self._record_metric(order_key, run_id, "single", started, len(entries),
                                success=False, error=e.message)
            raise

        await self._state.set_state(
            order_key,
            Ready(content_hash=content_hash, completed_at=datetime.now(timezone.utc)),
        )
        self._record_metric(
            order_key, run_id, "single", started, stats.files_added,
            archive_size_bytes=stats.archive_size_bytes,
            bottleneck=stats.bottleneck,
        )
        logger.info("Archive built directly: %s (%d files)", key, stats.files_added)
        return self._result(key, stats, started)

    # --- Assembly ---

    async def _assemble(
        self, order_key: OrderKey, entries: list[_Entry], content_hash: str | None
    ) -> tuple[_AssemblyStats, str]:
        policy = self._policy
        key = archive_key(order_key, policy.root)
        expires_at = (
            await self._directory.get_expires_at(order_key.container_id)
            if self._directory is not None else None
        )
        metadata = {HASH_METADATA_KEY: content_hash} if content_hash else {}

        session_id = await self._store.multipart_create(key, metadata=metadata, expires_at=expires_at)
        compensation = CompensatingActions(f"assemble {key}")
        compensation.add(
            "abort multipart upload",
            lambda: self._store.multipart_abort(key, session_id),
        )
        uploader = PartUploader(
            self._store,
            key,
            session_id,
            max_parts=policy.max_parts,
            consumers=policy.upload_consumers,
            queue_depth=policy.queue_depth,
            retry=policy.retry,
        )
        uploader.start()
        sink = PartSink(policy.part_size)
        reporter = ProgressReporter(
            self._state,
            order_key,
            total=len(entries),
            every_files=policy.progress_every_files,
            min_interval_s=policy.progress_min_interval_s,
        )
        stats = _AssemblyStats()

        try:
            await self._write_entries(entries, sink, uploader, reporter, stats)
            await uploader.drain(sink)
            tail = sink.take_tail()
            if tail or uploader.parts_submitted == 0:
                await uploader.submit(tail)
            parts = await uploader.finish()
            if not uploader.first_bytes.startswith(ZIP_SIGNATURE):
                raise StorageError(f"Archive {key} does not start with a ZIP signature")
            await self._store.multipart_complete(key, session_id, parts)
            compensation.discard()
        except BaseException:
            await uploader.cancel()
            await compensation.run()
            raise

        await reporter.finish()
        stats.archive_size_bytes = sink.bytes_written
        stats.parts_count = len(parts)
        stats.upload_wait_s = uploader.wait_s
        return stats, key

    async def _write_entries(
        self,
        entries: list[_Entry],
        sink: PartSink,
        uploader: PartUploader,
        reporter: ProgressReporter,
        stats: _AssemblyStats,
    ) -> None:
        policy = self._policy
        allowed_failures = int(len(entries) * policy.failure_tolerance)
        pending = deque(entries)
        window: deque[_EntryFeed] = deque()
        current: _EntryFeed | None = None

        def _fill() -> None:
            while pending and len(window) < policy.read_concurrency:
                feed = _EntryFeed(entry=pending.popleft(), queue=asyncio.Queue(maxsize=policy.feed_depth))
                feed.task = asyncio.create_task(self._read_entry(feed))
                window.append(feed)

        try:
            with zipfile.ZipFile(sink, "w", compression=zipfile.ZIP_STORED, allowZip64=True) as zf:
                _fill()
                while window:
                    feed = current = window.popleft()
                    _fill()
                    first = await self._next_item(feed, stats)
                    if isinstance(first, Exception):
                        stats.files_failed += 1
                        stats.failures.append(f"{feed.entry.key}: {first}")
                        logger.warning("Skipping unreadable entry %s: %s", feed.entry.key, first)
                        if stats.files_failed > allowed_failures:
                            raise PartialFailureError(
                                f"{stats.files_failed}/{len(entries)} entries unreadable "
                                f"(tolerance {policy.failure_tolerance:.0%})",
                                failures=stats.failures[:20],
                            )
                        continue

                    size = feed.entry.size or 0
                    info = zipfile.ZipInfo(feed.entry.name, date_time=_zip_date_time(feed.entry.modified))
                    info.compress_type = zipfile.ZIP_STORED
                    info.file_size = size
                    item = first
                    with zf.open(info, "w", force_zip64=feed.entry.size is None) as dest:
                        while item is not _EOF:
                            if isinstance(item, Exception):
                                raise StorageError(
                                    f"Entry {feed.entry.key} failed mid-stream: {item}",
                                    key=feed.entry.key,
                                ) from item
                            dest.write(item)
                            await uploader.drain(sink)
                            item = await self._next_item(feed, stats)
                    stats.files_added += 1
                    await reporter.advance()
            await uploader.drain(sink)
        finally:
            leftover = [f.task for f in (current, *window) if f is not None and f.task is not None]
            for task in leftover:
                task.cancel()
            await asyncio.gather(*leftover, return_exceptions=True)

    @staticmethod
    async def _next_item(feed: _EntryFeed, stats: _AssemblyStats) -> Any:
        started = time.monotonic()
        item = await feed.queue.get()
        stats.read_wait_s += time.monotonic() - started
        return item

    async def _read_entry(self, feed: _EntryFeed) -> None:
        """Reader task: push chunks, then _EOF, or a single exception."""
        policy = self._policy
        stream: ObjectStream | None = None
        try:
            stream = await with_retry(
                self._open,
                feed.entry.key,
                label=f"open {feed.entry.key}",
                config=policy.retry,
            )
            if feed.entry.size is None and stream.size is not None:
                feed.entry.size = stream.size
            while True:
                try:
                    chunk = await asyncio.wait_for(stream.read_chunk(), policy.read_timeout_s)
                except asyncio.TimeoutError as e:
                    raise TransientIOError(
                        f"Read of {feed.entry.key} stalled for {policy.read_timeout_s}s"
                    ) from e
                if not chunk:
                    break
                await feed.queue.put(chunk)
            await feed.queue.put(_EOF)
        except ArchiveError as e:
            await feed.queue.put(e)
        except Exception as e:
            await feed.queue.put(StorageError(f"{type(e).__name__}: {e}", key=feed.entry.key))
        finally:
            if stream is not None:
                await stream.close()

    async def _open(self, key: str) -> ObjectStream:
        try:
            return await asyncio.wait_for(self._store.stream_get(key), self._policy.read_timeout_s)
        except asyncio.TimeoutError as e:
            raise TransientIOError(f"Open of {key} timed out") from e

    async def _cleanup_staging(self, staging: str) -> None:
        try:
            report = await self._store.delete_prefix(staging)
        except ArchiveError as e:
            logger.warning("Staging cleanup failed for %s: %s", staging, e.message)
            return
        if report.errors:
            logger.warning(
                "Staging cleanup left %d objects under %s", len(report.errors), staging,
                extra={"data": {"errors": report.errors[:20]}},
            )
        else:
            logger.info("Staging cleaned: %s (%d objects)", staging, report.deleted)

    # --- Helpers ---

    async def _committed_result(self, job: MergeJob, started: float) -> MergeResult | None:
        """MergeResult of an archive already committed for this job's content."""
        if job.content_hash is None:
            return None
        state = await self._state.get_order_state(job.order_key)
        if not isinstance(state, Ready) or state.content_hash != job.content_hash:
            return None
        key = archive_key(job.order_key, self._policy.root)
        try:
            info = await self._store.head(key)
        except NotFoundError:
            return None
        if info.metadata.get(HASH_METADATA_KEY) != job.content_hash:
            return None
        return MergeResult(
            archive_key=key,
            files_added=sum(r.files_staged for r in job.chunk_results),
            files_failed=0,
            archive_size_bytes=info.size,
            parts_count=0,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    @staticmethod
    def _result(key: str, stats: _AssemblyStats, started: float) -> MergeResult:
        return MergeResult(
            archive_key=key,
            files_added=stats.files_added,
            files_failed=stats.files_failed,
            archive_size_bytes=stats.archive_size_bytes,
            parts_count=stats.parts_count,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    def _record_metric(
        self,
        order_key: OrderKey,
        run_id: str,
        phase: str,
        started: float,
        files_count: int,
        success: bool = True,
        error: str | None = None,
        **fields: Any,
    ) -> None:
        if self._metrics is None:
            return
        self._metrics.record(
            order_key,
            run_id,
            phase,
            duration_ms=int((time.monotonic() - started) * 1000),
            success=success,
            error=error,
            files_count=files_count,
            config={
                "part_size": self._policy.part_size,
                "read_concurrency": self._policy.read_concurrency,
                "upload_consumers": self._policy.upload_consumers,
            },
            **fields,
        )
