# src/pipeline/zip_stream.py - v1
"""Streaming archive output: ZIP bytes cut into multipart parts.

``PartSink`` is the non-seekable file object ``zipfile`` writes into; it
cuts the byte stream into fixed-size parts. ``PartUploader`` numbers each
part with a single counter at submit time and uploads through a bounded
queue drained by a fixed pool of consumers.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque

from chunkzip.core.errors import CapacityExceededError, StorageError
from chunkzip.core.models import CompletedPart
from chunkzip.core.retry import RetryConfig, with_retry
from chunkzip.storage.base_object_store import BaseObjectStore

logger = logging.getLogger(__name__)

ZIP_SIGNATURE = b"PK"


class PartSink:
    """Write-only byte sink that accumulates full parts.

    Exposes neither ``seek`` nor ``tell``, so ``zipfile``
    switches to streaming mode (data descriptors after each entry).
    """

    def __init__(self, part_size: int) -> None:
        if part_size < 1:
            raise ValueError("part_size must be >= 1")
        self._part_size = part_size
        self._buffer = bytearray()
        self._ready: deque[bytes] = deque()
        self.bytes_written = 0

    def write(self, data: bytes) -> int:
        self._buffer.extend(data)
        self.bytes_written += len(data)
        while len(self._buffer) >= self._part_size:
            self._ready.append(bytes(self._buffer[:self._part_size]))
            del self._buffer[:self._part_size]
        return len(data)

    def flush(self) -> None:
        pass

    def take_ready(self) -> list[bytes]:
        parts = list(self._ready)
        self._ready.clear()
        return parts

    def take_tail(self) -> bytes:
        """Trailing bytes that never filled a part; empties the buffer."""
        tail = bytes(self._buffer)
        self._buffer.clear()
        return tail


def verify_part_sequence(parts: list[CompletedPart]) -> None:
    """Parts must be exactly 1..N: no gaps, no duplicates, ascending."""
    numbers = [p.part_number for p in parts]
    if numbers != list(range(1, len(parts) + 1)):
        raise StorageError(f"Part sequence is not contiguous: {numbers[:20]}")


class PartUploader:
    """Bounded producer/consumer uploader for one multipart session."""

    def __init__(
        self,
        store: BaseObjectStore,
        key: str,
        session_id: str,
        max_parts: int = 10_000,
        consumers: int = 4,
        queue_depth: int = 4,
        max_in_flight: int | None = None,
        retry: RetryConfig | None = None,
    ) -> None:
        self._store = store
        self._key = key
        self._session_id = session_id
        self._max_parts = max_parts
        self._queue: asyncio.Queue[tuple[int, bytes] | None] = asyncio.Queue(maxsize=queue_depth)
        self._semaphore = asyncio.Semaphore(max_in_flight or consumers)
        self._consumer_count = consumers
        self._retry = retry
        self._tasks: list[asyncio.Task[None]] = []
        self._next_part = 0
        self._parts: list[CompletedPart] = []
        self._errors: list[Exception] = []
        self.first_bytes = b""
        self.bytes_submitted = 0
        self.wait_s = 0.0

    @property
    def parts_submitted(self) -> int:
        return self._next_part

    def start(self) -> None:
        for i in range(self._consumer_count):
            self._tasks.append(asyncio.create_task(self._consume(), name=f"part-uploader-{i}"))

    async def submit(self, data: bytes) -> int:
        """Number and enqueue one part; blocks while the queue is full.

        Raises:
            CapacityExceededError: If the part count would exceed max_parts.
            ArchiveError: The first upload failure, as soon as it is known.
        """
        if self._errors:
            raise self._errors[0]
        if self._next_part >= self._max_parts:
            raise CapacityExceededError(
                f"Archive needs more than {self._max_parts} parts",
                max_parts=self._max_parts,
            )
        self._next_part += 1
        part_number = self._next_part
        if part_number == 1:
            self.first_bytes = data[:4]
        self.bytes_submitted += len(data)
        started = time.monotonic()
        await self._queue.put((part_number, data))
        self.wait_s += time.monotonic() - started
        return part_number

    async def drain(self, sink: PartSink) -> None:
        for part in sink.take_ready():
            await self.submit(part)

    async def _consume(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                if item is None:
                    return
                if self._errors:
                    continue
                part_number, data = item
                async with self._semaphore:
                    etag = await with_retry(
                        self._store.multipart_upload_part,
                        self._key,
                        self._session_id,
                        part_number,
                        data,
                        label=f"upload part {part_number}",
                        config=self._retry,
                    )
                self._parts.append(CompletedPart(part_number=part_number, etag=etag))
            except Exception as e:
                # Record and keep draining so producers never block forever.
                logger.warning("Part upload failed for %s: %s", self._key, e)
                self._errors.append(e)
            finally:
                self._queue.task_done()

    async def finish(self) -> list[CompletedPart]:
        """Wait for every queued part and return the verified part list."""
        for _ in self._tasks:
            await self._queue.put(None)
        await asyncio.gather(*self._tasks)
        self._tasks.clear()
        if self._errors:
            raise self._errors[0]
        parts = sorted(self._parts, key=lambda p: p.part_number)
        verify_part_sequence(parts)
        if len(parts) != self._next_part:
            raise StorageError(
                f"Uploaded {len(parts)} parts, submitted {self._next_part}"
            )
        return parts

    async def cancel(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
