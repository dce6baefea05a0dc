# src/planner/worker_policy.py - v1
"""Worker-count policy and key partitioning for the chunked path."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

from chunkzip.config.settings import ConfigurationError, Settings
from chunkzip.core.models import ChunkTask

# (max files, workers); anything larger uses DEFAULT_MAX_WORKERS.
DEFAULT_WORKER_STEPS: tuple[tuple[int, int], ...] = (
    (500, 2),
    (1000, 3),
    (2000, 5),
    (4000, 8),
    (8000, 10),
    (15000, 14),
)
DEFAULT_MAX_WORKERS = 20


@dataclass(frozen=True)
class PlannerPolicy:
    """Routing thresholds for the Chunk Planner."""

    chunk_threshold: int = 100
    max_workers: int = DEFAULT_MAX_WORKERS
    worker_steps: tuple[tuple[int, int], ...] = field(default=DEFAULT_WORKER_STEPS)

    @classmethod
    def from_settings(cls, settings: Settings) -> PlannerPolicy:
        return cls(chunk_threshold=settings.chunk_threshold, max_workers=settings.max_workers)


def get_worker_count(
    files_count: int,
    max_workers: int = DEFAULT_MAX_WORKERS,
    steps: Sequence[tuple[int, int]] = DEFAULT_WORKER_STEPS,
) -> int:
    """Monotonic step function of the file count, bounded by ``max_workers``.

    Never exceeds the file count, so no chunk is ever empty.
    """
    if files_count <= 0:
        return 1
    workers = DEFAULT_MAX_WORKERS
    for limit, count in steps:
        if files_count <= limit:
            workers = count
            break
    return max(1, min(workers, max_workers, files_count))


def split_into_chunks(keys: Sequence[str], worker_count: int) -> list[ChunkTask]:
    """Partition ``keys`` into exactly ``worker_count`` contiguous chunks.

    Chunk sizes differ by at most one; the first ``len(keys) % worker_count``
    chunks take the extra key.
    """
    if worker_count < 1:
        raise ValueError("worker_count must be >= 1")
    base, extra = divmod(len(keys), worker_count)
    chunks: list[ChunkTask] = []
    start = 0
    for index in range(worker_count):
        size = base + (1 if index < extra else 0)
        chunks.append(ChunkTask(chunk_index=index, assigned_keys=tuple(keys[start:start + size])))
        start += size
    return chunks


def verify_partition(chunks: Sequence[ChunkTask], worker_count: int, files_count: int) -> None:
    """Post-partition check; a mismatch is a planner defect, never retried.

    Raises:
        ConfigurationError: On chunk count or key total mismatch.
    """
    total = sum(len(c.assigned_keys) for c in chunks)
    if len(chunks) != worker_count or total != files_count:
        raise ConfigurationError(
            f"Partition mismatch: {len(chunks)} chunks / {total} keys, "
            f"expected {worker_count} / {files_count}"
        )
    indexes = [c.chunk_index for c in chunks]
    if indexes != list(range(worker_count)):
        raise ConfigurationError(f"Chunk indexes not contiguous: {indexes}")
