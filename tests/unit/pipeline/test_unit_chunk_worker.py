# tests/unit/pipeline/test_unit_chunk_worker.py - v1
"""Tests for pipeline/chunk_worker.py - staging one chunk."""

from __future__ import annotations

import asyncio

import pytest

from chunkzip.core.errors import ChunkFailedError, StorageError, TransientIOError, ValidationError
from chunkzip.core.models import ChunkJob
from chunkzip.core.retry import RetryConfig
from chunkzip.pipeline.chunk_worker import ChunkWorker, WorkerPolicy, validate_chunk_job
from chunkzip.storage.memory_store import InMemoryObjectStore
from chunkzip.tracking.metrics import MetricsRecorder

NO_WAIT = RetryConfig(max_retries=2, base_delay_s=0.0, max_delay_s=0.0, jitter=False)
PREFIX = "galleries/g1/tmp/o1/r1/chunk-1/"


def _job(keys, run_id="r1", chunk_index=1, kind="original") -> ChunkJob:
    return ChunkJob(
        container_id="g1",
        order_id="o1",
        archive_kind=kind,
        run_id=run_id,
        chunk_index=chunk_index,
        keys=tuple(keys),
        worker_count=4,
    )


def _seed(store: InMemoryObjectStore, names: list[str]) -> None:
    for name in names:
        store.seed(f"galleries/g1/originals/{name}", name.encode() * 10)


@pytest.fixture
def store() -> InMemoryObjectStore:
    return InMemoryObjectStore(chunk_size=8)


@pytest.fixture
def worker(store) -> ChunkWorker:
    return ChunkWorker(store, WorkerPolicy(copy_concurrency=3, retry=NO_WAIT))


class TestValidateChunkJob:
    def test_empty_keys(self):
        with pytest.raises(ValidationError):
            validate_chunk_job(_job([]))

    def test_valid(self):
        validate_chunk_job(_job(["a.jpg"]))


class TestChunkWorker:
    @pytest.mark.asyncio
    async def test_stages_all(self, store, worker):
        names = [f"{i}.jpg" for i in range(10)]
        _seed(store, names)
        result = await worker.run(_job(names))
        assert result.files_staged == 10
        assert result.chunk_index == 1
        assert result.bytes_staged == sum(len(n) * 10 for n in names)
        assert store.keys(PREFIX) == sorted(PREFIX + n for n in names)
        assert store.get_bytes(PREFIX + "3.jpg") == b"3.jpg" * 10

    @pytest.mark.asyncio
    async def test_missing_sources_skipped(self, store, worker):
        _seed(store, ["a.jpg", "b.jpg"])
        result = await worker.run(_job(["a.jpg", "b.jpg", "gone.jpg"]))
        assert result.files_staged == 2
        assert result.files_missing == 1

    @pytest.mark.asyncio
    async def test_derivatives_filtered(self, store, worker):
        _seed(store, ["a.jpg"])
        store.seed("galleries/g1/originals/thumbs/a.jpg", b"t")
        result = await worker.run(_job(["a.jpg", "thumbs/a.jpg"]))
        assert result.files_staged == 1
        assert store.keys(PREFIX) == [PREFIX + "a.jpg"]

    @pytest.mark.asyncio
    async def test_transient_failure_retried(self, store, worker):
        _seed(store, ["a.jpg"])
        store.schedule_read_failure("galleries/g1/originals/a.jpg", TransientIOError("reset"), times=2)
        result = await worker.run(_job(["a.jpg"]))
        assert result.files_staged == 1

    @pytest.mark.asyncio
    async def test_permanent_failure_counted(self, store, worker):
        _seed(store, ["a.jpg", "b.jpg"])
        store.schedule_read_failure("galleries/g1/originals/b.jpg", StorageError("denied"))
        result = await worker.run(_job(["a.jpg", "b.jpg"]))
        assert result.files_staged == 1
        assert result.files_failed == 1

    @pytest.mark.asyncio
    async def test_high_missing_rate_only_warns(self, store, worker, caplog):
        _seed(store, ["a.jpg"])
        result = await worker.run(_job(["a.jpg", "x.jpg", "y.jpg"]))
        assert result.files_staged == 1
        assert "tolerance" in caplog.text

    @pytest.mark.asyncio
    async def test_nothing_staged_fails(self, store, worker):
        with pytest.raises(ChunkFailedError):
            await worker.run(_job(["x.jpg", "y.jpg"]))

    @pytest.mark.asyncio
    async def test_final_kind_uses_order_prefix(self, store, worker):
        store.seed("galleries/g1/final/o1/f.jpg", b"final")
        result = await worker.run(_job(["f.jpg"], kind="final"))
        assert result.files_staged == 1
        assert store.get_bytes(PREFIX + "f.jpg") == b"final"

    @pytest.mark.asyncio
    async def test_bounded_concurrency(self, store):
        names = [f"{i}.jpg" for i in range(12)]
        _seed(store, names)
        in_flight = {"now": 0, "peak": 0}
        real_copy = store.copy_stream

        async def tracking_copy(src, dst):
            in_flight["now"] += 1
            in_flight["peak"] = max(in_flight["peak"], in_flight["now"])
            await asyncio.sleep(0.01)
            try:
                return await real_copy(src, dst)
            finally:
                in_flight["now"] -= 1

        store.copy_stream = tracking_copy
        await ChunkWorker(store, WorkerPolicy(copy_concurrency=3, retry=NO_WAIT)).run(_job(names))
        assert in_flight["peak"] == 3

    @pytest.mark.asyncio
    async def test_metrics(self, store):
        _seed(store, ["a.jpg"])
        metrics = MetricsRecorder()
        await ChunkWorker(store, WorkerPolicy(retry=NO_WAIT), metrics).run(_job(["a.jpg"]))
        [metric] = metrics.records
        assert metric.phase == "chunk"
        assert metric.chunk_index == 1
        assert metric.worker_count == 4
