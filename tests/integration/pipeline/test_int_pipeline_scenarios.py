# tests/integration/pipeline/test_int_pipeline_scenarios.py - v1
"""End-to-end generation scenarios on in-process backends.

Every scenario goes through ArchiveService (planner, orchestrator, chunk
workers, merge assembler, failure handler) and checks the archive that
lands in the object store.
"""

from __future__ import annotations

import asyncio
import io
import zipfile

import pytest

from chunkzip.api.facade import ArchiveService
from chunkzip.config.settings import Settings
from chunkzip.core.errors import StorageError
from chunkzip.core.models import ErrorState, Ready
from chunkzip.idempotency.guard import HASH_METADATA_KEY
from chunkzip.pipeline.chunk_worker import ChunkWorker, WorkerPolicy
from chunkzip.pipeline.failure_handler import FailureHandler
from chunkzip.pipeline.merge_assembler import MergeAssembler, MergePolicy
from chunkzip.pipeline.orchestrator import LocalOrchestrator
from chunkzip.planner.router import ChunkPlanner
from chunkzip.planner.worker_policy import PlannerPolicy
from chunkzip.storage.memory_store import InMemoryObjectStore

pytestmark = pytest.mark.integration

ARCHIVE = "galleries/g1/zips/o1.zip"
STAGING = "galleries/g1/tmp/"


def _service(store, state_store, **overrides) -> ArchiveService:
    settings = Settings(_env_file=None, transient_base_delay_s=0.0, transient_max_delay_s=0.0, **overrides)
    return ArchiveService.from_settings(settings, store=store, state_store=state_store)


def _entries(store: InMemoryObjectStore, key: str = ARCHIVE) -> dict[str, bytes]:
    with zipfile.ZipFile(io.BytesIO(store.get_bytes(key))) as zf:
        assert zf.testzip() is None
        return {name: zf.read(name) for name in zf.namelist()}


class TestSinglePathScenario:
    @pytest.mark.asyncio
    async def test_twenty_files(self, store, state_store, seed_originals, make_request, order_key):
        names = seed_originals(store, "g1", 20)
        service = _service(store, state_store)

        response = await service.trigger(make_request(names))

        assert response.path == "single"
        assert sorted(_entries(store)) == names
        report = await service.status(order_key)
        assert report.status == "ready"
        assert len(store.completed_sessions) == 1
        assert store.open_sessions == []


class TestChunkedPathScenario:
    @pytest.mark.asyncio
    async def test_five_thousand_files(self, state_store, seed_originals, make_request, order_key):
        store = InMemoryObjectStore(chunk_size=64)
        names = seed_originals(store, "g1", 5000, size=16)
        service = _service(store, state_store)

        response = await service.trigger(make_request(names))

        assert response.path == "chunked"
        assert response.worker_count == 10
        chunk_metrics = [m for m in service.metrics.records if m.phase == "chunk"]
        assert sorted(m.chunk_index for m in chunk_metrics) == list(range(10))
        assert all(m.files_count == 500 for m in chunk_metrics)

        entries = _entries(store)
        assert len(entries) == 5000
        assert entries[names[1234]] == store.get_bytes(f"galleries/g1/originals/{names[1234]}")
        assert store.keys(STAGING) == []
        assert isinstance(await state_store.get_order_state(order_key), Ready)

    @pytest.mark.asyncio
    async def test_parts_contiguous(self, store, state_store, seed_originals, make_request):
        names = seed_originals(store, "g1", 150, size=200)
        submitted: list[list[int]] = []
        real_complete = store.multipart_complete

        async def capture(key, session_id, parts):
            submitted.append([p.part_number for p in parts])
            return await real_complete(key, session_id, parts)

        store.multipart_complete = capture
        handler = FailureHandler(store, state_store)
        assembler = MergeAssembler(store, state_store, policy=MergePolicy(part_size=1024, upload_consumers=4))
        orchestrator = LocalOrchestrator(ChunkWorker(store, WorkerPolicy()), assembler, handler, background=False)
        planner = ChunkPlanner(
            store, state_store, assembler, handler, orchestrator=orchestrator, policy=PlannerPolicy()
        )

        response = await planner.plan(make_request(names))

        assert response.path == "chunked"
        [numbers] = submitted
        assert len(numbers) > 10
        assert numbers == list(range(1, len(numbers) + 1))
        assert len(_entries(store)) == 150


class TestIdempotency:
    @pytest.mark.asyncio
    async def test_unchanged_set_is_noop(self, store, state_store, seed_originals, make_request):
        names = seed_originals(store, "g1", 10)
        service = _service(store, state_store)

        await service.trigger(make_request(names))
        first_hash = (await store.head(ARCHIVE)).metadata[HASH_METADATA_KEY]
        response = await service.trigger(make_request(list(reversed(names))))

        assert response.path == "idempotent"
        assert len(store.created_sessions) == 1
        assert (await store.head(ARCHIVE)).metadata[HASH_METADATA_KEY] == first_hash

    @pytest.mark.asyncio
    async def test_changed_member_regenerates(self, store, state_store, seed_originals, make_request):
        names = seed_originals(store, "g1", 10)
        service = _service(store, state_store)
        await service.trigger(make_request(names))
        first_hash = (await store.head(ARCHIVE)).metadata[HASH_METADATA_KEY]

        store.seed(f"galleries/g1/originals/{names[3]}", b"retouched")
        response = await service.trigger(make_request(names))

        assert response.path == "single"
        assert (await store.head(ARCHIVE)).metadata[HASH_METADATA_KEY] != first_hash
        assert _entries(store)[names[3]] == b"retouched"


class TestFailureScenarios:
    @pytest.mark.asyncio
    async def test_failed_assembly_leaves_no_archive(self, store, state_store, seed_originals, make_request, order_key):
        names = seed_originals(store, "g1", 20, size=1024)
        store.schedule_mid_stream_failure(f"galleries/g1/originals/{names[7]}", after_bytes=256)
        service = _service(store, state_store)

        with pytest.raises(StorageError):
            await service.trigger(make_request(names))

        assert not await store.exists(ARCHIVE)
        assert store.open_sessions == []
        assert len(store.aborted_sessions) == 1
        report = await service.status(order_key)
        assert report.status == "error"
        assert report.error.can_retry

    @pytest.mark.asyncio
    async def test_chunk_failure_then_retry(self, store, state_store, seed_originals, make_request, order_key):
        present = seed_originals(store, "g1", 200, size=32)
        missing = [f"late-{i:03d}.jpg" for i in range(100)]
        service = _service(store, state_store)

        # 300 keys over 2 chunks: the second holds 50 present and 100 missing keys.
        response = await service.trigger(make_request(present + missing))
        assert response.path == "chunked"
        report = await service.status(order_key)
        assert report.status == "ready"
        assert len(_entries(store)) == 200

        # A chunk with nothing stageable fails the whole run.
        only_missing = [f"gone-{i:03d}.jpg" for i in range(150)]
        await service.trigger(make_request(present[:150] + only_missing))
        error = await state_store.get_order_state(order_key)
        assert isinstance(error, ErrorState)
        assert store.keys(STAGING) == []
        assert store.open_sessions == []

        for name in only_missing:
            store.seed(f"galleries/g1/originals/{name}", b"restored")
        retried = await service.retry(order_key, present[:150] + only_missing)

        assert retried.path == "chunked"
        assert (await service.status(order_key)).status == "ready"
        assert len(_entries(store)) == 300
        assert store.keys(STAGING) == []


class TestCommitAtomicity:
    @pytest.mark.parametrize("count,path", [(20, "single"), (300, "chunked")])
    @pytest.mark.asyncio
    async def test_not_ready_until_complete_returns(
        self, store, state_store, seed_originals, make_request, order_key, count, path
    ):
        names = seed_originals(store, "g1", count, size=32)
        entered = asyncio.Event()
        release = asyncio.Event()
        real_complete = store.multipart_complete

        async def paused_complete(key, session_id, parts):
            entered.set()
            await release.wait()
            return await real_complete(key, session_id, parts)

        store.multipart_complete = paused_complete
        service = _service(store, state_store)
        trigger = asyncio.create_task(service.trigger(make_request(names)))

        await asyncio.wait_for(entered.wait(), timeout=10)
        report = await service.status(order_key)
        assert report.status == "generating"
        assert not await store.exists(ARCHIVE)

        release.set()
        response = await asyncio.wait_for(trigger, timeout=10)
        assert response.path == path
        assert (await service.status(order_key)).status == "ready"
