# src/planner/router.py - v1
"""Chunk Planner: resolves the key set and routes to the single or chunked path.

Small sets are streamed straight into the archive; larger sets get a
fresh run id and are partitioned into worker-sized chunks handed to the
orchestrator. The idempotency guard runs first on both paths.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from datetime import datetime, timezone
from typing import Any

from chunkzip.catalog.membership import BaseMembershipIndex
from chunkzip.core.errors import ArchiveError, NoFilesError, OrchestrationFailure, ValidationError
from chunkzip.core.models import (
    ArchiveRequest,
    Generating,
    OrderKey,
    Ready,
    RunPlan,
    TriggerResponse,
)
from chunkzip.idempotency.content_hash import compute_request_hash
from chunkzip.idempotency.guard import IdempotencyGuard
from chunkzip.logging.context import set_component_context, set_order_context
from chunkzip.pipeline.failure_handler import FailureHandler
from chunkzip.pipeline.merge_assembler import MergeAssembler
from chunkzip.pipeline.orchestrator import BaseOrchestrator
from chunkzip.planner.worker_policy import (
    PlannerPolicy,
    get_worker_count,
    split_into_chunks,
    verify_partition,
)
from chunkzip.state.base_state_store import BaseStateStore
from chunkzip.storage.base_object_store import BaseObjectStore
from chunkzip.storage.layout import DEFAULT_ROOT, is_derivative_key

logger = logging.getLogger(__name__)


def new_run_id() -> str:
    """Opaque URL-safe run identifier."""
    return secrets.token_urlsafe(12)


class ChunkPlanner:
    """Entry point of a generation: plan, guard, dispatch."""

    def __init__(
        self,
        store: BaseObjectStore,
        state_store: BaseStateStore,
        assembler: MergeAssembler,
        failure_handler: FailureHandler,
        orchestrator: BaseOrchestrator | None = None,
        membership: BaseMembershipIndex | None = None,
        policy: PlannerPolicy | None = None,
        guard: IdempotencyGuard | None = None,
        hash_concurrency: int = 10,
        single_path_inline: bool = True,
        root: str = DEFAULT_ROOT,
    ) -> None:
        self._store = store
        self._state = state_store
        self._assembler = assembler
        self._failure_handler = failure_handler
        self._orchestrator = orchestrator
        self._membership = membership
        self._policy = policy or PlannerPolicy()
        self._guard = guard or IdempotencyGuard(store, root)
        self._hash_concurrency = hash_concurrency
        self._inline = single_path_inline
        self._root = root
        self._background: set[asyncio.Task[None]] = set()

    async def plan(self, request: ArchiveRequest) -> TriggerResponse:
        """Plan and dispatch one archive generation.

        Args:
            request: Container, order, kind and optional explicit keys.

        Returns:
            TriggerResponse describing the chosen path.

        Raises:
            NoFilesError: The resolved key set is empty.
            ConfigurationError: The partition does not cover the key set.
            OrchestrationFailure: The orchestrator refused to start.
        """
        order_key = request.order_key
        set_order_context(order_key.container_id, order_key.order_id, order_key.archive_kind)
        set_component_context("planner")

        keys = await self._resolve_keys(request)
        files_count = len(keys)
        if files_count == 0:
            raise NoFilesError("No files to zip", order=str(order_key))

        content_hash = request.content_hash or await compute_request_hash(
            self._store, order_key, keys, self._hash_concurrency, self._root
        )

        decision = await self._guard.check(order_key, content_hash)
        if decision.action == "skip":
            await self._state.set_state(
                order_key,
                Ready(content_hash=content_hash, completed_at=datetime.now(timezone.utc)),
            )
            return TriggerResponse(status="ready", path="idempotent", files_count=files_count)

        attempt = await self._current_attempt(order_key)
        now = datetime.now(timezone.utc)

        if files_count <= self._policy.chunk_threshold or self._orchestrator is None:
            await self._state.set_state(
                order_key, Generating(since=now, attempt=attempt, content_hash=content_hash)
            )
            logger.info("Single path for %s (%d files)", order_key, files_count)
            if self._inline:
                await self._run_single(request, keys, content_hash, raise_errors=True)
            else:
                task = asyncio.create_task(self._run_single(request, keys, content_hash))
                self._background.add(task)
                task.add_done_callback(self._background.discard)
            return TriggerResponse(status="generating", path="single", files_count=files_count)

        plan = self.build_plan(keys, content_hash)
        await self._state.set_state(
            order_key,
            Generating(since=now, attempt=attempt, run_id=plan.run_id, content_hash=content_hash),
        )
        set_order_context(order_key.container_id, order_key.order_id, order_key.archive_kind, plan.run_id)
        try:
            execution_id = await self._orchestrator.start(plan, request)
        except ArchiveError as e:
            await self._failure_handler.record_failure(
                order_key, e.message, error_name=e.reason_code, run_id=plan.run_id
            )
            if isinstance(e, OrchestrationFailure):
                raise
            raise OrchestrationFailure(f"Failed to start archive generation: {e.message}") from e

        logger.info(
            "Chunked path for %s: run %s, %d workers, %d files",
            order_key, plan.run_id, plan.worker_count, files_count,
        )
        return TriggerResponse(
            status="generating",
            path="chunked",
            run_id=plan.run_id,
            worker_count=plan.worker_count,
            files_count=files_count,
            execution_id=execution_id,
        )

    def build_plan(self, keys: list[str], content_hash: str | None) -> RunPlan:
        """Partition ``keys`` for the chunked path (verified before returning)."""
        files_count = len(keys)
        worker_count = get_worker_count(
            files_count, self._policy.max_workers, self._policy.worker_steps
        )
        chunks = split_into_chunks(keys, worker_count)
        verify_partition(chunks, worker_count, files_count)
        return RunPlan(
            run_id=new_run_id(),
            worker_count=worker_count,
            chunks=tuple(chunks),
            content_hash=content_hash,
            files_count=files_count,
        )

    async def drain(self) -> None:
        """Wait for background single-path builds."""
        if self._background:
            await asyncio.gather(*list(self._background))

    async def _resolve_keys(self, request: ArchiveRequest) -> list[str]:
        """Member keys to archive, thumbnails and previews excluded."""
        if request.keys is not None:
            return [k for k in request.keys if not is_derivative_key(k)]
        if self._membership is None:
            raise ValidationError("Request has no keys and no membership index is configured")
        order_key = request.order_key
        if await self._membership.count(order_key) == 0:
            return []
        return [k for k in await self._membership.list_keys(order_key) if not is_derivative_key(k)]

    async def _current_attempt(self, order_key: OrderKey) -> int:
        current = await self._state.get_order_state(order_key)
        return current.attempt if isinstance(current, Generating) else 1

    async def _run_single(
        self,
        request: ArchiveRequest,
        keys: list[str],
        content_hash: str | None,
        raise_errors: bool = False,
    ) -> Any:
        run_id = f"single-{new_run_id()}"
        try:
            return await self._assembler.build_direct(request, keys, content_hash, run_id=run_id)
        except Exception as e:
            message = getattr(e, "message", str(e))
            logger.error("Single-path generation failed for %s: %s", request.order_key, message)
            await self._failure_handler.record_failure(
                request.order_key,
                message,
                error_name=getattr(e, "reason_code", type(e).__name__),
            )
            if raise_errors:
                raise
            return None
