# src/api/facade.py - v1
"""Public API facade: trigger, status, retry, sweep and metrics.

Usage:
    from chunkzip.api.facade import ArchiveService
    service = ArchiveService.from_settings(load_settings())
    response = await service.trigger(request)
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path

from chunkzip.catalog.directory import BaseContainerDirectory, StaticContainerDirectory
from chunkzip.catalog.membership import BaseMembershipIndex, PrefixMembershipIndex
from chunkzip.config.settings import Settings
from chunkzip.core.errors import NotFoundError
from chunkzip.core.models import (
    ArchiveRequest,
    ErrorInfo,
    ErrorState,
    FailureEvent,
    FailureOutcome,
    Generating,
    OrderKey,
    StatusReport,
    SweepReport,
    TriggerResponse,
)
from chunkzip.pipeline.chunk_worker import ChunkWorker, WorkerPolicy
from chunkzip.pipeline.failure_handler import FailureHandler
from chunkzip.pipeline.merge_assembler import MergeAssembler, MergePolicy
from chunkzip.pipeline.orchestrator import (
    BaseOrchestrator,
    LocalOrchestrator,
    StepFunctionsOrchestrator,
)
from chunkzip.pipeline.retry_initiator import RetryInitiator
from chunkzip.pipeline.sweeper import StalenessSweeper
from chunkzip.planner.router import ChunkPlanner
from chunkzip.planner.worker_policy import PlannerPolicy
from chunkzip.state.base_state_store import BaseStateStore
from chunkzip.state.state_factory import create_state_store
from chunkzip.storage.base_object_store import BaseObjectStore
from chunkzip.storage.layout import archive_key
from chunkzip.storage.store_factory import create_object_store
from chunkzip.tracking.metrics import MetricsRecorder, load_metrics
from chunkzip.tracking.models import MetricsSummary
from chunkzip.tracking.stats_aggregator import summarize_metrics

logger = logging.getLogger(__name__)


class ArchiveService:
    """Wires the pipeline components behind the public surfaces."""

    def __init__(
        self,
        store: BaseObjectStore,
        state_store: BaseStateStore,
        planner: ChunkPlanner,
        retry_initiator: RetryInitiator,
        sweeper: StalenessSweeper,
        failure_handler: FailureHandler,
        orchestrator: BaseOrchestrator | None = None,
        metrics: MetricsRecorder | None = None,
        root: str = "galleries",
        metrics_file: Path | None = None,
    ) -> None:
        self.store = store
        self.state_store = state_store
        self.planner = planner
        self.retry_initiator = retry_initiator
        self.sweeper = sweeper
        self.failure_handler = failure_handler
        self.orchestrator = orchestrator
        self.metrics = metrics or MetricsRecorder()
        self._root = root
        self._metrics_file = metrics_file

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: BaseObjectStore | None = None,
        state_store: BaseStateStore | None = None,
        membership: BaseMembershipIndex | None = None,
        directory: BaseContainerDirectory | None = None,
        background: bool = False,
    ) -> ArchiveService:
        """Build a fully wired service from settings.

        Args:
            settings: Application settings.
            store: Object store override (default: from OBJECT_STORE).
            state_store: State store override (default: from STATE_STORE).
            membership: Membership index (default: prefix listing).
            directory: Container directory (default: no expiries).
            background: Run local executions and single builds as background tasks.
        """
        root = settings.storage_root
        store = store or create_object_store(settings)
        state_store = state_store or create_state_store(settings)
        membership = membership or PrefixMembershipIndex(store, root)
        directory = directory or StaticContainerDirectory()
        metrics = MetricsRecorder(settings.metrics_file)

        failure_handler = FailureHandler(
            store,
            state_store,
            state_machine_marker=settings.state_machine_marker,
            root=root,
        )
        assembler = MergeAssembler(
            store, state_store, directory, MergePolicy.from_settings(settings), metrics
        )
        worker = ChunkWorker(store, WorkerPolicy.from_settings(settings), metrics)

        orchestrator: BaseOrchestrator | None = None
        if settings.orchestrator == "local":
            orchestrator = LocalOrchestrator(
                worker,
                assembler,
                failure_handler,
                max_concurrency=settings.orchestrator_max_concurrency,
                merge_attempts=settings.merge_attempts,
                background=background,
                state_machine_name=settings.state_machine_marker,
            )
        elif settings.orchestrator == "stepfunctions":
            orchestrator = StepFunctionsOrchestrator(
                settings.state_machine_arn, region=settings.s3_region or None
            )
            failure_handler.attach_describer(orchestrator)

        planner = ChunkPlanner(
            store,
            state_store,
            assembler,
            failure_handler,
            orchestrator=orchestrator,
            membership=membership,
            policy=PlannerPolicy.from_settings(settings),
            hash_concurrency=settings.hash_head_concurrency,
            single_path_inline=settings.single_path_inline and not background,
            root=root,
        )
        retry_initiator = RetryInitiator(
            store,
            state_store,
            planner,
            failure_handler,
            membership=membership,
            hash_concurrency=settings.hash_head_concurrency,
            root=root,
        )
        sweeper = StalenessSweeper(store, retention_s=settings.archive_retention_s, root=root)
        return cls(
            store,
            state_store,
            planner,
            retry_initiator,
            sweeper,
            failure_handler,
            orchestrator=orchestrator,
            metrics=metrics,
            root=root,
            metrics_file=settings.metrics_file,
        )

    # --- Surfaces ---

    async def trigger(self, request: ArchiveRequest) -> TriggerResponse:
        return await self.planner.plan(request)

    async def status(self, order_key: OrderKey) -> StatusReport:
        """Current generation status of one archive.

        READY requires the archive to actually exist; an archive removed by
        the sweeper reads as NOT_STARTED.
        """
        state = await self.state_store.get_order_state(order_key)

        if isinstance(state, Generating):
            elapsed = datetime.now(timezone.utc) - state.since
            return StatusReport(
                status="generating",
                progress=state.progress,
                elapsed_seconds=max(0, int(elapsed.total_seconds())),
            )
        if isinstance(state, ErrorState):
            return StatusReport(
                status="error",
                error=ErrorInfo(
                    message=state.message,
                    attempts=state.attempts,
                    can_retry=True,
                    timestamp=state.timestamp,
                ),
            )

        key = archive_key(order_key, self._root)
        try:
            info = await self.store.head(key)
        except NotFoundError:
            return StatusReport(status="not_started")
        return StatusReport(status="ready", archive_key=key, archive_size_bytes=info.size)

    async def retry(self, order_key: OrderKey, keys: list[str] | None = None) -> TriggerResponse:
        return await self.retry_initiator.retry(order_key, keys)

    async def sweep(self) -> SweepReport:
        return await self.sweeper.sweep()

    async def handle_failure(self, event: FailureEvent) -> FailureOutcome:
        return await self.failure_handler.handle(event)

    def metrics_summary(self, since: datetime | None = None, until: datetime | None = None) -> MetricsSummary:
        """Summary over persisted metrics when a file is configured, else in-memory."""
        if self._metrics_file:
            records = load_metrics(self._metrics_file)
        else:
            records = self.metrics.records
        return summarize_metrics(records, since=since, until=until)

    async def drain(self) -> None:
        """Wait for background work (tests, CLI shutdown)."""
        await self.planner.drain()
        if isinstance(self.orchestrator, LocalOrchestrator):
            await self.orchestrator.drain()
