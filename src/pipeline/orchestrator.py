# src/pipeline/orchestrator.py - v1
"""Orchestrator runtimes for the chunked path.

The orchestrator fans a RunPlan out to one Chunk Worker per chunk, waits
for every chunk to settle, then invokes the Merge Assembler. Any
unrecoverable failure is delivered to the Failure Handler as a
FailureEvent.

Two runtimes share the same contract:
    LocalOrchestrator          in-process asyncio Map runtime
    StepFunctionsOrchestrator  AWS Step Functions state machine (boto3)
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any

from chunkzip.api.events import decode_chunk_event, decode_merge_event
from chunkzip.core.errors import ArchiveError, ChunkFailedError, OrchestrationFailure
from chunkzip.core.models import (
    ArchiveRequest,
    ChunkJob,
    ChunkResult,
    FailureEvent,
    MergeJob,
    MergeResult,
    RunPlan,
)
from chunkzip.logging.context import set_order_context
from chunkzip.pipeline.chunk_worker import ChunkWorker
from chunkzip.pipeline.failure_handler import FailureHandler
from chunkzip.pipeline.merge_assembler import MergeAssembler

logger = logging.getLogger(__name__)

DEFAULT_STATE_MACHINE_NAME = "ZipChunkedStateMachine"

# Settled executions kept for describe_execution.
DEFAULT_HISTORY_LIMIT = 200


def build_execution_input(plan: RunPlan, request: ArchiveRequest) -> dict[str, Any]:
    """State machine input (camelCase, JSON-serialisable)."""
    return {
        "containerId": request.container_id,
        "orderId": request.order_id,
        "type": request.archive_kind,
        "runId": plan.run_id,
        "workerCount": plan.worker_count,
        "contentHash": plan.content_hash,
        "filesCount": plan.files_count,
        "chunkItems": [
            {"chunkIndex": c.chunk_index, "keys": list(c.assigned_keys)} for c in plan.chunks
        ],
    }


class BaseOrchestrator(ABC):
    """Runtime that executes a RunPlan."""

    @abstractmethod
    async def start(self, plan: RunPlan, request: ArchiveRequest) -> str:
        """Start an execution and return its id.

        Raises:
            OrchestrationFailure: If the execution could not be started.
        """

    @abstractmethod
    async def describe_execution(self, execution_id: str) -> dict[str, Any]:
        """Return ``{"status": ..., "input": {...}}`` for an execution."""


class LocalOrchestrator(BaseOrchestrator):
    """In-process Map runtime built on asyncio tasks."""

    def __init__(
        self,
        worker: ChunkWorker,
        assembler: MergeAssembler,
        failure_handler: FailureHandler,
        max_concurrency: int = 20,
        merge_attempts: int = 2,
        background: bool = True,
        state_machine_name: str = DEFAULT_STATE_MACHINE_NAME,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> None:
        self._worker = worker
        self._assembler = assembler
        self._failure_handler = failure_handler
        self._max_concurrency = max_concurrency
        self._merge_attempts = max(1, merge_attempts)
        self._background = background
        self._name = state_machine_name
        self._executions: dict[str, dict[str, Any]] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._history_limit = max(1, history_limit)

    async def start(self, plan: RunPlan, request: ArchiveRequest) -> str:
        execution_id = f"local:{self._name}:{plan.run_id}"
        self._executions[execution_id] = {
            "status": "RUNNING",
            "input": build_execution_input(plan, request),
        }
        if self._background:
            task = asyncio.create_task(self._execute(execution_id, plan, request), name=execution_id)
            self._tasks[execution_id] = task
            task.add_done_callback(lambda _: self._tasks.pop(execution_id, None))
        else:
            await self._execute(execution_id, plan, request)
        logger.info(
            "Started local execution %s (%d workers, %d files)",
            execution_id, plan.worker_count, plan.files_count,
        )
        return execution_id

    async def describe_execution(self, execution_id: str) -> dict[str, Any]:
        execution = self._executions.get(execution_id)
        if execution is None:
            raise OrchestrationFailure(f"Unknown execution: {execution_id}")
        return dict(execution)

    async def wait(self, execution_id: str) -> None:
        task = self._tasks.get(execution_id)
        if task is not None:
            await task

    async def drain(self) -> None:
        """Wait for every background execution to settle."""
        if self._tasks:
            await asyncio.gather(*self._tasks.values())

    async def _execute(self, execution_id: str, plan: RunPlan, request: ArchiveRequest) -> None:
        set_order_context(request.container_id, request.order_id, request.archive_kind, plan.run_id)
        execution = self._executions[execution_id]
        try:
            results = await self._run_chunks(plan, request)
            await self._run_merge(plan, request, results)
            execution["status"] = "SUCCEEDED"
        except Exception as e:
            execution["status"] = "FAILED"
            logger.error("Execution %s failed: %s", execution_id, e)
            await self._failure_handler.handle(
                FailureEvent(
                    status="FAILED",
                    execution_arn=execution_id,
                    state_machine_arn=execution_id,
                    error=getattr(e, "reason_code", type(e).__name__),
                    cause=getattr(e, "message", str(e)),
                    input=execution["input"],
                )
            )
        finally:
            self._prune_history()

    def _prune_history(self) -> None:
        """Forget the oldest settled executions beyond the history limit."""
        settled = [k for k, v in self._executions.items() if v["status"] != "RUNNING"]
        excess = len(self._executions) - self._history_limit
        for execution_id in settled[:max(0, excess)]:
            del self._executions[execution_id]

    async def _run_chunks(self, plan: RunPlan, request: ArchiveRequest) -> list[ChunkResult]:
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def _one(job: ChunkJob) -> ChunkResult:
            async with semaphore:
                return await self._worker.run(job)

        jobs = [
            ChunkJob(
                container_id=request.container_id,
                order_id=request.order_id,
                archive_kind=request.archive_kind,
                run_id=plan.run_id,
                chunk_index=chunk.chunk_index,
                keys=chunk.assigned_keys,
                worker_count=plan.worker_count,
            )
            for chunk in plan.chunks
        ]
        settled = await asyncio.gather(*(_one(j) for j in jobs), return_exceptions=True)

        failures = [r for r in settled if isinstance(r, BaseException)]
        if failures:
            for failure in failures:
                logger.warning("Chunk failed: %s", failure)
            first = failures[0]
            if isinstance(first, ArchiveError):
                raise first
            raise ChunkFailedError(f"{len(failures)} chunks failed: {first}") from first
        return [r for r in settled if isinstance(r, ChunkResult)]

    async def _run_merge(
        self, plan: RunPlan, request: ArchiveRequest, results: list[ChunkResult]
    ) -> MergeResult:
        job = MergeJob(
            container_id=request.container_id,
            order_id=request.order_id,
            archive_kind=request.archive_kind,
            run_id=plan.run_id,
            worker_count=plan.worker_count,
            content_hash=plan.content_hash,
            chunk_results=tuple(results),
        )
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._assembler.merge(job)
            except ArchiveError as e:
                if not e.retryable or attempt >= self._merge_attempts:
                    raise
                logger.warning("Merge attempt %d failed, re-running: %s", attempt, e.message)


class StepFunctionsOrchestrator(BaseOrchestrator):
    """AWS Step Functions runtime (ORCHESTRATOR=stepfunctions)."""

    def __init__(
        self,
        state_machine_arn: str,
        region: str | None = None,
        client: Any = None,
    ) -> None:
        if client is None:
            try:
                import boto3
            except ImportError as e:
                raise ImportError(
                    "boto3 package required for Step Functions: pip install boto3"
                ) from e
            kwargs: dict[str, Any] = {}
            if region:
                kwargs["region_name"] = region
            client = boto3.client("stepfunctions", **kwargs)

        self._sfn = client
        self._arn = state_machine_arn

    async def start(self, plan: RunPlan, request: ArchiveRequest) -> str:
        payload = json.dumps(build_execution_input(plan, request))
        try:
            response = await asyncio.to_thread(
                self._sfn.start_execution,
                stateMachineArn=self._arn,
                name=plan.run_id,
                input=payload,
            )
        except Exception as e:
            raise OrchestrationFailure(f"Failed to start archive generation: {e}") from e

        execution_arn = response.get("executionArn")
        if not execution_arn:
            raise OrchestrationFailure("Execution started but no execution ARN returned")
        logger.info("Started state machine execution %s", execution_arn)
        return execution_arn

    async def describe_execution(self, execution_id: str) -> dict[str, Any]:
        try:
            response = await asyncio.to_thread(
                self._sfn.describe_execution, executionArn=execution_id
            )
        except Exception as e:
            raise OrchestrationFailure(f"Failed to describe {execution_id}: {e}") from e
        raw_input = response.get("input") or "{}"
        try:
            parsed = json.loads(raw_input)
        except ValueError:
            parsed = {}
        return {"status": response.get("status"), "input": parsed}


async def handle_chunk_event(worker: ChunkWorker, payload: dict[str, Any]) -> dict[str, Any]:
    """State machine task entry point for one Map iteration."""
    job: ChunkJob = decode_chunk_event(payload)
    result = await worker.run(job)
    return result.model_dump(by_alias=True)


async def handle_merge_event(assembler: MergeAssembler, payload: dict[str, Any]) -> dict[str, Any]:
    """State machine task entry point for the merge state."""
    job: MergeJob = decode_merge_event(payload)
    result = await assembler.merge(job)
    return result.model_dump(by_alias=True)
