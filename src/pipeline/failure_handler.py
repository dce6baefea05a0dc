# src/pipeline/failure_handler.py - v1
"""Failure Handler: turns a failed run into a persisted ERROR and cleans up.

Receives orchestrator-level execution notifications (or direct calls from
the single path), persists ERROR for the order, deletes the run's staging
area and aborts any multipart upload left open on the archive key.
Handling the same failure twice is harmless.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from chunkzip.core.errors import ArchiveError
from chunkzip.core.models import (
    ARCHIVE_KINDS,
    ErrorState,
    FailureEvent,
    FailureOutcome,
    Generating,
    OrderKey,
    Ready,
)
from chunkzip.logging.context import set_component_context, set_order_context
from chunkzip.state.base_state_store import BaseStateStore
from chunkzip.storage.base_object_store import BaseObjectStore
from chunkzip.storage.layout import DEFAULT_ROOT, archive_key, staging_prefix

if TYPE_CHECKING:
    from chunkzip.pipeline.orchestrator import BaseOrchestrator

logger = logging.getLogger(__name__)

TERMINAL_FAILURE_STATUSES = frozenset({"FAILED", "TIMED_OUT", "ABORTED"})
DEFAULT_FAILURE_MESSAGE = "Archive generation failed (chunked flow)"


def failure_message(error: str | None, cause: str | None) -> str:
    """Prefer the cause; unwrap ``{"errorMessage": ...}`` JSON causes."""
    if cause:
        try:
            parsed = json.loads(cause)
        except ValueError:
            return cause
        if isinstance(parsed, dict) and parsed.get("errorMessage"):
            return str(parsed["errorMessage"])
        return cause
    return error or DEFAULT_FAILURE_MESSAGE


def order_context_from_input(payload: dict[str, Any] | None) -> tuple[OrderKey, str | None] | None:
    """Recover (order key, run id) from an execution input; None if incomplete."""
    if not payload:
        return None
    container = payload.get("containerId") or payload.get("galleryId")
    order = payload.get("orderId")
    kind = payload.get("type") or payload.get("archiveKind") or "original"
    if not container or not order or kind not in ARCHIVE_KINDS:
        return None
    run_id = payload.get("runId")
    return OrderKey(container_id=container, order_id=order, archive_kind=kind), run_id


class FailureHandler:
    """Persists ERROR and compensates a failed run."""

    def __init__(
        self,
        store: BaseObjectStore,
        state_store: BaseStateStore,
        describer: BaseOrchestrator | None = None,
        state_machine_marker: str = "",
        root: str = DEFAULT_ROOT,
    ) -> None:
        self._store = store
        self._state = state_store
        self._describer = describer
        self._marker = state_machine_marker
        self._root = root

    def attach_describer(self, describer: BaseOrchestrator) -> None:
        self._describer = describer

    async def handle(self, event: FailureEvent) -> FailureOutcome:
        """Handle an execution status notification."""
        set_component_context("failure_handler")
        if event.status not in TERMINAL_FAILURE_STATUSES:
            return FailureOutcome(ok=False, reason="ignored_status")

        arn = event.state_machine_arn or event.execution_arn or ""
        if self._marker and self._marker not in arn:
            logger.debug("Ignoring failure of unrelated execution %s", arn)
            return FailureOutcome(ok=False, reason="other_state_machine")

        payload = event.input
        if payload is None and self._describer is not None and event.execution_arn:
            try:
                described = await self._describer.describe_execution(event.execution_arn)
            except ArchiveError as e:
                logger.warning("Failed to describe %s: %s", event.execution_arn, e.message)
                described = {}
            payload = described.get("input")

        context = order_context_from_input(payload)
        if context is None:
            logger.error("Failure event without order context: %s", event.execution_arn)
            return FailureOutcome(ok=False, reason="missing_context")

        order_key, run_id = context
        return await self.record_failure(
            order_key,
            failure_message(event.error, event.cause),
            error_name=event.error or "ExecutionFailed",
            run_id=run_id,
        )

    async def record_failure(
        self,
        order_key: OrderKey,
        message: str,
        error_name: str | None = None,
        run_id: str | None = None,
    ) -> FailureOutcome:
        """Persist ERROR for the order, then clean staging and open uploads.

        A committed archive (READY) is never downgraded by a late failure.
        """
        set_order_context(order_key.container_id, order_key.order_id, order_key.archive_kind, run_id)
        current = await self._state.get_order_state(order_key)

        if isinstance(current, Ready):
            logger.info("Ignoring failure for %s: archive already ready", order_key)
            return FailureOutcome(
                ok=False, reason="already_ready", **self._ids(order_key, run_id)
            )

        if (
            isinstance(current, Generating)
            and current.run_id and run_id and current.run_id != run_id
        ):
            logger.info("Ignoring failure of superseded run %s for %s", run_id, order_key)
            await self._cleanup_staging(order_key, run_id)
            return FailureOutcome(
                ok=False, reason="superseded_run", **self._ids(order_key, run_id)
            )

        duplicate = isinstance(current, ErrorState) and run_id is not None and current.run_id == run_id
        if not duplicate:
            if isinstance(current, Generating):
                attempts = current.attempt
            elif isinstance(current, ErrorState):
                attempts = current.attempts + 1
            else:
                attempts = 1
            await self._state.set_state(
                order_key,
                ErrorState(
                    message=message,
                    attempts=attempts,
                    timestamp=datetime.now(timezone.utc),
                    error_name=error_name,
                    run_id=run_id,
                ),
            )
            logger.error("Archive generation failed for %s: %s", order_key, message)

        deleted = await self._cleanup_staging(order_key, run_id)
        aborted = await self._abort_uploads(order_key)
        return FailureOutcome(
            ok=True,
            staged_objects_deleted=deleted,
            uploads_aborted=aborted,
            **self._ids(order_key, run_id),
        )

    @staticmethod
    def _ids(order_key: OrderKey, run_id: str | None) -> dict[str, Any]:
        return {
            "container_id": order_key.container_id,
            "order_id": order_key.order_id,
            "archive_kind": order_key.archive_kind,
            "run_id": run_id,
        }

    async def _cleanup_staging(self, order_key: OrderKey, run_id: str | None) -> int:
        if not run_id:
            return 0
        try:
            report = await self._store.delete_prefix(staging_prefix(order_key, run_id, self._root))
        except (ArchiveError, ValueError) as e:
            logger.warning("Staging cleanup failed for run %s: %s", run_id, e)
            return 0
        if report.errors:
            logger.warning("Staging cleanup incomplete for run %s: %d errors", run_id, len(report.errors))
        return report.deleted

    async def _abort_uploads(self, order_key: OrderKey) -> int:
        key = archive_key(order_key, self._root)
        try:
            sessions = await self._store.list_multipart_uploads(key)
        except ArchiveError as e:
            logger.warning("Cannot list open uploads for %s: %s", key, e.message)
            return 0
        aborted = 0
        for session_id in sessions:
            try:
                await self._store.multipart_abort(key, session_id)
                aborted += 1
            except ArchiveError as e:
                logger.warning("Failed to abort upload %s on %s: %s", session_id, key, e.message)
        return aborted
