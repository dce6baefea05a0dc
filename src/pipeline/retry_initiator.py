# src/pipeline/retry_initiator.py - v1
"""Retry Initiator: re-enters the planner for an order in ERROR."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from chunkzip.catalog.membership import BaseMembershipIndex
from chunkzip.core.errors import ArchiveError, NoErrorToRetry, StateConflictError, ValidationError
from chunkzip.core.models import ArchiveRequest, ErrorState, Generating, OrderKey, TriggerResponse
from chunkzip.idempotency.content_hash import compute_request_hash
from chunkzip.pipeline.failure_handler import FailureHandler
from chunkzip.state.base_state_store import BaseStateStore
from chunkzip.storage.base_object_store import BaseObjectStore
from chunkzip.storage.layout import DEFAULT_ROOT

if TYPE_CHECKING:
    from chunkzip.planner.router import ChunkPlanner

logger = logging.getLogger(__name__)


class RetryInitiator:
    """ERROR -> GENERATING, fresh content hash, then a new plan."""

    def __init__(
        self,
        store: BaseObjectStore,
        state_store: BaseStateStore,
        planner: ChunkPlanner,
        failure_handler: FailureHandler,
        membership: BaseMembershipIndex | None = None,
        hash_concurrency: int = 10,
        root: str = DEFAULT_ROOT,
    ) -> None:
        self._store = store
        self._state = state_store
        self._planner = planner
        self._failure_handler = failure_handler
        self._membership = membership
        self._hash_concurrency = hash_concurrency
        self._root = root

    async def retry(self, order_key: OrderKey, keys: list[str] | None = None) -> TriggerResponse:
        """Retry a failed generation.

        Args:
            order_key: Order and kind to retry.
            keys: Explicit member keys; derived from the membership index if None.

        Raises:
            NoErrorToRetry: The order is not in ERROR (or another retry won).
        """
        current = await self._state.get_order_state(order_key)
        if not isinstance(current, ErrorState):
            raise NoErrorToRetry("No error to retry", status=current.status)

        try:
            await self._state.set_state(
                order_key,
                Generating(since=datetime.now(timezone.utc), attempt=current.attempts + 1),
                expected_status="error",
            )
        except StateConflictError as e:
            raise NoErrorToRetry("No error to retry", reason=e.message) from e

        logger.info("Retrying %s (attempt %d)", order_key, current.attempts + 1)
        try:
            members = await self._resolve_keys(order_key, keys)
            content_hash = await compute_request_hash(
                self._store, order_key, members, self._hash_concurrency, self._root
            )
            request = ArchiveRequest(
                container_id=order_key.container_id,
                order_id=order_key.order_id,
                archive_kind=order_key.archive_kind,
                keys=tuple(members),
                content_hash=content_hash,
            )
            return await self._planner.plan(request)
        except ArchiveError as e:
            # The planner records its own dispatch failures; only fill the gap.
            if isinstance(await self._state.get_order_state(order_key), Generating):
                await self._failure_handler.record_failure(
                    order_key, e.message, error_name=e.reason_code
                )
            raise

    async def _resolve_keys(self, order_key: OrderKey, keys: list[str] | None) -> list[str]:
        if keys is not None:
            return list(keys)
        if self._membership is None:
            raise ValidationError("No keys given and no membership index configured")
        return await self._membership.list_keys(order_key)
