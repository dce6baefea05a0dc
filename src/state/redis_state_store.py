# src/state/redis_state_store.py - v1
"""Redis-based generation-state store (STATE_STORE=redis).

One redis hash per order; fields are namespaced per archive kind
(``zip_*`` for originals, ``final_zip_*`` for finals) so both archives of
an order share the hash without clobbering each other. Conditional writes
use WATCH/MULTI optimistic locking.

Requires 'redis' package: pip install redis.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import redis
from redis.exceptions import WatchError

from chunkzip.core.errors import StateConflictError
from chunkzip.core.models import (
    Generating,
    OrderKey,
    ProgressSnapshot,
    dump_generation_state,
    parse_generation_state,
)
from chunkzip.state.base_state_store import BaseStateStore
from chunkzip.storage.layout import state_field_prefix

logger = logging.getLogger(__name__)

_MAX_WATCH_RETRIES = 5


class RedisStateStore(BaseStateStore):
    """Redis hash-backed state store for multi-instance deployments."""

    def __init__(
        self,
        redis_url: str = "",
        key_prefix: str = "chunkzip:order",
        client: Any = None,
    ) -> None:
        if client is None:
            client = redis.Redis.from_url(redis_url, decode_responses=True)

        self._client = client
        self._key_prefix = key_prefix.rstrip(":")

    def _hash_key(self, key: OrderKey) -> str:
        return f"{self._key_prefix}:{key.container_id}:{key.order_id}"

    @staticmethod
    def _fields(key: OrderKey) -> tuple[str, str]:
        prefix = state_field_prefix(key)
        return f"{prefix}_state", f"{prefix}_status"

    async def get_order_state(self, key: OrderKey) -> Any:
        state_field, _ = self._fields(key)
        raw = await asyncio.to_thread(self._client.hget, self._hash_key(key), state_field)
        return parse_generation_state(raw)

    def _conditional_write(self, key: OrderKey, new_state: Any, expected_status: str | None) -> None:
        hash_key = self._hash_key(key)
        state_field, status_field = self._fields(key)
        payload = {state_field: dump_generation_state(new_state), status_field: new_state.status}

        for _ in range(_MAX_WATCH_RETRIES):
            with self._client.pipeline() as pipe:
                try:
                    pipe.watch(hash_key)
                    if expected_status is not None:
                        current = parse_generation_state(pipe.hget(hash_key, state_field))
                        if current.status != expected_status:
                            raise StateConflictError(
                                f"expected {expected_status}, found {current.status}",
                                order=str(key),
                            )
                    pipe.multi()
                    pipe.hset(hash_key, mapping=payload)
                    pipe.execute()
                    return
                except WatchError:
                    logger.debug("State of %s changed during write, retrying", key)
        raise StateConflictError(f"concurrent updates on {key}", order=str(key))

    async def set_state(
        self,
        key: OrderKey,
        new_state: Any,
        expected_status: str | None = None,
    ) -> None:
        await asyncio.to_thread(self._conditional_write, key, new_state, expected_status)

    def _write_progress(self, key: OrderKey, snapshot: ProgressSnapshot) -> bool:
        hash_key = self._hash_key(key)
        state_field, _ = self._fields(key)
        for _ in range(_MAX_WATCH_RETRIES):
            with self._client.pipeline() as pipe:
                try:
                    pipe.watch(hash_key)
                    current = parse_generation_state(pipe.hget(hash_key, state_field))
                    if not isinstance(current, Generating):
                        return False
                    updated = current.model_copy(update={"progress": snapshot})
                    pipe.multi()
                    pipe.hset(hash_key, state_field, dump_generation_state(updated))
                    pipe.execute()
                    return True
                except WatchError:
                    continue
        # Snapshot dropped under sustained contention.
        return False

    async def update_progress(self, key: OrderKey, snapshot: ProgressSnapshot) -> bool:
        return await asyncio.to_thread(self._write_progress, key, snapshot)

    def close(self) -> None:
        """Close the Redis connection."""
        self._client.close()
