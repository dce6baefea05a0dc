# tests/integration/state/test_int_redis_state_store.py - v1
"""Integration tests for RedisStateStore against a real Redis container.

Requires Docker; skipped otherwise.
Coverage targets: redis_state_store.py (WATCH/MULTI conditional writes)
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from chunkzip.core.errors import StateConflictError
from chunkzip.core.models import ErrorState, Generating, NotStarted, OrderKey, ProgressSnapshot, Ready

pytestmark = [pytest.mark.integration, pytest.mark.redis]

KEY = OrderKey(container_id="g1", order_id="o1")
FINAL = OrderKey(container_id="g1", order_id="o1", archive_kind="final")
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class TestRedisStateStore:

    @pytest.mark.asyncio
    async def test_absent_is_not_started(self, redis_state_store):
        assert isinstance(await redis_state_store.get_order_state(KEY), NotStarted)

    @pytest.mark.asyncio
    async def test_roundtrip(self, redis_state_store):
        await redis_state_store.set_state(KEY, Generating(since=NOW, run_id="r1", content_hash="h"))
        state = await redis_state_store.get_order_state(KEY)
        assert isinstance(state, Generating)
        assert state.run_id == "r1"
        assert state.since == NOW

    @pytest.mark.asyncio
    async def test_kinds_share_hash_without_clobbering(self, redis_state_store):
        await redis_state_store.set_state(KEY, Ready(completed_at=NOW))
        await redis_state_store.set_state(FINAL, ErrorState(message="boom", timestamp=NOW))
        assert isinstance(await redis_state_store.get_order_state(KEY), Ready)
        assert isinstance(await redis_state_store.get_order_state(FINAL), ErrorState)

    @pytest.mark.asyncio
    async def test_conditional_conflict(self, redis_state_store):
        await redis_state_store.set_state(KEY, Ready(completed_at=NOW))
        with pytest.raises(StateConflictError):
            await redis_state_store.set_state(
                KEY, Generating(since=NOW), expected_status="error"
            )
        assert isinstance(await redis_state_store.get_order_state(KEY), Ready)

    @pytest.mark.asyncio
    async def test_single_winner(self, redis_state_store):
        await redis_state_store.set_state(KEY, ErrorState(message="x", timestamp=NOW))

        async def attempt(run_id: str) -> bool:
            try:
                await redis_state_store.set_state(
                    KEY, Generating(since=NOW, run_id=run_id), expected_status="error"
                )
                return True
            except StateConflictError:
                return False

        outcomes = await asyncio.gather(*(attempt(f"r{i}") for i in range(5)))
        assert outcomes.count(True) == 1

    @pytest.mark.asyncio
    async def test_update_progress(self, redis_state_store):
        assert not await redis_state_store.update_progress(KEY, ProgressSnapshot.of(1, 2))

        await redis_state_store.set_state(KEY, Generating(since=NOW, run_id="r1"))
        assert await redis_state_store.update_progress(KEY, ProgressSnapshot.of(3, 4))
        state = await redis_state_store.get_order_state(KEY)
        assert state.progress.percent == 75
        assert state.run_id == "r1"

    @pytest.mark.asyncio
    async def test_clear(self, redis_state_store):
        await redis_state_store.set_state(KEY, Ready(completed_at=NOW))
        await redis_state_store.clear(KEY)
        assert isinstance(await redis_state_store.get_order_state(KEY), NotStarted)
