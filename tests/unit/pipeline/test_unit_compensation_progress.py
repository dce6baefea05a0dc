# tests/unit/pipeline/test_unit_compensation_progress.py - v1
"""Tests for pipeline/compensation.py and pipeline/progress.py."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from chunkzip.core.models import Generating, OrderKey
from chunkzip.pipeline.compensation import CompensatingActions
from chunkzip.pipeline.progress import ProgressReporter
from chunkzip.state.memory_state_store import InMemoryStateStore

KEY = OrderKey(container_id="g1", order_id="o1")


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestCompensatingActions:
    @pytest.mark.asyncio
    async def test_runs_lifo(self):
        order: list[str] = []
        actions = CompensatingActions("test")

        async def mark(name):
            order.append(name)

        actions.add("first", lambda: mark("first"))
        actions.add("second", lambda: mark("second"))
        assert len(actions) == 2
        assert await actions.run() == []
        assert order == ["second", "first"]
        assert len(actions) == 0

    @pytest.mark.asyncio
    async def test_failures_collected_not_raised(self):
        ran: list[str] = []
        actions = CompensatingActions("test")

        async def boom():
            raise RuntimeError("nope")

        async def ok():
            ran.append("ok")

        actions.add("ok", ok)
        actions.add("boom", boom)
        errors = await actions.run()
        assert errors == ["boom: nope"]
        assert ran == ["ok"]

    @pytest.mark.asyncio
    async def test_discard(self):
        ran: list[str] = []
        actions = CompensatingActions("test")

        async def undo():
            ran.append("x")

        actions.add("undo", undo)
        actions.discard()
        await actions.run()
        assert ran == []


class TestProgressReporter:
    @pytest.mark.asyncio
    async def test_throttled_by_files_and_time(self):
        state = InMemoryStateStore()
        await state.set_state(KEY, Generating(since=datetime.now(timezone.utc)))
        clock = FakeClock()
        reporter = ProgressReporter(state, KEY, total=100, every_files=10, min_interval_s=5, clock=clock)

        for _ in range(10):
            await reporter.advance()
        assert reporter.reports == 0

        clock.now = 6.0
        await reporter.advance()
        assert reporter.reports == 1
        assert (await state.get_order_state(KEY)).progress.processed == 11

        clock.now = 20.0
        await reporter.advance()
        assert reporter.reports == 1

    @pytest.mark.asyncio
    async def test_finish_reports_remainder(self):
        state = InMemoryStateStore()
        await state.set_state(KEY, Generating(since=datetime.now(timezone.utc)))
        reporter = ProgressReporter(state, KEY, total=3, every_files=50, clock=FakeClock())
        for _ in range(3):
            await reporter.advance()
        await reporter.finish()
        snapshot = (await state.get_order_state(KEY)).progress
        assert snapshot.percent == 100
        assert reporter.processed == 3

    @pytest.mark.asyncio
    async def test_without_state_store(self):
        reporter = ProgressReporter(None, KEY, total=1, every_files=1, min_interval_s=0, clock=FakeClock())
        await reporter.advance()
        assert reporter.reports == 1
