# src/state/memory_state_store.py - v1
"""In-process generation-state store (STATE_STORE=memory)."""

from __future__ import annotations

import asyncio
from typing import Any

from chunkzip.core.errors import StateConflictError
from chunkzip.core.models import (
    Generating,
    NotStarted,
    OrderKey,
    ProgressSnapshot,
    dump_generation_state,
    parse_generation_state,
)
from chunkzip.state.base_state_store import BaseStateStore


class InMemoryStateStore(BaseStateStore):
    """Dict-backed store; an asyncio.Lock makes conditional writes atomic."""

    def __init__(self) -> None:
        self._states: dict[tuple[str, str, str], str] = {}
        self._lock = asyncio.Lock()
        self.history: list[tuple[OrderKey, str]] = []

    @staticmethod
    def _slot(key: OrderKey) -> tuple[str, str, str]:
        return (key.container_id, key.order_id, key.archive_kind)

    def _read(self, key: OrderKey) -> Any:
        raw = self._states.get(self._slot(key))
        return parse_generation_state(raw) if raw else NotStarted()

    async def get_order_state(self, key: OrderKey) -> Any:
        return self._read(key)

    async def set_state(
        self,
        key: OrderKey,
        new_state: Any,
        expected_status: str | None = None,
    ) -> None:
        async with self._lock:
            if expected_status is not None:
                current = self._read(key)
                if current.status != expected_status:
                    raise StateConflictError(
                        f"expected {expected_status}, found {current.status}",
                        order=str(key),
                    )
            self._states[self._slot(key)] = dump_generation_state(new_state)
            self.history.append((key, new_state.status))

    async def update_progress(self, key: OrderKey, snapshot: ProgressSnapshot) -> bool:
        async with self._lock:
            current = self._read(key)
            if not isinstance(current, Generating):
                return False
            updated = current.model_copy(update={"progress": snapshot})
            self._states[self._slot(key)] = dump_generation_state(updated)
            return True
