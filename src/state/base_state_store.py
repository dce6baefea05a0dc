# src/state/base_state_store.py - v1
"""Abstract generation-state store interface.

The state of one (container, order, kind) is a single GenerationState
value. Writes are field updates; a conditional write whose precondition
does not hold raises StateConflictError and never forces the value.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from chunkzip.core.models import NotStarted, OrderKey, ProgressSnapshot


class BaseStateStore(ABC):
    """Unified interface for generation-state backends."""

    @abstractmethod
    async def get_order_state(self, key: OrderKey) -> Any:
        """Return the current GenerationState (NotStarted when absent)."""

    @abstractmethod
    async def set_state(
        self,
        key: OrderKey,
        new_state: Any,
        expected_status: str | None = None,
    ) -> None:
        """Replace the state, optionally only if the current status matches.

        Raises:
            StateConflictError: If ``expected_status`` does not match.
        """

    @abstractmethod
    async def update_progress(self, key: OrderKey, snapshot: ProgressSnapshot) -> bool:
        """Attach a progress snapshot to a GENERATING state.

        Returns:
            False when the order is no longer generating (snapshot dropped).
        """

    async def clear(self, key: OrderKey) -> None:
        """Forget the state of an order (tests, manual resets)."""
        await self.set_state(key, NotStarted())
