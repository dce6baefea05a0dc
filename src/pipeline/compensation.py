# src/pipeline/compensation.py - v1
"""Compensating actions registry.

Resources acquired during a stage (a multipart session, a staging area)
register an undo action. On failure the actions run in reverse order;
each failure is logged and collected, never raised over the primary error.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

Action = Callable[[], Awaitable[Any]]


class CompensatingActions:
    """LIFO list of async undo actions."""

    def __init__(self, label: str) -> None:
        self._label = label
        self._actions: list[tuple[str, Action]] = []

    def add(self, description: str, action: Action) -> None:
        self._actions.append((description, action))

    def discard(self) -> None:
        """Forget all actions (the stage committed)."""
        self._actions.clear()

    def __len__(self) -> int:
        return len(self._actions)

    async def run(self) -> list[str]:
        """Run every action, newest first.

        Returns:
            Error descriptions of the actions that failed.
        """
        errors: list[str] = []
        while self._actions:
            description, action = self._actions.pop()
            try:
                await action()
                logger.info("%s: compensated (%s)", self._label, description)
            except Exception as e:
                logger.warning(
                    "%s: compensation '%s' failed: %s", self._label, description, e
                )
                errors.append(f"{description}: {e}")
        return errors
