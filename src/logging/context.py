# src/logging/context.py - v1
"""Contextual logging support: attach container, order, run and component to records."""

from __future__ import annotations

import contextvars
from dataclasses import dataclass
from typing import Any

# Context variables for structured logging, set per archive generation.
_container_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "container_id", default=None
)
_order_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "order_id", default=None
)
_archive_kind: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "archive_kind", default=None
)
_run_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "run_id", default=None
)
_component: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "component", default=None
)


@dataclass
class LogContext:
    """Immutable snapshot of current logging context."""

    container_id: str | None = None
    order_id: str | None = None
    archive_kind: str | None = None
    run_id: str | None = None
    component: str | None = None

    def as_dict(self) -> dict[str, Any]:
        """Return non-None fields as dict for JSON log injection."""
        return {k: v for k, v in self.__dict__.items() if v is not None}


def get_context() -> LogContext:
    """Snapshot current context variables."""
    return LogContext(
        container_id=_container_id.get(),
        order_id=_order_id.get(),
        archive_kind=_archive_kind.get(),
        run_id=_run_id.get(),
        component=_component.get(),
    )


def set_order_context(
    container_id: str,
    order_id: str,
    archive_kind: str,
    run_id: str | None = None,
) -> None:
    """Set order-level context (called once per generation entry point)."""
    _container_id.set(container_id)
    _order_id.set(order_id)
    _archive_kind.set(archive_kind)
    _run_id.set(run_id)


def set_component_context(component: str, run_id: str | None = None) -> None:
    """Set component-level context (planner, chunk_worker, merge...)."""
    _component.set(component)
    if run_id is not None:
        _run_id.set(run_id)


def clear_context() -> None:
    """Reset all context variables."""
    _container_id.set(None)
    _order_id.set(None)
    _archive_kind.set(None)
    _run_id.set(None)
    _component.set(None)
