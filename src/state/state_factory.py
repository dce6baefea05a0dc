# src/state/state_factory.py - v1
"""Factory for generation-state store instantiation."""

from __future__ import annotations

from chunkzip.config.settings import Settings
from chunkzip.state.base_state_store import BaseStateStore


def create_state_store(settings: Settings | None = None) -> BaseStateStore:
    """Instantiate the configured state backend.

    Args:
        settings: Application settings. Defaults to the in-memory backend.

    Returns:
        Configured BaseStateStore implementation.
    """
    backend = "memory" if settings is None else settings.state_store

    if backend == "memory":
        from chunkzip.state.memory_state_store import InMemoryStateStore
        return InMemoryStateStore()

    if backend == "redis":
        from chunkzip.state.redis_state_store import RedisStateStore
        if settings is None or not settings.redis_url:
            raise ValueError("REDIS_URL must be set when STATE_STORE=redis")
        return RedisStateStore(
            redis_url=settings.redis_url,
            key_prefix=settings.redis_key_prefix,
        )

    raise ValueError(f"Unsupported state store: {backend!r}")
