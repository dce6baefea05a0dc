# tests/conftest.py - v1
"""Shared test fixtures for all unit and integration tests.

Provides in-memory object and state stores, order keys and seeding
helpers. No external services: every backend is in-process or mocked.
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from chunkzip.core.models import ArchiveRequest, OrderKey
from chunkzip.core.retry import RetryConfig
from chunkzip.state.memory_state_store import InMemoryStateStore
from chunkzip.storage.memory_store import InMemoryObjectStore

FAST_RETRY = RetryConfig(max_retries=2, base_delay_s=0.0, max_delay_s=0.0, jitter=False)


def _seed_originals(
    store: InMemoryObjectStore,
    container_id: str,
    count: int,
    size: int = 64,
    prefix: str = "img",
) -> list[str]:
    """Seed ``count`` original images and return their request names."""
    names = []
    for i in range(count):
        name = f"{prefix}-{i:05d}.jpg"
        payload = (f"{name}:".encode() * (size // len(name) + 1))[:size]
        store.seed(f"galleries/{container_id}/originals/{name}", payload)
        names.append(name)
    return names


# === FIXTURES: Backends ===


@pytest.fixture
def store() -> InMemoryObjectStore:
    return InMemoryObjectStore(chunk_size=256)


@pytest.fixture
def state_store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def fast_retry() -> RetryConfig:
    return FAST_RETRY


@pytest.fixture
def seed_originals():
    """Seeding helper: ``seed_originals(store, container_id, count, size=64)``."""
    return _seed_originals


# === FIXTURES: Identity ===


@pytest.fixture
def order_key() -> OrderKey:
    return OrderKey(container_id="g1", order_id="o1", archive_kind="original")


@pytest.fixture
def final_order_key() -> OrderKey:
    return OrderKey(container_id="g1", order_id="o1", archive_kind="final")


@pytest.fixture
def make_request():
    """Factory for ArchiveRequest with sensible defaults."""

    def _make(keys=None, container_id="g1", order_id="o1", kind="original", content_hash=None):
        return ArchiveRequest(
            container_id=container_id,
            order_id=order_id,
            archive_kind=kind,
            keys=tuple(keys) if keys is not None else None,
            content_hash=content_hash,
        )

    return _make


@pytest.fixture
def fixed_now() -> datetime:
    return datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
