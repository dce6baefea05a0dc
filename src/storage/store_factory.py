# src/storage/store_factory.py - v1
"""Factory: instantiate the object store from configuration."""

from __future__ import annotations

from chunkzip.config.settings import Settings
from chunkzip.storage.base_object_store import BaseObjectStore
from chunkzip.storage.memory_store import InMemoryObjectStore


def create_object_store(settings: Settings) -> BaseObjectStore:
    """Create the object store backend selected by OBJECT_STORE.

    Args:
        settings: Application settings.

    Returns:
        BaseObjectStore instance.

    Raises:
        ValueError: If the backend is not supported.
    """
    if settings.object_store == "memory":
        return InMemoryObjectStore(chunk_size=settings.read_chunk_size)

    if settings.object_store == "s3":
        from chunkzip.storage.s3_store import S3ObjectStore

        return S3ObjectStore(
            bucket=settings.s3_bucket,
            region=settings.s3_region or None,
            endpoint_url=settings.s3_endpoint_url or None,
            max_pool_connections=settings.s3_max_pool_connections,
            read_chunk_size=settings.read_chunk_size,
        )

    raise ValueError(f"Unsupported object store: {settings.object_store!r}")
