# src/idempotency/content_hash.py - v1
"""Content hash over the metadata of an archive's member set.

The hash covers name, size, version tag and modification time of every
member, sorted by name, so it changes whenever any member is added,
removed, replaced or touched, and is stable across request orderings.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from collections.abc import Iterable

from pydantic import BaseModel

from chunkzip.core.errors import NotFoundError
from chunkzip.core.models import ObjectInfo, OrderKey
from chunkzip.storage.base_object_store import BaseObjectStore
from chunkzip.storage.layout import DEFAULT_ROOT, source_key

logger = logging.getLogger(__name__)

HASH_LENGTH = 16


class FileFingerprint(BaseModel):
    """Hash input for one member. Missing objects carry zero metadata."""

    name: str
    size: int = 0
    version_tag: str = ""
    modified_time: int = 0

    @classmethod
    def from_info(cls, name: str, info: ObjectInfo) -> FileFingerprint:
        modified = int(info.last_modified.timestamp() * 1000) if info.last_modified else 0
        return cls(name=name, size=info.size, version_tag=info.etag, modified_time=modified)


def compute_content_hash(fingerprints: Iterable[FileFingerprint]) -> str:
    """SHA-256 over the compact JSON of fingerprints sorted by name, first 16 hex chars."""
    ordered = sorted(fingerprints, key=lambda fp: fp.name)
    payload = json.dumps(
        [fp.model_dump() for fp in ordered],
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:HASH_LENGTH]


async def collect_fingerprints(
    store: BaseObjectStore,
    order_key: OrderKey,
    names: Iterable[str],
    concurrency: int = 10,
    root: str = DEFAULT_ROOT,
) -> list[FileFingerprint]:
    """HEAD every member with bounded concurrency.

    Args:
        store: Object store holding the sources.
        order_key: Order whose source prefix the names are relative to.
        names: Member keys as given in the request.
        concurrency: Maximum in-flight HEAD requests.
        root: Storage root.

    Returns:
        One fingerprint per name; missing objects get zero metadata.
    """
    semaphore = asyncio.Semaphore(concurrency)

    async def _one(name: str) -> FileFingerprint:
        async with semaphore:
            try:
                info = await store.head(source_key(order_key, name, root))
            except NotFoundError:
                logger.debug("Hash input missing: %s", name)
                return FileFingerprint(name=name)
            return FileFingerprint.from_info(name, info)

    return list(await asyncio.gather(*(_one(n) for n in names)))


async def compute_request_hash(
    store: BaseObjectStore,
    order_key: OrderKey,
    names: Iterable[str],
    concurrency: int = 10,
    root: str = DEFAULT_ROOT,
) -> str:
    fingerprints = await collect_fingerprints(store, order_key, names, concurrency, root)
    return compute_content_hash(fingerprints)
