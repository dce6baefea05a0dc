# src/idempotency/guard.py - v1
"""Idempotency guard: skip regeneration when the stored archive is current."""

from __future__ import annotations

import logging
from typing import Literal

from pydantic import BaseModel

from chunkzip.core.errors import ArchiveError, NotFoundError
from chunkzip.core.models import OrderKey
from chunkzip.storage.base_object_store import BaseObjectStore
from chunkzip.storage.layout import DEFAULT_ROOT, archive_key

logger = logging.getLogger(__name__)

HASH_METADATA_KEY = "content-hash"


class IdempotencyDecision(BaseModel):
    action: Literal["skip", "regenerate"]
    archive_key: str
    existing_hash: str | None = None
    stale_deleted: bool = False


class IdempotencyGuard:
    """Compares the stored archive's content hash with the request's."""

    def __init__(self, store: BaseObjectStore, root: str = DEFAULT_ROOT) -> None:
        self._store = store
        self._root = root

    async def check(self, order_key: OrderKey, content_hash: str | None) -> IdempotencyDecision:
        """Decide whether the archive must be regenerated.

        A stale archive (present, different hash) is deleted before the
        caller opens a new session; a failed delete is logged and the
        regeneration proceeds, since complete() overwrites atomically.
        """
        key = archive_key(order_key, self._root)
        try:
            info = await self._store.head(key)
        except NotFoundError:
            return IdempotencyDecision(action="regenerate", archive_key=key)

        existing = info.metadata.get(HASH_METADATA_KEY)
        if content_hash and existing == content_hash:
            logger.info("Archive %s already current (hash %s)", key, content_hash)
            return IdempotencyDecision(action="skip", archive_key=key, existing_hash=existing)

        logger.info(
            "Archive %s is stale (stored %s, requested %s), deleting",
            key, existing, content_hash,
        )
        deleted = False
        try:
            await self._store.delete(key)
            deleted = True
        except ArchiveError as e:
            logger.warning("Failed to delete stale archive %s: %s", key, e.message)
        return IdempotencyDecision(
            action="regenerate",
            archive_key=key,
            existing_hash=existing,
            stale_deleted=deleted,
        )
