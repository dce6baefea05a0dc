# src/storage/base_object_store.py - v1
"""Abstract object store interface.

Covers the blob-storage operations the pipeline needs: streamed reads,
stream-to-stream copies, multipart sessions with atomic publish on
complete, paginated listing and batch deletion.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from datetime import datetime

from chunkzip.core.errors import NotFoundError
from chunkzip.core.models import CompletedPart, DeleteReport, ListPage, ObjectInfo

DEFAULT_READ_CHUNK = 1024 * 1024
DELETE_BATCH_SIZE = 1000


class ObjectStream(ABC):
    """Async byte stream over one stored object.

    Iterating yields byte chunks until EOF. ``close`` releases the
    underlying connection and is safe to call more than once.
    """

    def __init__(self, key: str, size: int | None = None) -> None:
        self.key = key
        self.size = size

    @abstractmethod
    async def read_chunk(self) -> bytes:
        """Return the next chunk, or b"" at EOF."""

    @abstractmethod
    async def close(self) -> None:
        """Release the stream."""

    def __aiter__(self) -> ObjectStream:
        return self

    async def __anext__(self) -> bytes:
        chunk = await self.read_chunk()
        if not chunk:
            raise StopAsyncIteration
        return chunk


class BaseObjectStore(ABC):
    """Unified interface for blob storage backends."""

    @abstractmethod
    async def stream_get(self, key: str) -> ObjectStream:
        """Open a streamed read. Raises NotFoundError if absent."""

    @abstractmethod
    async def head(self, key: str) -> ObjectInfo:
        """Return object metadata. Raises NotFoundError if absent."""

    @abstractmethod
    async def put(self, key: str, data: bytes, metadata: dict[str, str] | None = None) -> None:
        """Store a small object in one call."""

    @abstractmethod
    async def copy_stream(self, src_key: str, dst_key: str) -> int:
        """Stream ``src_key`` into ``dst_key`` without buffering it whole.

        Returns:
            Number of bytes copied.
        """

    @abstractmethod
    async def multipart_create(
        self,
        key: str,
        metadata: dict[str, str] | None = None,
        expires_at: datetime | None = None,
        content_type: str = "application/zip",
    ) -> str:
        """Open a multipart session; the object is invisible until complete."""

    @abstractmethod
    async def multipart_upload_part(
        self, key: str, session_id: str, part_number: int, data: bytes
    ) -> str:
        """Upload one part and return its etag."""

    @abstractmethod
    async def multipart_complete(
        self, key: str, session_id: str, parts: list[CompletedPart]
    ) -> None:
        """Atomically publish the object from its ordered parts."""

    @abstractmethod
    async def multipart_abort(self, key: str, session_id: str) -> None:
        """Discard a session and its uploaded parts."""

    @abstractmethod
    async def list_multipart_uploads(self, key: str) -> list[str]:
        """Session ids of in-flight uploads targeting ``key``."""

    @abstractmethod
    async def list_prefix(
        self, prefix: str, page_token: str | None = None, max_keys: int = 1000
    ) -> ListPage:
        """Return one page of objects under ``prefix``."""

    @abstractmethod
    async def batch_delete(self, keys: list[str]) -> DeleteReport:
        """Delete up to DELETE_BATCH_SIZE keys in one call."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete one object. Deleting a missing key is not an error."""

    # --- Helpers ---

    async def iter_prefix(self, prefix: str, page_size: int = 1000) -> AsyncIterator[ObjectInfo]:
        """Iterate every object under ``prefix`` across all pages."""
        token: str | None = None
        while True:
            page = await self.list_prefix(prefix, page_token=token, max_keys=page_size)
            for item in page.items:
                yield item
            token = page.next_page_token
            if not token:
                return

    async def list_all(self, prefix: str) -> list[ObjectInfo]:
        return [item async for item in self.iter_prefix(prefix)]

    async def delete_prefix(self, prefix: str) -> DeleteReport:
        """Delete every object under ``prefix`` in batches."""
        keys = [item.key for item in await self.list_all(prefix)]
        report = DeleteReport()
        for start in range(0, len(keys), DELETE_BATCH_SIZE):
            batch = await self.batch_delete(keys[start:start + DELETE_BATCH_SIZE])
            report.deleted += batch.deleted
            report.errors.extend(batch.errors)
        return report

    async def exists(self, key: str) -> bool:
        try:
            await self.head(key)
        except NotFoundError:
            return False
        return True
