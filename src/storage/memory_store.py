# src/storage/memory_store.py - v1
"""In-process object store (OBJECT_STORE=memory).

Used for local runs and tests. Multipart sessions behave like the real
backend: the object stays invisible until complete, parts must form the
sequence 1..N, and abort discards everything uploaded so far.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

from chunkzip.core.errors import NotFoundError, StorageError, TransientIOError
from chunkzip.core.models import CompletedPart, DeleteReport, ListPage, ObjectInfo
from chunkzip.storage.base_object_store import (
    DEFAULT_READ_CHUNK,
    BaseObjectStore,
    ObjectStream,
)

logger = logging.getLogger(__name__)


@dataclass
class _StoredObject:
    data: bytes
    info: ObjectInfo


@dataclass
class _Session:
    key: str
    metadata: dict[str, str]
    parts: dict[int, tuple[str, bytes]] = field(default_factory=dict)


class MemoryObjectStream(ObjectStream):
    """Chunked reader over an in-memory payload."""

    def __init__(
        self,
        key: str,
        data: bytes,
        chunk_size: int,
        delay_s: float = 0.0,
        fail_after: int | None = None,
    ) -> None:
        super().__init__(key, size=len(data))
        self._data = data
        self._chunk_size = chunk_size
        self._delay_s = delay_s
        self._fail_after = fail_after
        self._offset = 0
        self.closed = False

    async def read_chunk(self) -> bytes:
        if self.closed:
            raise StorageError(f"stream closed: {self.key}")
        if self._delay_s:
            await asyncio.sleep(self._delay_s)
        if self._fail_after is not None and self._offset >= self._fail_after:
            raise TransientIOError(f"connection reset while reading {self.key}")
        chunk = self._data[self._offset:self._offset + self._chunk_size]
        self._offset += len(chunk)
        return chunk

    async def close(self) -> None:
        self.closed = True


class InMemoryObjectStore(BaseObjectStore):
    """Dictionary-backed store with multipart semantics and fault injection."""

    def __init__(self, chunk_size: int = DEFAULT_READ_CHUNK, min_part_size: int = 0) -> None:
        self._objects: dict[str, _StoredObject] = {}
        self._sessions: dict[str, _Session] = {}
        self._chunk_size = chunk_size
        self._min_part_size = min_part_size
        self._read_failures: dict[str, list[Exception]] = {}
        self._read_delays: dict[str, float] = {}
        self._mid_stream_failures: dict[str, int] = {}
        self.created_sessions: list[str] = []
        self.completed_sessions: list[str] = []
        self.aborted_sessions: list[str] = []
        self.opened_streams: list[MemoryObjectStream] = []

    # --- Seeding / fault injection ---

    def seed(self, key: str, data: bytes, last_modified: datetime | None = None) -> None:
        """Store an object directly (test and local fixture helper)."""
        self._objects[key] = _StoredObject(
            data=data,
            info=ObjectInfo(
                key=key,
                size=len(data),
                etag=hashlib.md5(data).hexdigest(),  # noqa: S324
                last_modified=last_modified or datetime.now(timezone.utc),
            ),
        )

    def schedule_read_failure(self, key: str, error: Exception, times: int = 1) -> None:
        """Make the next ``times`` opens of ``key`` raise ``error``."""
        self._read_failures.setdefault(key, []).extend([error] * times)

    def schedule_read_delay(self, key: str, delay_s: float) -> None:
        """Sleep before each chunk read of ``key``."""
        self._read_delays[key] = delay_s

    def schedule_mid_stream_failure(self, key: str, after_bytes: int) -> None:
        """Raise TransientIOError once ``after_bytes`` of ``key`` have been read."""
        self._mid_stream_failures[key] = after_bytes

    def keys(self, prefix: str = "") -> list[str]:
        return sorted(k for k in self._objects if k.startswith(prefix))

    def get_bytes(self, key: str) -> bytes:
        return self._get(key).data

    @property
    def open_sessions(self) -> list[str]:
        return list(self._sessions)

    def _get(self, key: str) -> _StoredObject:
        obj = self._objects.get(key)
        if obj is None:
            raise NotFoundError(f"object not found: {key}", key=key)
        return obj

    # --- BaseObjectStore ---

    async def stream_get(self, key: str) -> ObjectStream:
        pending = self._read_failures.get(key)
        if pending:
            raise pending.pop(0)
        obj = self._get(key)
        stream = MemoryObjectStream(
            key,
            obj.data,
            self._chunk_size,
            delay_s=self._read_delays.get(key, 0.0),
            fail_after=self._mid_stream_failures.get(key),
        )
        self.opened_streams.append(stream)
        return stream

    async def head(self, key: str) -> ObjectInfo:
        return self._get(key).info.model_copy()

    async def put(self, key: str, data: bytes, metadata: dict[str, str] | None = None) -> None:
        self.seed(key, data)
        self._objects[key].info.metadata = dict(metadata or {})

    async def copy_stream(self, src_key: str, dst_key: str) -> int:
        stream = await self.stream_get(src_key)
        buf = bytearray()
        try:
            async for chunk in stream:
                buf.extend(chunk)
        finally:
            await stream.close()
        self.seed(dst_key, bytes(buf))
        return len(buf)

    async def multipart_create(
        self,
        key: str,
        metadata: dict[str, str] | None = None,
        expires_at: datetime | None = None,
        content_type: str = "application/zip",
    ) -> str:
        session_id = uuid.uuid4().hex
        meta = dict(metadata or {})
        if expires_at is not None:
            meta["expires"] = expires_at.isoformat()
        self._sessions[session_id] = _Session(key=key, metadata=meta)
        self.created_sessions.append(session_id)
        return session_id

    def _session(self, key: str, session_id: str) -> _Session:
        session = self._sessions.get(session_id)
        if session is None or session.key != key:
            raise NotFoundError(f"no such upload: {session_id}", key=key)
        return session

    async def multipart_upload_part(
        self, key: str, session_id: str, part_number: int, data: bytes
    ) -> str:
        session = self._session(key, session_id)
        etag = hashlib.md5(data).hexdigest()  # noqa: S324
        session.parts[part_number] = (etag, data)
        return etag

    async def multipart_complete(
        self, key: str, session_id: str, parts: list[CompletedPart]
    ) -> None:
        session = self._session(key, session_id)
        numbers = [p.part_number for p in parts]
        if numbers != list(range(1, len(parts) + 1)):
            raise StorageError(f"invalid part order for {key}: {numbers}")
        payload = bytearray()
        for index, part in enumerate(parts):
            stored = session.parts.get(part.part_number)
            if stored is None or stored[0] != part.etag:
                raise StorageError(f"invalid part {part.part_number} for {key}")
            if index < len(parts) - 1 and len(stored[1]) < self._min_part_size:
                raise StorageError(f"part {part.part_number} too small for {key}")
            payload.extend(stored[1])
        del self._sessions[session_id]
        self.seed(key, bytes(payload))
        self._objects[key].info.metadata = session.metadata
        self._objects[key].info.content_type = "application/zip"
        self.completed_sessions.append(session_id)

    async def multipart_abort(self, key: str, session_id: str) -> None:
        self._session(key, session_id)
        del self._sessions[session_id]
        self.aborted_sessions.append(session_id)

    async def list_multipart_uploads(self, key: str) -> list[str]:
        return [sid for sid, s in self._sessions.items() if s.key == key]

    async def list_prefix(
        self, prefix: str, page_token: str | None = None, max_keys: int = 1000
    ) -> ListPage:
        keys = self.keys(prefix)
        if page_token:
            keys = [k for k in keys if k > page_token]
        page = keys[:max_keys]
        next_token = page[-1] if len(keys) > max_keys else None
        return ListPage(
            items=[self._objects[k].info.model_copy() for k in page],
            next_page_token=next_token,
        )

    async def batch_delete(self, keys: list[str]) -> DeleteReport:
        report = DeleteReport()
        for key in keys:
            if self._objects.pop(key, None) is not None:
                report.deleted += 1
        return report

    async def delete(self, key: str) -> None:
        self._objects.pop(key, None)
