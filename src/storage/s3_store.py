# src/storage/s3_store.py - v1
"""S3-compatible object store (OBJECT_STORE=s3).

Supports AWS S3, MinIO, and other S3-compatible storage. boto3 is
synchronous, so every call is pushed to a worker thread with
``asyncio.to_thread``. botocore errors are translated into the pipeline's
error taxonomy at this boundary.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable

from botocore.exceptions import BotoCoreError, ClientError, HTTPClientError
from botocore.exceptions import ConnectionError as BotoConnectionError

from chunkzip.core.errors import ArchiveError, NotFoundError, StorageError, TransientIOError
from chunkzip.core.models import CompletedPart, DeleteReport, ListPage, ObjectInfo
from chunkzip.storage.base_object_store import (
    DEFAULT_READ_CHUNK,
    DELETE_BATCH_SIZE,
    BaseObjectStore,
    ObjectStream,
)

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = frozenset({"NoSuchKey", "NotFound", "404", "NoSuchUpload"})
_TRANSIENT_CODES = frozenset({
    "RequestTimeout",
    "RequestTimeoutException",
    "SlowDown",
    "Throttling",
    "ThrottlingException",
    "InternalError",
    "ServiceUnavailable",
})


def translate_error(error: Exception, key: str = "") -> ArchiveError:
    """Map a boto/botocore exception to the pipeline error taxonomy."""
    if isinstance(error, ArchiveError):
        return error
    if isinstance(error, ClientError):
        err = error.response.get("Error", {})
        code = str(err.get("Code", ""))
        status = int(error.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0) or 0)
        message = err.get("Message") or str(error)
        if code in _NOT_FOUND_CODES or status == 404:
            return NotFoundError(f"{code or 'NotFound'}: {key}", key=key)
        if code in _TRANSIENT_CODES or status >= 500 or status == 429:
            return TransientIOError(f"{code}: {message}", key=key, code=code)
        return StorageError(f"{code}: {message}", key=key, code=code)
    if isinstance(error, (BotoConnectionError, HTTPClientError, ConnectionError, TimeoutError)):
        return TransientIOError(f"{type(error).__name__}: {error}", key=key)
    if isinstance(error, BotoCoreError):
        return StorageError(f"{type(error).__name__}: {error}", key=key)
    return StorageError(str(error), key=key)


class S3ObjectStream(ObjectStream):
    """Chunked reader over a botocore StreamingBody."""

    def __init__(self, key: str, body: Any, size: int | None, chunk_size: int) -> None:
        super().__init__(key, size=size)
        self._body = body
        self._chunk_size = chunk_size
        self._closed = False

    async def read_chunk(self) -> bytes:
        try:
            return await asyncio.to_thread(self._body.read, self._chunk_size)
        except Exception as e:
            raise translate_error(e, self.key) from e

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await asyncio.to_thread(self._body.close)


class S3ObjectStore(BaseObjectStore):
    """Object store backed by a boto3 S3 client."""

    def __init__(
        self,
        bucket: str,
        region: str | None = None,
        endpoint_url: str | None = None,
        max_pool_connections: int = 50,
        read_chunk_size: int = DEFAULT_READ_CHUNK,
        client: Any = None,
    ) -> None:
        """Initialize S3 store.

        Args:
            bucket: S3 bucket name.
            region: AWS region (optional, uses boto3 default if not set).
            endpoint_url: Custom endpoint for MinIO/compatible storage.
            max_pool_connections: Size of the HTTP pool shared by worker threads.
            read_chunk_size: Bytes per streamed read.
            client: Pre-built boto3 client (tests).
        """
        if client is None:
            try:
                import boto3
                from botocore.config import Config as BotoConfig
            except ImportError as e:
                raise ImportError(
                    "boto3 package required for S3 store: pip install boto3"
                ) from e

            kwargs: dict[str, Any] = {
                "config": BotoConfig(
                    signature_version="s3v4",
                    max_pool_connections=max_pool_connections,
                    retries={"max_attempts": 5, "mode": "standard"},
                ),
            }
            if region:
                kwargs["region_name"] = region
            if endpoint_url:
                kwargs["endpoint_url"] = endpoint_url
            client = boto3.client("s3", **kwargs)

        self._s3 = client
        self._bucket = bucket
        self._chunk_size = read_chunk_size

    async def _call(self, fn: Callable[..., Any], key: str = "", **kwargs: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, Bucket=self._bucket, **kwargs)
        except Exception as e:
            raise translate_error(e, key) from e

    @staticmethod
    def _info(key: str, response: dict[str, Any]) -> ObjectInfo:
        return ObjectInfo(
            key=key,
            size=int(response.get("ContentLength", response.get("Size", 0)) or 0),
            etag=str(response.get("ETag", "")).strip('"'),
            last_modified=response.get("LastModified"),
            metadata=dict(response.get("Metadata") or {}),
            content_type=response.get("ContentType"),
        )

    async def stream_get(self, key: str) -> ObjectStream:
        response = await self._call(self._s3.get_object, key, Key=key)
        return S3ObjectStream(key, response["Body"], response.get("ContentLength"), self._chunk_size)

    async def head(self, key: str) -> ObjectInfo:
        response = await self._call(self._s3.head_object, key, Key=key)
        return self._info(key, response)

    async def put(self, key: str, data: bytes, metadata: dict[str, str] | None = None) -> None:
        await self._call(self._s3.put_object, key, Key=key, Body=data, Metadata=metadata or {})
        logger.debug("S3 put: s3://%s/%s (%d bytes)", self._bucket, key, len(data))

    async def copy_stream(self, src_key: str, dst_key: str) -> int:
        response = await self._call(self._s3.get_object, src_key, Key=src_key)
        body = response["Body"]
        size = int(response.get("ContentLength", 0) or 0)

        def _upload() -> None:
            self._s3.upload_fileobj(body, self._bucket, dst_key)

        try:
            await asyncio.to_thread(_upload)
        except Exception as e:
            raise translate_error(e, src_key) from e
        finally:
            await asyncio.to_thread(body.close)
        return size

    async def multipart_create(
        self,
        key: str,
        metadata: dict[str, str] | None = None,
        expires_at: datetime | None = None,
        content_type: str = "application/zip",
    ) -> str:
        kwargs: dict[str, Any] = {
            "Key": key,
            "ContentType": content_type,
            "Metadata": metadata or {},
        }
        if expires_at is not None:
            kwargs["Expires"] = expires_at
        response = await self._call(self._s3.create_multipart_upload, key, **kwargs)
        return response["UploadId"]

    async def multipart_upload_part(
        self, key: str, session_id: str, part_number: int, data: bytes
    ) -> str:
        response = await self._call(
            self._s3.upload_part,
            key,
            Key=key,
            UploadId=session_id,
            PartNumber=part_number,
            Body=data,
        )
        return str(response["ETag"])

    async def multipart_complete(
        self, key: str, session_id: str, parts: list[CompletedPart]
    ) -> None:
        await self._call(
            self._s3.complete_multipart_upload,
            key,
            Key=key,
            UploadId=session_id,
            MultipartUpload={
                "Parts": [{"ETag": p.etag, "PartNumber": p.part_number} for p in parts]
            },
        )

    async def multipart_abort(self, key: str, session_id: str) -> None:
        await self._call(self._s3.abort_multipart_upload, key, Key=key, UploadId=session_id)

    async def list_multipart_uploads(self, key: str) -> list[str]:
        response = await self._call(self._s3.list_multipart_uploads, key, Prefix=key)
        return [u["UploadId"] for u in response.get("Uploads", []) if u.get("Key") == key]

    async def list_prefix(
        self, prefix: str, page_token: str | None = None, max_keys: int = 1000
    ) -> ListPage:
        kwargs: dict[str, Any] = {"Prefix": prefix, "MaxKeys": max_keys}
        if page_token:
            kwargs["ContinuationToken"] = page_token
        response = await self._call(self._s3.list_objects_v2, prefix, **kwargs)
        items = [self._info(obj["Key"], obj) for obj in response.get("Contents", [])]
        token = response.get("NextContinuationToken") if response.get("IsTruncated") else None
        return ListPage(items=items, next_page_token=token)

    async def batch_delete(self, keys: list[str]) -> DeleteReport:
        if not keys:
            return DeleteReport()
        if len(keys) > DELETE_BATCH_SIZE:
            raise ValueError(f"batch_delete accepts at most {DELETE_BATCH_SIZE} keys")
        response = await self._call(
            self._s3.delete_objects,
            Delete={"Objects": [{"Key": k} for k in keys], "Quiet": True},
        )
        errors = [
            f"{e.get('Key')}: {e.get('Code')} {e.get('Message', '')}".strip()
            for e in response.get("Errors", [])
        ]
        return DeleteReport(deleted=len(keys) - len(errors), errors=errors)

    async def delete(self, key: str) -> None:
        await self._call(self._s3.delete_object, key, Key=key)
