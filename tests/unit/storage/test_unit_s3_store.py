# tests/unit/storage/test_unit_s3_store.py - v1
"""Tests for storage/s3_store.py - mocked boto3 client."""

from __future__ import annotations

import io
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from chunkzip.config.settings import Settings
from chunkzip.core.errors import NotFoundError, StorageError, TransientIOError
from chunkzip.core.models import CompletedPart
from chunkzip.storage.memory_store import InMemoryObjectStore
from chunkzip.storage.s3_store import S3ObjectStore, translate_error
from chunkzip.storage.store_factory import create_object_store


def _client_error(code: str, status: int, op: str = "GetObject") -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": f"{code} happened"}, "ResponseMetadata": {"HTTPStatusCode": status}},
        op,
    )


@pytest.fixture
def mock_client():
    """boto3-like client backed by a dict."""
    storage: dict[str, bytes] = {}
    client = MagicMock()

    def get_object(Bucket, Key):
        if Key not in storage:
            raise _client_error("NoSuchKey", 404)
        return {"Body": io.BytesIO(storage[Key]), "ContentLength": len(storage[Key])}

    def head_object(Bucket, Key):
        if Key not in storage:
            raise _client_error("404", 404, "HeadObject")
        return {"ContentLength": len(storage[Key]), "ETag": '"abc"', "Metadata": {"content-hash": "h"}}

    def put_object(Bucket, Key, Body, Metadata):
        storage[Key] = Body

    def upload_fileobj(body, bucket, key):
        storage[key] = body.read()

    client.get_object.side_effect = get_object
    client.head_object.side_effect = head_object
    client.put_object.side_effect = put_object
    client.upload_fileobj.side_effect = upload_fileobj
    client.storage = storage
    return client


@pytest.fixture
def s3(mock_client) -> S3ObjectStore:
    return S3ObjectStore(bucket="test-bucket", client=mock_client, read_chunk_size=4)


class TestTranslateError:
    def test_not_found(self):
        assert isinstance(translate_error(_client_error("NoSuchKey", 404), "k"), NotFoundError)

    def test_no_such_upload(self):
        assert isinstance(translate_error(_client_error("NoSuchUpload", 404)), NotFoundError)

    @pytest.mark.parametrize("code,status", [("SlowDown", 503), ("InternalError", 500), ("Other", 502), ("Whatever", 429)])
    def test_transient(self, code, status):
        assert isinstance(translate_error(_client_error(code, status)), TransientIOError)

    def test_access_denied_is_storage_error(self):
        err = translate_error(_client_error("AccessDenied", 403))
        assert type(err) is StorageError
        assert not err.retryable

    def test_connection_error_is_transient(self):
        err = translate_error(EndpointConnectionError(endpoint_url="http://x"))
        assert isinstance(err, TransientIOError)

    def test_passthrough(self):
        original = NotFoundError("x")
        assert translate_error(original) is original


class TestS3Reads:
    @pytest.mark.asyncio
    async def test_stream_get(self, s3, mock_client):
        mock_client.storage["a"] = b"0123456789"
        stream = await s3.stream_get("a")
        assert b"".join([c async for c in stream]) == b"0123456789"
        assert stream.size == 10
        await stream.close()
        await stream.close()

    @pytest.mark.asyncio
    async def test_missing_raises_not_found(self, s3):
        with pytest.raises(NotFoundError):
            await s3.stream_get("nope")
        assert not await s3.exists("nope")

    @pytest.mark.asyncio
    async def test_head(self, s3, mock_client):
        mock_client.storage["a"] = b"xyz"
        info = await s3.head("a")
        assert info.size == 3
        assert info.etag == "abc"
        assert info.metadata == {"content-hash": "h"}

    @pytest.mark.asyncio
    async def test_copy_stream(self, s3, mock_client):
        mock_client.storage["src"] = b"payload"
        assert await s3.copy_stream("src", "dst") == 7
        assert mock_client.storage["dst"] == b"payload"

    @pytest.mark.asyncio
    async def test_throttled_put(self, s3, mock_client):
        mock_client.put_object.side_effect = _client_error("SlowDown", 503, "PutObject")
        with pytest.raises(TransientIOError):
            await s3.put("k", b"x")


class TestS3Multipart:
    @pytest.mark.asyncio
    async def test_session_calls(self, s3, mock_client):
        mock_client.create_multipart_upload.return_value = {"UploadId": "u1"}
        mock_client.upload_part.return_value = {"ETag": '"e1"'}
        sid = await s3.multipart_create("z.zip", metadata={"content-hash": "h"})
        etag = await s3.multipart_upload_part("z.zip", sid, 1, b"PK")
        await s3.multipart_complete("z.zip", sid, [CompletedPart(part_number=1, etag=etag)])

        assert sid == "u1"
        create_kwargs = mock_client.create_multipart_upload.call_args.kwargs
        assert create_kwargs["ContentType"] == "application/zip"
        assert create_kwargs["Bucket"] == "test-bucket"
        complete_kwargs = mock_client.complete_multipart_upload.call_args.kwargs
        assert complete_kwargs["MultipartUpload"] == {"Parts": [{"ETag": '"e1"', "PartNumber": 1}]}

    @pytest.mark.asyncio
    async def test_list_uploads_filters_exact_key(self, s3, mock_client):
        mock_client.list_multipart_uploads.return_value = {
            "Uploads": [{"Key": "z.zip", "UploadId": "u1"}, {"Key": "z.zip.old", "UploadId": "u2"}]
        }
        assert await s3.list_multipart_uploads("z.zip") == ["u1"]

    @pytest.mark.asyncio
    async def test_abort(self, s3, mock_client):
        await s3.multipart_abort("z.zip", "u1")
        mock_client.abort_multipart_upload.assert_called_once_with(
            Bucket="test-bucket", Key="z.zip", UploadId="u1"
        )


class TestS3Listing:
    @pytest.mark.asyncio
    async def test_paginates(self, s3, mock_client):
        mock_client.list_objects_v2.side_effect = [
            {"Contents": [{"Key": "p/a", "Size": 1}], "IsTruncated": True, "NextContinuationToken": "t"},
            {"Contents": [{"Key": "p/b", "Size": 2}], "IsTruncated": False},
        ]
        items = await s3.list_all("p/")
        assert [(i.key, i.size) for i in items] == [("p/a", 1), ("p/b", 2)]
        assert mock_client.list_objects_v2.call_args_list[1].kwargs["ContinuationToken"] == "t"

    @pytest.mark.asyncio
    async def test_batch_delete_reports_errors(self, s3, mock_client):
        mock_client.delete_objects.return_value = {
            "Errors": [{"Key": "b", "Code": "AccessDenied", "Message": "no"}]
        }
        report = await s3.batch_delete(["a", "b"])
        assert report.deleted == 1
        assert report.errors == ["b: AccessDenied no"]
        assert mock_client.delete_objects.call_args.kwargs["Delete"]["Quiet"] is True

    @pytest.mark.asyncio
    async def test_batch_delete_limit(self, s3):
        with pytest.raises(ValueError):
            await s3.batch_delete([str(i) for i in range(1001)])

    @pytest.mark.asyncio
    async def test_batch_delete_empty(self, s3, mock_client):
        report = await s3.batch_delete([])
        assert report.deleted == 0
        mock_client.delete_objects.assert_not_called()


class TestStoreFactory:
    def test_memory(self):
        store = create_object_store(Settings(_env_file=None))
        assert isinstance(store, InMemoryObjectStore)

    def test_s3(self, monkeypatch):
        import boto3

        fake_client = MagicMock()
        monkeypatch.setattr(boto3, "client", MagicMock(return_value=fake_client))
        store = create_object_store(Settings(_env_file=None, object_store="s3", s3_bucket="b", s3_region="eu-west-1"))
        assert isinstance(store, S3ObjectStore)
        boto3.client.assert_called_once()
        assert boto3.client.call_args.kwargs["region_name"] == "eu-west-1"
