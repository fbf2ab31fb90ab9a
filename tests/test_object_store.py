"""Tests for the S3 object store against a stub boto3 client."""
import asyncio

import pytest
from botocore.exceptions import ClientError

from auction_harvest.config import Config
from auction_harvest.errors import StoreError
from auction_harvest.store.object_store import MIN_PART_SIZE, S3ObjectStore


def client_error(code, status, operation):
    return ClientError({"Error": {"Code": code}, "ResponseMetadata": {"HTTPStatusCode": status}}, operation)


class StubS3:
    def __init__(self, keys=(), bucket_exists=True, fail_part=False):
        self.keys = set(keys)
        self.bucket_exists = bucket_exists
        self.fail_part = fail_part
        self.calls = []

    def _record(self, name, kwargs):
        self.calls.append((name, kwargs))

    def head_object(self, **kwargs):
        self._record("head_object", kwargs)
        if kwargs["Key"] not in self.keys:
            raise client_error("404", 404, "HeadObject")
        return {}

    def put_object(self, **kwargs):
        self._record("put_object", kwargs)
        self.keys.add(kwargs["Key"])

    def create_multipart_upload(self, **kwargs):
        self._record("create_multipart_upload", kwargs)
        return {"UploadId": "up-1"}

    def upload_part(self, **kwargs):
        self._record("upload_part", kwargs)
        if self.fail_part:
            raise client_error("InternalError", 500, "UploadPart")
        return {"ETag": f"etag-{kwargs['PartNumber']}"}

    def complete_multipart_upload(self, **kwargs):
        self._record("complete_multipart_upload", kwargs)
        self.keys.add(kwargs["Key"])

    def abort_multipart_upload(self, **kwargs):
        self._record("abort_multipart_upload", kwargs)

    def head_bucket(self, **kwargs):
        self._record("head_bucket", kwargs)
        if not self.bucket_exists:
            raise client_error("404", 404, "HeadBucket")

    def create_bucket(self, **kwargs):
        self._record("create_bucket", kwargs)

    def put_bucket_versioning(self, **kwargs):
        self._record("put_bucket_versioning", kwargs)

    def names(self):
        return [name for name, _ in self.calls]


async def chunks_of(*parts):
    for part in parts:
        yield part


def test_exists():
    store = S3ObjectStore("bucket", client=StubS3(keys={"a.jpg"}))
    assert asyncio.run(store.exists("a.jpg")) is True
    assert asyncio.run(store.exists("b.jpg")) is False


def test_exists_raises_store_error_on_access_denied():
    class Denied(StubS3):
        def head_object(self, **kwargs):
            raise client_error("AccessDenied", 403, "HeadObject")

    store = S3ObjectStore("bucket", client=Denied())
    with pytest.raises(StoreError):
        asyncio.run(store.exists("a.jpg"))


def test_small_object_uses_single_put():
    client = StubS3()
    store = S3ObjectStore("bucket", client=client)
    stored = asyncio.run(store.put_stream("a.jpg", chunks_of(b"ab", b"cd"), "image/jpeg", 4))
    assert stored == 4
    assert client.names() == ["put_object"]
    assert client.calls[0][1]["Body"] == b"abcd"
    assert client.calls[0][1]["ContentType"] == "image/jpeg"


def test_large_object_is_streamed_in_parts():
    client = StubS3()
    store = S3ObjectStore("bucket", client=client)
    chunk = b"x" * (MIN_PART_SIZE // 2)
    stored = asyncio.run(store.put_stream("big.jpg", chunks_of(chunk, chunk, chunk), "image/jpeg"))
    assert stored == len(chunk) * 3
    assert client.names() == ["create_multipart_upload", "upload_part", "upload_part", "complete_multipart_upload"]
    parts = client.calls[-1][1]["MultipartUpload"]["Parts"]
    assert parts == [{"ETag": "etag-1", "PartNumber": 1}, {"ETag": "etag-2", "PartNumber": 2}]


def test_failed_part_aborts_upload():
    client = StubS3(fail_part=True)
    store = S3ObjectStore("bucket", client=client)
    chunk = b"x" * MIN_PART_SIZE
    with pytest.raises(StoreError):
        asyncio.run(store.put_stream("big.jpg", chunks_of(chunk), "image/jpeg"))
    assert client.names()[-1] == "abort_multipart_upload"


def test_missing_bucket_name_is_rejected(monkeypatch):
    monkeypatch.setattr(Config, "S3_BUCKET_NAME", None)
    with pytest.raises(StoreError):
        S3ObjectStore("", client=StubS3())


def test_ensure_bucket_creates_with_location_constraint():
    client = StubS3(bucket_exists=False)
    store = S3ObjectStore("bucket", region="eu-west-1", client=client)
    assert asyncio.run(store.ensure_bucket(enable_versioning=True)) is True
    create = dict(client.calls)["create_bucket"]
    assert create["CreateBucketConfiguration"] == {"LocationConstraint": "eu-west-1"}
    assert "put_bucket_versioning" in client.names()


def test_ensure_bucket_us_east_1_has_no_location_constraint():
    client = StubS3(bucket_exists=False)
    store = S3ObjectStore("bucket", region="us-east-1", client=client)
    asyncio.run(store.ensure_bucket())
    assert dict(client.calls)["create_bucket"] == {"Bucket": "bucket"}


def test_ensure_bucket_existing():
    client = StubS3()
    store = S3ObjectStore("bucket", client=client)
    assert asyncio.run(store.ensure_bucket()) is False
    assert client.names() == ["head_bucket"]
