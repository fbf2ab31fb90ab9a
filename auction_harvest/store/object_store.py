"""Object store used as the destination of image transfers."""
import asyncio
import functools
import logging
from typing import Any, AsyncIterator, Optional, Protocol

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from auction_harvest.config import config
from auction_harvest.errors import StoreError

logger = logging.getLogger(__name__)

MIN_PART_SIZE = 5 * 1024 * 1024


class ObjectStore(Protocol):
    """Key/value blob store with existence check and streaming put."""

    async def exists(self, key: str) -> bool: ...

    async def put_stream(
        self,
        key: str,
        chunks: AsyncIterator[bytes],
        content_type: str,
        content_length: Optional[int] = None,
    ) -> int: ...


def _is_not_found(error: ClientError) -> bool:
    code = str(error.response.get("Error", {}).get("Code", ""))
    status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    return code in ("404", "NoSuchKey", "NotFound", "NoSuchBucket") or status == 404


class S3ObjectStore:
    """S3 bucket accessed through boto3 in the default thread pool.

    Bodies are streamed: chunks are accumulated only up to one part, so an
    object is never held in memory in full. Objects smaller than one part go
    through a single ``put_object``.
    """

    def __init__(
        self,
        bucket: Optional[str] = None,
        region: str = config.AWS_REGION,
        part_size: int = config.UPLOAD_PART_SIZE,
        max_pool_connections: int = config.CONCURRENT_UPLOADS * 2,
        client: Any = None,
    ):
        self.bucket = bucket or config.S3_BUCKET_NAME
        if not self.bucket:
            raise StoreError("S3 bucket name is not configured")
        self.region = region
        self.part_size = max(part_size, MIN_PART_SIZE)
        if client is None:
            credentials = {}
            if config.AWS_ACCESS_KEY_ID and config.AWS_SECRET_ACCESS_KEY:
                credentials = {
                    "aws_access_key_id": config.AWS_ACCESS_KEY_ID,
                    "aws_secret_access_key": config.AWS_SECRET_ACCESS_KEY,
                }
            client = boto3.client(
                "s3",
                region_name=region,
                config=BotoConfig(
                    max_pool_connections=max_pool_connections,
                    retries={"max_attempts": config.MAX_UPLOAD_RETRIES, "mode": "standard"},
                ),
                **credentials,
            )
        self.client = client

    async def _call(self, method: str, **kwargs: Any) -> Any:
        """Run a blocking client method in the thread pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(getattr(self.client, method), **kwargs))

    async def exists(self, key: str) -> bool:
        try:
            await self._call("head_object", Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            if _is_not_found(e):
                return False
            raise StoreError(f"head_object failed for {key}: {e}") from e
        except BotoCoreError as e:
            raise StoreError(f"head_object failed for {key}: {e}") from e

    async def put_stream(
        self,
        key: str,
        chunks: AsyncIterator[bytes],
        content_type: str,
        content_length: Optional[int] = None,
    ) -> int:
        """Stream ``chunks`` into ``key``; returns the number of bytes stored."""
        buffer = bytearray()
        total = 0
        upload_id = None
        parts: list[dict[str, Any]] = []

        async def upload_part(body: bytes) -> None:
            part_number = len(parts) + 1
            response = await self._call(
                "upload_part",
                Bucket=self.bucket,
                Key=key,
                PartNumber=part_number,
                UploadId=upload_id,
                Body=body,
            )
            parts.append({"ETag": response["ETag"], "PartNumber": part_number})

        try:
            async for chunk in chunks:
                buffer.extend(chunk)
                total += len(chunk)
                while len(buffer) >= self.part_size:
                    if upload_id is None:
                        response = await self._call(
                            "create_multipart_upload",
                            Bucket=self.bucket,
                            Key=key,
                            ContentType=content_type,
                        )
                        upload_id = response["UploadId"]
                    body = bytes(buffer[: self.part_size])
                    del buffer[: self.part_size]
                    await upload_part(body)

            if upload_id is None:
                await self._call(
                    "put_object",
                    Bucket=self.bucket,
                    Key=key,
                    Body=bytes(buffer),
                    ContentType=content_type,
                    ContentLength=len(buffer),
                )
            else:
                if buffer:
                    await upload_part(bytes(buffer))
                await self._call(
                    "complete_multipart_upload",
                    Bucket=self.bucket,
                    Key=key,
                    UploadId=upload_id,
                    MultipartUpload={"Parts": parts},
                )
        except (BotoCoreError, ClientError) as e:
            await self._abort(key, upload_id)
            raise StoreError(f"Upload failed for {key}: {e}") from e
        except Exception:
            await self._abort(key, upload_id)
            raise

        if content_length and content_length != total:
            logger.warning(f"Size mismatch for {key}: expected {content_length}, stored {total}")
        return total

    async def _abort(self, key: str, upload_id: Optional[str]) -> None:
        if upload_id is None:
            return
        try:
            await self._call("abort_multipart_upload", Bucket=self.bucket, Key=key, UploadId=upload_id)
        except (BotoCoreError, ClientError) as e:
            logger.warning(f"Could not abort multipart upload for {key}: {e}")

    async def ensure_bucket(self, enable_versioning: bool = False) -> bool:
        """Create the bucket if missing. Returns True when it was created."""
        created = False
        try:
            await self._call("head_bucket", Bucket=self.bucket)
            logger.info(f"Bucket exists: {self.bucket}")
        except ClientError as e:
            if not _is_not_found(e):
                raise StoreError(f"Cannot access bucket {self.bucket}: {e}") from e
            params: dict[str, Any] = {"Bucket": self.bucket}
            # us-east-1 rejects an explicit LocationConstraint
            if self.region != "us-east-1":
                params["CreateBucketConfiguration"] = {"LocationConstraint": self.region}
            try:
                await self._call("create_bucket", **params)
                created = True
                logger.info(f"Bucket created: {self.bucket} ({self.region})")
            except ClientError as create_error:
                code = create_error.response.get("Error", {}).get("Code")
                if code != "BucketAlreadyOwnedByYou":
                    raise StoreError(f"Could not create bucket {self.bucket}: {create_error}") from create_error
                logger.info(f"Bucket already exists and is owned by you: {self.bucket}")

        if enable_versioning:
            try:
                await self._call(
                    "put_bucket_versioning",
                    Bucket=self.bucket,
                    VersioningConfiguration={"Status": "Enabled"},
                )
                logger.info(f"Versioning enabled on {self.bucket}")
            except (BotoCoreError, ClientError) as e:
                raise StoreError(f"Could not enable versioning on {self.bucket}: {e}") from e
        return created
