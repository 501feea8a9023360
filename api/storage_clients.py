"""
Object store clients.

GcsClient talks to the primary store (raw uploads) over its JSON API with
httpx. R2Client talks to the publish store (track directories and master
playlists) through boto3's S3 API; boto3 is blocking, so every call runs in
the default thread pool executor.
"""

import asyncio
import functools
import logging
import mimetypes
from pathlib import Path
from typing import Any, Callable, List, Optional
from urllib.parse import quote

import boto3
import httpx
from botocore.client import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from api.metrics import STORAGE_BYTES_WRITTEN, STORAGE_OPERATIONS_TOTAL
from config import (
    GCS_ACCESS_TOKEN,
    GCS_DOMAIN,
    R2_ACCESS_KEY_ID,
    R2_ENDPOINT_URL,
    R2_REGION,
    R2_SECRET_ACCESS_KEY,
    R2_VIDEO_BUCKET_NAME,
    STORAGE_REQUEST_TIMEOUT,
)

logger = logging.getLogger(__name__)

# S3 DeleteObjects accepts at most 1000 keys per request
DELETE_BATCH_SIZE = 1000

CONTENT_TYPES = {
    ".m3u8": "application/vnd.apple.mpegurl",
    ".ts": "video/mp2t",
    ".m4s": "video/iso.segment",
    ".vtt": "text/vtt",
}


class StorageError(Exception):
    """Object store request failed."""

    def __init__(self, store: str, message: str):
        self.store = store
        self.message = message
        super().__init__(f"{store} error: {message}")


class GcsClient:
    """Primary store object operations."""

    def __init__(
        self,
        domain: str = GCS_DOMAIN,
        access_token: str = GCS_ACCESS_TOKEN,
        timeout: float = STORAGE_REQUEST_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.domain = domain.rstrip("/")
        self.access_token = access_token
        self.timeout = timeout
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def delete_object(self, bucket: str, key: str) -> None:
        """Delete one object. A 404 means it is already gone."""
        client = await self._get_client()
        headers = {"Authorization": f"Bearer {self.access_token}"} if self.access_token else {}
        resp = await client.delete(
            f"{self.domain}/storage/v1/b/{bucket}/o/{quote(key, safe='')}",
            headers=headers,
        )
        if resp.status_code // 100 == 2 or resp.status_code == 404:
            STORAGE_OPERATIONS_TOTAL.labels(store="gcs", operation="delete", result="success").inc()
            return
        STORAGE_OPERATIONS_TOTAL.labels(store="gcs", operation="delete", result="error").inc()
        raise StorageError("gcs", f"Failed to delete {key} with status {resp.status_code}")

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class R2Client:
    """Publish store operations over the S3-compatible API."""

    def __init__(
        self,
        bucket: str = R2_VIDEO_BUCKET_NAME,
        endpoint_url: str = R2_ENDPOINT_URL,
        access_key_id: str = R2_ACCESS_KEY_ID,
        secret_access_key: str = R2_SECRET_ACCESS_KEY,
        region: str = R2_REGION,
        s3_client: Any = None,
    ):
        self.bucket = bucket
        if s3_client is None:
            session = boto3.session.Session()
            s3_client = session.client(
                "s3",
                region_name=region,
                endpoint_url=endpoint_url or None,
                aws_access_key_id=access_key_id or None,
                aws_secret_access_key=secret_access_key or None,
                config=BotoConfig(signature_version="s3v4"),
            )
        self._s3 = s3_client

    async def _run(self, operation: str, func: Callable, *args, **kwargs):
        loop = asyncio.get_running_loop()
        try:
            result = await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))
        except (ClientError, BotoCoreError) as e:
            STORAGE_OPERATIONS_TOTAL.labels(store="r2", operation=operation, result="error").inc()
            raise StorageError("r2", f"{operation} failed: {e}") from e
        STORAGE_OPERATIONS_TOTAL.labels(store="r2", operation=operation, result="success").inc()
        return result

    def _delete_key_sync(self, key: str) -> int:
        # Exactly key, then everything under "{key}/". Sibling names that only
        # start with key are left alone.
        deleted = 0
        listing = self._s3.list_objects_v2(Bucket=self.bucket, Prefix=key, MaxKeys=1)
        if any(obj["Key"] == key for obj in listing.get("Contents", [])):
            self._s3.delete_objects(Bucket=self.bucket, Delete={"Objects": [{"Key": key}], "Quiet": True})
            deleted += 1
        while True:
            listing = self._s3.list_objects_v2(Bucket=self.bucket, Prefix=f"{key}/", MaxKeys=DELETE_BATCH_SIZE)
            keys = [obj["Key"] for obj in listing.get("Contents", [])]
            if keys:
                self._s3.delete_objects(
                    Bucket=self.bucket,
                    Delete={"Objects": [{"Key": k} for k in keys], "Quiet": True},
                )
                deleted += len(keys)
            if not listing.get("IsTruncated"):
                return deleted

    async def delete_key(self, key: str) -> int:
        """
        Delete the object named key and every object under "{key}/".

        Works for a single file key as well as a track directory. Directory
        contents go in batches of up to 1000.

        Returns:
            Number of objects deleted
        """
        deleted = await self._run("delete", self._delete_key_sync, key)
        logger.info(f"Deleted {deleted} objects at {key}")
        return deleted

    async def put_text(self, key: str, text: str, content_type: Optional[str] = None) -> None:
        body = text.encode("utf-8")
        await self._run(
            "put",
            self._s3.put_object,
            Bucket=self.bucket,
            Key=key,
            Body=body,
            ContentType=content_type or CONTENT_TYPES.get(Path(key).suffix, "text/plain"),
        )
        STORAGE_BYTES_WRITTEN.inc(len(body))

    async def get_text(self, key: str) -> str:
        def read() -> str:
            response = self._s3.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read().decode("utf-8")

        return await self._run("get", read)

    def _upload_directory_sync(self, local_dir: Path, prefix: str) -> int:
        total_bytes = 0
        files: List[Path] = sorted(p for p in local_dir.rglob("*") if p.is_file())
        for path in files:
            key = f"{prefix}/{path.relative_to(local_dir).as_posix()}"
            content_type = CONTENT_TYPES.get(path.suffix) or mimetypes.guess_type(path.name)[0]
            extra = {"ContentType": content_type} if content_type else {}
            with open(path, "rb") as f:
                self._s3.put_object(Bucket=self.bucket, Key=key, Body=f, **extra)
            total_bytes += path.stat().st_size
        return total_bytes

    async def upload_directory(self, local_dir: Path, prefix: str) -> int:
        """
        Upload every file under local_dir to {prefix}/{relative path}.

        Returns:
            Total bytes uploaded
        """
        total_bytes = await self._run("upload_directory", self._upload_directory_sync, Path(local_dir), prefix)
        STORAGE_BYTES_WRITTEN.inc(total_bytes)
        logger.info(f"Uploaded {local_dir} to {prefix} ({total_bytes} bytes)")
        return total_bytes
