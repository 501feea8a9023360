"""
Client for the primary store's resumable upload protocol.

Session lifecycle:

    create_session    POST  {domain}/upload/storage/v1/b/{bucket}/o?uploadType=resumable&name={key}
                            -> Location: {sessionUrl}
    upload_chunk      PUT   {sessionUrl}  Content-Range: bytes {first}-{last}/{total}
    check_progress    PUT   {sessionUrl}  Content-Range: bytes */{total}
                            2xx -> complete, 308 -> Range: bytes=0-N received so far
    cancel            DELETE {sessionUrl}  (499 is the protocol's success code)
    delete_and_cancel cancel, then DELETE {domain}/storage/v1/b/{bucket}/o/{key}
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote

import httpx

from api.metrics import STORAGE_OPERATIONS_TOTAL
from config import GCS_ACCESS_TOKEN, GCS_DOMAIN, STORAGE_REQUEST_TIMEOUT

logger = logging.getLogger(__name__)

RESUME_INCOMPLETE = 308
RANGE_PATTERN = re.compile(r"^bytes=[0-9]+?-([0-9]+?)$")

# Connection resets during a progress probe are retried this many times
DEFAULT_MAX_PROBE_RETRIES = 20
PROBE_RETRY_DELAY = 0.5  # seconds


class ResumableUploadError(Exception):
    """Unexpected response from the primary store."""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(f"Storage error {status_code}: {message}")


@dataclass
class UploadProgress:
    url_valid: bool
    byte_offset: int


def _is_connection_reset(exc: Exception) -> bool:
    if isinstance(exc, (httpx.ReadError, httpx.RemoteProtocolError)):
        return True
    return isinstance(exc, httpx.ConnectError) and "reset" in str(exc).lower()


class ResumableUploadClient:
    """Resumable upload client for a GCS-compatible primary store."""

    def __init__(
        self,
        domain: str = GCS_DOMAIN,
        access_token: str = GCS_ACCESS_TOKEN,
        timeout: float = STORAGE_REQUEST_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
        max_probe_retries: int = DEFAULT_MAX_PROBE_RETRIES,
    ):
        self.domain = domain.rstrip("/")
        self.access_token = access_token
        self.timeout = timeout
        self.max_probe_retries = max_probe_retries
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    def _headers(self, **extra: str) -> dict:
        headers = dict(extra)
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    def object_url(self, bucket: str, key: str) -> str:
        return f"{self.domain}/storage/v1/b/{bucket}/o/{quote(key, safe='')}"

    async def create_session(
        self,
        bucket: str,
        key: str,
        content_length: int,
        content_type: Optional[str] = None,
    ) -> str:
        """
        Initiate a resumable upload.

        Returns:
            The session URL from the Location header
        """
        client = await self._get_client()
        headers = self._headers(**{
            "Content-Length": "0",
            "X-Upload-Content-Length": str(content_length),
        })
        if content_type:
            headers["X-Upload-Content-Type"] = content_type

        resp = await client.post(
            f"{self.domain}/upload/storage/v1/b/{bucket}/o",
            params={"uploadType": "resumable", "name": key},
            headers=headers,
        )
        if resp.status_code // 100 != 2:
            STORAGE_OPERATIONS_TOTAL.labels(store="gcs", operation="create_session", result="error").inc()
            raise ResumableUploadError(resp.status_code, f"Failed to create upload session for {key}")

        session_url = resp.headers.get("Location")
        if not session_url:
            STORAGE_OPERATIONS_TOTAL.labels(store="gcs", operation="create_session", result="error").inc()
            raise ResumableUploadError(resp.status_code, "Upload session response has no Location header")

        STORAGE_OPERATIONS_TOTAL.labels(store="gcs", operation="create_session", result="success").inc()
        logger.info(f"Created upload session for {bucket}/{key}")
        return session_url

    async def check_progress(self, session_url: Optional[str], content_length: int) -> UploadProgress:
        """
        Probe how many bytes a session has received.

        No session URL or a 4xx means the session is gone: (False, 0).
        A 2xx means the upload is complete: (True, content_length).
        A 308 carries the received range; no range means nothing yet.
        """
        if not session_url:
            return UploadProgress(url_valid=False, byte_offset=0)

        client = await self._get_client()
        attempt = 0
        while True:
            try:
                resp = await client.put(
                    session_url,
                    headers=self._headers(**{
                        "Content-Length": "0",
                        "Content-Range": f"bytes */{content_length}",
                    }),
                )
                break
            except httpx.TransportError as e:
                if not _is_connection_reset(e) or attempt >= self.max_probe_retries:
                    raise
                attempt += 1
                logger.warning(f"Connection reset while probing upload progress (attempt {attempt}), retrying")
                await asyncio.sleep(PROBE_RETRY_DELAY)

        if resp.status_code // 100 == 2:
            return UploadProgress(url_valid=True, byte_offset=content_length)
        if resp.status_code == RESUME_INCOMPLETE:
            match = RANGE_PATTERN.match(resp.headers.get("Range", ""))
            if not match:
                return UploadProgress(url_valid=True, byte_offset=0)
            return UploadProgress(url_valid=True, byte_offset=int(match.group(1)) + 1)
        if resp.status_code // 100 == 4:
            return UploadProgress(url_valid=False, byte_offset=0)
        raise ResumableUploadError(resp.status_code, "Unexpected response while probing upload progress")

    async def upload_chunk(self, session_url: str, data: bytes, offset: int, content_length: int) -> int:
        """
        Upload one chunk starting at offset.

        Returns:
            The next byte offset the session expects
        """
        client = await self._get_client()
        last = offset + len(data) - 1
        resp = await client.put(
            session_url,
            content=data,
            headers=self._headers(**{"Content-Range": f"bytes {offset}-{last}/{content_length}"}),
        )
        if resp.status_code // 100 == 2:
            return content_length
        if resp.status_code == RESUME_INCOMPLETE:
            match = RANGE_PATTERN.match(resp.headers.get("Range", ""))
            return int(match.group(1)) + 1 if match else 0
        raise ResumableUploadError(resp.status_code, "Chunk upload rejected")

    async def cancel(self, session_url: str) -> None:
        """Cancel a session. 4xx means it is already gone."""
        if not session_url:
            return
        client = await self._get_client()
        resp = await client.delete(session_url, headers=self._headers(**{"Content-Length": "0"}))
        if resp.status_code // 100 in (2, 4):
            return
        raise ResumableUploadError(resp.status_code, "Failed to cancel upload session")

    async def delete_and_cancel(self, bucket: str, key: str, session_url: Optional[str]) -> None:
        """Cancel the session, then delete whatever object it produced."""
        if session_url:
            await self.cancel(session_url)

        client = await self._get_client()
        resp = await client.delete(self.object_url(bucket, key), headers=self._headers())
        if resp.status_code // 100 in (2, 4):
            STORAGE_OPERATIONS_TOTAL.labels(store="gcs", operation="delete", result="success").inc()
            return
        STORAGE_OPERATIONS_TOTAL.labels(store="gcs", operation="delete", result="error").inc()
        raise ResumableUploadError(resp.status_code, f"Failed to delete {key}")

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
