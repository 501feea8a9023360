"""
HTTP clients for downstream services.

MeterClient records storage and upload usage for billing. ProductServiceClient
points the product catalog at a container's newly published master playlist.
Both are called only from task processors, so a failed call leaves the task
in the ledger for its next attempt.
"""

import asyncio
import logging
import random
from typing import List, Optional

import httpx

from config import (
    METER_SERVICE_URL,
    PRODUCT_SERVICE_URL,
    SERVICE_API_SECRET,
    SERVICE_CLIENT_MAX_RETRIES,
    SERVICE_CLIENT_TIMEOUT,
)

logger = logging.getLogger(__name__)

DEFAULT_RETRY_BASE_DELAY = 1.0  # seconds
DEFAULT_RETRY_MAX_DELAY = 30.0  # seconds


class ServiceClientError(Exception):
    """Exception raised when a downstream service returns an error."""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(f"Service error {status_code}: {message}")


class BaseServiceClient:
    """JSON-over-HTTP client with retries for transient errors."""

    def __init__(
        self,
        base_url: str,
        timeout: float = SERVICE_CLIENT_TIMEOUT,
        max_retries: int = SERVICE_CLIENT_MAX_RETRIES,
        secret: str = SERVICE_API_SECRET,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.headers = {"X-Service-Secret": secret} if secret else {}
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def _post(self, path: str, json: dict) -> dict:
        """POST with retry on 5xx, 429 and connection errors."""
        client = await self._get_client()
        url = f"{self.base_url}{path}"
        last_error: Optional[Exception] = None

        for attempt in range(self.max_retries + 1):
            try:
                resp = await client.post(url, json=json, headers=self.headers)
                resp.raise_for_status()
                return resp.json() if resp.content else {}
            except httpx.HTTPStatusError as e:
                last_error = e
                if e.response.status_code < 500 and e.response.status_code != 429:
                    raise ServiceClientError(e.response.status_code, e.response.text[:500])
            except httpx.RequestError as e:
                last_error = e

            if attempt < self.max_retries:
                delay = min(DEFAULT_RETRY_BASE_DELAY * (2**attempt), DEFAULT_RETRY_MAX_DELAY)
                # Add jitter (±25%)
                delay = delay * (0.75 + random.random() * 0.5)
                logger.warning(f"Request to {path} failed (attempt {attempt + 1}), retrying in {delay:.2f}s")
                await asyncio.sleep(delay)

        if isinstance(last_error, httpx.HTTPStatusError):
            raise ServiceClientError(last_error.response.status_code, last_error.response.text[:500])
        raise ServiceClientError(0, f"Connection error after {self.max_retries + 1} attempts: {last_error}")

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class MeterClient(BaseServiceClient):
    """Usage events for storage and upload billing."""

    def __init__(self, base_url: str = METER_SERVICE_URL, **kwargs):
        super().__init__(base_url, **kwargs)

    async def record_storage_start(self, account_id: str, r2_dirname: str, total_bytes: int, start_time_ms: int):
        await self._post(
            "/api/usage/storage-start",
            {
                "accountId": account_id,
                "r2Dirname": r2_dirname,
                "totalBytes": total_bytes,
                "startTimeMs": start_time_ms,
            },
        )

    async def record_storage_end(self, account_id: str, r2_dirname: str, end_time_ms: int):
        await self._post(
            "/api/usage/storage-end",
            {"accountId": account_id, "r2Dirname": r2_dirname, "endTimeMs": end_time_ms},
        )

    async def record_uploaded(self, account_id: str, gcs_key: str, total_bytes: int):
        await self._post(
            "/api/usage/uploaded",
            {"accountId": account_id, "gcsKey": gcs_key, "totalBytes": total_bytes},
        )


class ProductServiceClient(BaseServiceClient):
    """Product catalog cache of published containers."""

    def __init__(self, base_url: str = PRODUCT_SERVICE_URL, **kwargs):
        super().__init__(base_url, **kwargs)

    async def cache_video_container(
        self,
        container_id: str,
        season_id: Optional[str],
        episode_id: Optional[str],
        version: int,
        r2_root_dirname: str,
        master_playlist_filename: str,
        duration_sec: int,
        resolution: str,
        audio_tracks: Optional[List[dict]] = None,
        subtitle_tracks: Optional[List[dict]] = None,
    ):
        await self._post(
            "/api/episodes/cache-video-container",
            {
                "containerId": container_id,
                "seasonId": season_id,
                "episodeId": episode_id,
                "version": version,
                "r2RootDirname": r2_root_dirname,
                "masterPlaylistFilename": master_playlist_filename,
                "durationSec": duration_sec,
                "resolution": resolution,
                "audioTracks": audio_tracks or [],
                "subtitleTracks": subtitle_tracks or [],
            },
        )
