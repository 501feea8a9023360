"""HTTP client for poller-to-API communication."""

import asyncio
import random
from typing import Any, Dict, Optional

import httpx

from api.enums import TaskKind


class ServiceAPIError(Exception):
    """Exception raised when the Service API returns an error."""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(f"API error {status_code}: {message}")


# Retry configuration
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_BASE_DELAY = 1.0  # seconds
DEFAULT_RETRY_MAX_DELAY = 30.0  # seconds

# Timeout presets (seconds)
TIMEOUT_LIST = 15.0  # Short timeout for list-due queries
TIMEOUT_DEFAULT = 60.0
TIMEOUT_PROCESS = 4 * 60 * 60.0  # Formatting tasks run ffmpeg inside the request


def _error_detail(exc: httpx.HTTPStatusError) -> str:
    try:
        return exc.response.json().get("detail", str(exc))
    except ValueError:
        return str(exc)


class ServiceAPIClient:
    """HTTP client for the task endpoints of the Service API."""

    def __init__(
        self,
        base_url: str,
        secret: str = "",
        timeout: float = TIMEOUT_DEFAULT,
        max_retries: int = DEFAULT_MAX_RETRIES,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the service API client.

        Args:
            base_url: Base URL of the Service API (e.g., http://localhost:9100)
            secret: Shared secret sent as X-Service-Secret
            timeout: Default request timeout in seconds
            max_retries: Max retry attempts for transient errors
            transport: Optional transport (tests use httpx.MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.headers = {"X-Service-Secret": secret} if secret else {}
        self.timeout = timeout
        self.max_retries = max_retries
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client with connection pooling."""
        if self._client is None or self._client.is_closed:
            limits = httpx.Limits(
                max_connections=20,
                max_keepalive_connections=10,
                keepalive_expiry=30.0,
            )
            self._client = httpx.AsyncClient(timeout=self.timeout, limits=limits, transport=self._transport)
        return self._client

    def _is_retryable_error(self, exc: Exception) -> bool:
        """Check if an error is transient and should be retried."""
        if isinstance(exc, (httpx.TimeoutException, httpx.ConnectError, httpx.ReadError, httpx.WriteError)):
            return True
        if isinstance(exc, httpx.HTTPStatusError):
            # Retry on server errors (5xx) but not client errors (4xx)
            return exc.response.status_code >= 500
        return False

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[dict] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        **kwargs,
    ) -> dict:
        """Make an API request with retry logic for transient errors."""
        client = await self._get_client()
        url = f"{self.base_url}{path}"
        retries = max_retries if max_retries is not None else self.max_retries
        req_timeout = timeout if timeout is not None else self.timeout

        last_error: Optional[Exception] = None

        for attempt in range(retries + 1):
            try:
                resp = await client.request(
                    method,
                    url,
                    headers=self.headers,
                    json=json,
                    timeout=req_timeout,
                    **kwargs,
                )
                resp.raise_for_status()
                return resp.json()
            except httpx.HTTPStatusError as e:
                last_error = e
                # Don't retry 4xx errors (except 429 rate limit)
                if e.response.status_code < 500 and e.response.status_code != 429:
                    raise ServiceAPIError(e.response.status_code, _error_detail(e))
            except httpx.RequestError as e:
                last_error = e
                if not self._is_retryable_error(e):
                    raise ServiceAPIError(0, f"Connection error: {e}")

            # Calculate backoff with jitter
            if attempt < retries:
                delay = min(
                    DEFAULT_RETRY_BASE_DELAY * (2**attempt),
                    DEFAULT_RETRY_MAX_DELAY,
                )
                # Add jitter (±25%)
                delay = delay * (0.75 + random.random() * 0.5)
                await asyncio.sleep(delay)

        # All retries exhausted
        if isinstance(last_error, httpx.HTTPStatusError):
            raise ServiceAPIError(last_error.response.status_code, _error_detail(last_error))
        raise ServiceAPIError(0, f"Connection error after {retries + 1} attempts: {last_error}")

    async def list_due_tasks(self, kind: TaskKind, limit: Optional[int] = None) -> Dict[str, Any]:
        """
        List due tasks of one kind.

        Returns:
            {"kind": ..., "tasks": [...], "stuckCount": n}
        """
        params = {"limit": limit} if limit is not None else None
        return await self._request("GET", f"/api/tasks/{TaskKind(kind).value}", timeout=TIMEOUT_LIST, params=params)

    async def process_task(self, kind: TaskKind, key: Dict[str, Any]) -> dict:
        """
        Process one task by its camelCase key fields.

        Processing is not retried here: a failed task stays in the ledger with
        its execution time pushed out, so the next poll picks it up.
        """
        return await self._request(
            "POST",
            f"/api/tasks/{TaskKind(kind).value}/process",
            json=key,
            timeout=TIMEOUT_PROCESS,
            max_retries=0,
        )

    async def health(self) -> dict:
        return await self._request("GET", "/health", timeout=TIMEOUT_LIST, max_retries=0)

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
