"""
Common utilities shared by the service API routes and handlers.
"""

import logging
import time
import uuid

from databases import Database
from fastapi import Request
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.middleware.base import BaseHTTPMiddleware

from api.metrics import HTTP_REQUESTS_TOTAL
from config import TRUSTED_PROXIES

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def new_id() -> str:
    """Random identifier for containers, storage files and track directories."""
    return uuid.uuid4().hex


def get_real_ip(request: Request) -> str:
    """
    Get the real client IP address, respecting X-Forwarded-For header only from trusted proxies.

    Security: X-Forwarded-For is only trusted when the direct client IP is in TRUSTED_PROXIES.
    This prevents callers from spoofing the header to bypass rate limiting.
    """
    client_ip = get_remote_address(request)

    if TRUSTED_PROXIES and client_ip in TRUSTED_PROXIES:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            # X-Forwarded-For can contain multiple IPs: client, proxy1, proxy2, ...
            return forwarded.split(",")[0].strip()

    return client_ip


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Tag each request with an ID (echoed on the response) and count it by route."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:16]
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        route = request.scope.get("route")
        HTTP_REQUESTS_TOTAL.labels(
            method=request.method,
            endpoint=getattr(route, "path", "unmatched"),
            status_code=response.status_code,
        ).inc()
        return response


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Handle rate limit exceeded errors with a proper JSON response."""
    return JSONResponse(
        status_code=429,
        content={
            "detail": "Rate limit exceeded",
            "error": str(exc.detail),
        },
    )


async def check_health(db: Database) -> dict:
    """
    Perform health checks for the database.

    Returns a dict with:
        - checks: dict of individual check results
        - healthy: bool indicating overall health
        - status_code: HTTP status code (200 if healthy, 503 if not)
    """
    checks = {"database": False}

    try:
        await db.fetch_one("SELECT 1")
        checks["database"] = True
    except Exception as e:
        logger.warning(f"Database health check failed: {e}")

    healthy = all(checks.values())
    return {
        "checks": checks,
        "healthy": healthy,
        "status_code": 200 if healthy else 503,
    }
