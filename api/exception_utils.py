"""
Standardized exception handling utilities.

This module provides consistent patterns for exception handling across the API,
ensuring HTTPExceptions are properly re-raised, domain errors keep their
status codes, and everything else is logged and sanitized.
"""

import functools
import logging
from typing import Any, Callable, TypeVar

from fastapi import HTTPException

from api.db_retry import DatabaseRetryableError
from api.errors import ServiceError, sanitize_error_message

logger = logging.getLogger(__name__)

T = TypeVar("T")


def handle_api_exceptions(
    operation_name: str,
    error_detail: str = "Internal server error",
    status_code: int = 500,
    log_errors: bool = True,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Decorator for standardized exception handling in API endpoints.

    This ensures:
    1. HTTPExceptions are always re-raised (never masked)
    2. ServiceErrors (NotFound/BadRequest/Conflict/Internal) become HTTP errors
       with their own status code and a sanitized message
    3. Exhausted database retries become 503 so callers retry later
    4. Generic exceptions are logged and converted to 500 errors

    Args:
        operation_name: Name of the operation for logging context
        error_detail: Default error message for generic exceptions
        status_code: Default status code for generic exceptions
        log_errors: Whether to log exceptions (default: True)

    Example:
        @handle_api_exceptions("commit_staging_data", "Failed to commit", 500)
        async def commit(...):
            ...
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            try:
                return await func(*args, **kwargs)
            except HTTPException:
                raise
            except ServiceError as e:
                if log_errors:
                    logger.info(f"{operation_name} rejected with {e.status_code}: {e.message}")
                raise HTTPException(
                    status_code=e.status_code,
                    detail=sanitize_error_message(e.message, log_original=False),
                ) from e
            except DatabaseRetryableError as e:
                logger.error(f"Database busy in {operation_name}: {e}")
                raise HTTPException(
                    status_code=503,
                    detail="Database temporarily unavailable, please retry",
                ) from e
            except Exception as e:
                if log_errors:
                    logger.exception(f"Unexpected error in {operation_name}: {e}")
                raise HTTPException(status_code=status_code, detail=error_detail) from e
        return wrapper
    return decorator
