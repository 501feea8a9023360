"""
Database retry utilities for handling transient database errors.

This module provides retry logic with exponential backoff to handle transient
errors gracefully, supporting both SQLite and PostgreSQL backends:

SQLite errors:
- "database is locked" - concurrent write contention
- "SQLITE_BUSY" / "SQLITE_LOCKED" - database busy states

PostgreSQL errors:
- Deadlocks (40P01)
- Serialization failures (40001)
- Connection errors
- "could not obtain lock" - lock contention

Every handler runs its read-validate-write steps through run_transaction(),
so a transient failure re-runs the whole closure from a fresh read.
"""

import asyncio
import logging
import random
import time
from typing import Awaitable, Callable, Optional, TypeVar

from databases import Database

from api.metrics import DB_QUERY_RETRIES_TOTAL, DB_TRANSACTION_DURATION_SECONDS

logger = logging.getLogger(__name__)

# Slow transaction threshold in seconds
SLOW_TRANSACTION_THRESHOLD = 1.0

T = TypeVar("T")

# Default retry configuration
DEFAULT_MAX_RETRIES = 5
DEFAULT_BASE_DELAY = 0.1  # 100ms
DEFAULT_MAX_DELAY = 2.0  # 2 seconds
DEFAULT_EXPONENTIAL_BASE = 2


class DatabaseRetryableError(Exception):
    """Raised when a database operation fails after all retries exhausted."""

    pass


def is_retryable_database_error(exc: Exception) -> bool:
    """
    Check if an exception is a retryable database error.

    Supports both SQLite and PostgreSQL error patterns.
    """
    error_str = str(exc).lower()

    sqlite_patterns = [
        "database is locked",
        "database table is locked",
        "sqlite_busy",
        "sqlite_locked",
    ]

    postgres_patterns = [
        "deadlock detected",  # 40P01
        "could not serialize access",  # 40001 serialization failure
        "could not obtain lock",
        "connection refused",
        "connection reset",
        "server closed the connection unexpectedly",
        "canceling statement due to lock timeout",
        "lock timeout",
    ]

    for pattern in sqlite_patterns + postgres_patterns:
        if pattern in error_str:
            return True

    # asyncpg and psycopg2 may expose SQLSTATE codes
    sqlstate = getattr(exc, "sqlstate", None)
    if sqlstate in ("40P01", "40001"):
        return True

    # The databases library wraps underlying driver exceptions
    if exc.__cause__ is not None:
        return is_retryable_database_error(exc.__cause__)

    return False


async def execute_with_retry(
    func: Callable[..., Awaitable[T]],
    *args,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    **kwargs,
) -> T:
    """
    Execute an async function with retry logic for transient database errors.

    Uses exponential backoff with jitter to reduce contention.

    Args:
        func: Async function to execute
        *args: Positional arguments for func
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay between retries (seconds)
        max_delay: Maximum delay between retries (seconds)
        **kwargs: Keyword arguments for func

    Returns:
        Result of the function

    Raises:
        DatabaseRetryableError: If all retries are exhausted
        Other exceptions: Non-retryable errors are re-raised immediately
    """
    last_exception: Optional[Exception] = None

    for attempt in range(max_retries + 1):
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if not is_retryable_database_error(e):
                raise

            last_exception = e

            if attempt < max_retries:
                delay = min(
                    base_delay * (DEFAULT_EXPONENTIAL_BASE**attempt),
                    max_delay,
                )
                # Add jitter (±25%) to prevent thundering herd
                jitter = delay * 0.25 * (2 * random.random() - 1)
                delay = max(0.01, delay + jitter)

                DB_QUERY_RETRIES_TOTAL.inc()
                logger.warning(
                    f"Database error (attempt {attempt + 1}/{max_retries + 1}), retrying in {delay:.2f}s: {e}"
                )
                await asyncio.sleep(delay)
            else:
                logger.error(f"Database error after {max_retries + 1} attempts, giving up: {e}")

    raise DatabaseRetryableError(f"Database operation failed after {max_retries + 1} attempts: {last_exception}")


async def run_transaction(
    database: Database,
    func: Callable[[], Awaitable[T]],
    operation: str = "transaction",
    max_retries: int = DEFAULT_MAX_RETRIES,
) -> T:
    """
    Run func inside a database transaction, retrying the whole transaction on
    transient errors.

    func must do all of its reads inside the closure so that a retry
    re-validates against fresh state. Raising from func rolls back.
    """

    async def do_transaction() -> T:
        start_time = time.monotonic()
        async with database.transaction():
            result = await func()
        elapsed = time.monotonic() - start_time
        DB_TRANSACTION_DURATION_SECONDS.labels(operation=operation).observe(elapsed)
        if elapsed >= SLOW_TRANSACTION_THRESHOLD:
            logger.warning(f"Slow transaction {operation} ({elapsed:.2f}s)")
        return result

    return await execute_with_retry(do_transaction, max_retries=max_retries)
