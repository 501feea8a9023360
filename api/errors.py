"""
Error types and message sanitizing for the video container service.

Handlers raise the ServiceError subclasses below; the HTTP layer maps each to
its status code. Commit-time rule violations are not errors here, they are
returned as ValidationError values (see api.enums).
"""
import logging
import re
from typing import Optional

logger = logging.getLogger(__name__)


class ServiceError(Exception):
    """Base class for errors that surface to the caller with an HTTP status."""

    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NotFoundError(ServiceError):
    """Container, track or task is absent."""

    status_code = 404


class BadRequestError(ServiceError):
    """Caller violated a precondition (wrong state, rejected file type, ...)."""

    status_code = 400


class ConflictError(ServiceError):
    """State changed between the pre-check and the final write."""

    status_code = 409


class InternalError(ServiceError):
    """Unexpected state or external-system failure."""

    status_code = 500


# Patterns that indicate internal details
INTERNAL_PATTERNS = [
    r'/home/\w+/',           # Home directory paths
    r'/mnt/\w+/',            # Mount paths
    r'/tmp/\w+',             # Temp paths
    r'line \d+',             # Line numbers in stack traces
    r'File "[^"]+\.py"',     # Python file paths
    r'ffmpeg:.*',            # FFmpeg output
    r'ffprobe:.*',           # FFprobe output
    r'UNIQUE constraint failed',
    r'duplicate key value',
    r'sqlite3?\.',
    r'asyncpg\.',
    r'https?://\S+',         # Signed URLs, session URLs
]

ERROR_MESSAGES = {
    "database": "A database error occurred. Please try again.",
    "storage": "A storage error occurred. Please try again.",
    "general": "An error occurred while processing your request. Please try again.",
}

# Maximum length for stored/logged error messages
ERROR_MAX_LENGTH = 2000


def truncate_error(error: Optional[str], max_length: int = ERROR_MAX_LENGTH) -> Optional[str]:
    """Truncate an error message, keeping the beginning."""
    if error is None:
        return None
    if len(error) <= max_length:
        return error
    return error[: max_length - 3] + "..."


def sanitize_error_message(
    error: Optional[str],
    log_original: bool = True,
    context: str = ""
) -> Optional[str]:
    """
    Sanitize an error message for safe display to API clients.

    Args:
        error: The original error message (may contain internal details)
        log_original: Whether to log the original message before sanitizing
        context: Additional context for logging (e.g., "container_id=abc")

    Returns:
        A sanitized, user-friendly error message, or None if input was None
    """
    if error is None:
        return None

    if log_original and error:
        log_msg = "Original error"
        if context:
            log_msg += f" ({context})"
        log_msg += f": {error}"
        logger.warning(log_msg)

    error_lower = error.lower()

    if "sqlite" in error_lower or "database" in error_lower or "constraint" in error_lower:
        return ERROR_MESSAGES["database"]

    if "bucket" in error_lower or "s3" in error_lower or "storage" in error_lower:
        return ERROR_MESSAGES["storage"]

    for pattern in INTERNAL_PATTERNS:
        if re.search(pattern, error, re.IGNORECASE):
            return ERROR_MESSAGES["general"]

    # Short messages without path-like segments are safe to show as-is
    if len(error) < 200 and "\\" not in error:
        return error

    return ERROR_MESSAGES["general"]
