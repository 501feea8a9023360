"""
Prometheus metrics for the video container service and task poller.

Metrics are exposed at /metrics endpoint in Prometheus text format.
"""

from prometheus_client import Counter, Gauge, Histogram, Info, generate_latest

# Application info
APP_INFO = Info("vcs", "Video container service information")

# =============================================================================
# API Metrics
# =============================================================================

HTTP_REQUESTS_TOTAL = Counter(
    "vcs_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

HANDLER_CALLS_TOTAL = Counter(
    "vcs_handler_calls_total",
    "Total request handler calls",
    ["handler", "result"],  # result: success, validation_error, error
)

# =============================================================================
# Task Metrics
# =============================================================================

TASKS_PROCESSED_TOTAL = Counter(
    "vcs_tasks_processed_total",
    "Total tasks processed",
    ["kind", "result"],  # completed, failed, not_found
)

TASK_PROCESS_DURATION_SECONDS = Histogram(
    "vcs_task_process_duration_seconds",
    "Task processing duration in seconds",
    ["kind"],
    buckets=[0.05, 0.1, 0.5, 1.0, 5.0, 30.0, 60.0, 300.0, 1800.0, 3600.0],
)

TASKS_DUE = Gauge(
    "vcs_tasks_due",
    "Number of due tasks seen by the last poll",
    ["kind"],
)

TASKS_STUCK = Gauge(
    "vcs_tasks_stuck",
    "Number of tasks older than their stall time seen by the last poll",
    ["kind"],
)

# =============================================================================
# Database Metrics
# =============================================================================

DB_QUERY_RETRIES_TOTAL = Counter(
    "vcs_db_query_retries_total",
    "Total database transaction retries due to transient errors",
)

DB_TRANSACTION_DURATION_SECONDS = Histogram(
    "vcs_db_transaction_duration_seconds",
    "Database transaction duration in seconds",
    ["operation"],
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0],
)

# =============================================================================
# Storage Metrics
# =============================================================================

STORAGE_OPERATIONS_TOTAL = Counter(
    "vcs_storage_operations_total",
    "Total object storage operations",
    ["store", "operation", "result"],  # store: gcs, r2
)

STORAGE_BYTES_WRITTEN = Counter(
    "vcs_storage_bytes_written_total",
    "Total bytes written to the publish store",
)


def get_metrics() -> bytes:
    """Generate Prometheus metrics in text format."""
    return generate_latest()


def init_app_info(version: str = "0.1.0"):
    """Initialize application info metric."""
    APP_INFO.info({"version": version, "app": "vcs"})
