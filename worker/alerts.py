"""
Alert system for task poller events.

Provides webhook notifications for:
- Task kinds with rows older than their stall time
- Repeated failures of the same task
- Poller startup and shutdown

Includes rate limiting to prevent alert flooding.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Dict, Optional

import httpx

from config import ALERT_RATE_LIMIT_SECONDS, ALERT_WEBHOOK_TIMEOUT, ALERT_WEBHOOK_URL

logger = logging.getLogger(__name__)


class AlertType(str, Enum):
    """Types of alerts that can be sent."""

    TASKS_STUCK = "tasks_stuck"
    TASK_FAILED = "task_failed"
    POLLER_STARTUP = "poller_startup"
    POLLER_SHUTDOWN = "poller_shutdown"


@dataclass
class AlertMetrics:
    """Tracks metrics for alerting and monitoring."""

    # Counters
    stuck_reports: int = 0
    tasks_failed: int = 0
    alerts_sent: int = 0
    alerts_rate_limited: int = 0
    alerts_failed: int = 0

    # Last alert timestamps by type (for rate limiting)
    last_alert_time: Dict[str, float] = field(default_factory=dict)

    # Track failures by task for pattern detection
    task_failure_counts: Dict[str, int] = field(default_factory=dict)

    def increment_stuck_reports(self) -> int:
        self.stuck_reports += 1
        return self.stuck_reports

    def increment_failed(self, task_label: Optional[str] = None) -> int:
        """Increment tasks failed counter and track per-task failures."""
        self.tasks_failed += 1
        if task_label is not None:
            self.task_failure_counts[task_label] = self.task_failure_counts.get(task_label, 0) + 1
        return self.tasks_failed

    def get_task_failure_count(self, task_label: str) -> int:
        return self.task_failure_counts.get(task_label, 0)

    def clear_task_failures(self, task_label: str) -> None:
        self.task_failure_counts.pop(task_label, None)

    def can_send_alert(self, alert_type: str, rate_limit_seconds: int = 300) -> bool:
        """Check if enough time has passed since the last alert of this type."""
        last_time = self.last_alert_time.get(alert_type, 0)
        return (time.time() - last_time) >= rate_limit_seconds

    def record_alert_sent(self, alert_type: str):
        self.last_alert_time[alert_type] = time.time()
        self.alerts_sent += 1

    def record_alert_rate_limited(self):
        self.alerts_rate_limited += 1

    def record_alert_failed(self):
        self.alerts_failed += 1

    def to_dict(self) -> Dict[str, Any]:
        """Convert metrics to a dictionary for reporting."""
        return {
            "stuck_reports": self.stuck_reports,
            "tasks_failed": self.tasks_failed,
            "alerts_sent": self.alerts_sent,
            "alerts_rate_limited": self.alerts_rate_limited,
            "alerts_failed": self.alerts_failed,
            "tasks_with_failures": len(self.task_failure_counts),
        }


# Global metrics instance
_metrics: Optional[AlertMetrics] = None


def get_metrics() -> AlertMetrics:
    """Get or create the global metrics instance."""
    global _metrics
    if _metrics is None:
        _metrics = AlertMetrics()
    return _metrics


def reset_metrics():
    """Reset metrics (for testing)."""
    global _metrics
    _metrics = AlertMetrics()


def send_alert_fire_and_forget(coro: Awaitable[Any]) -> None:
    """
    Schedule an alert coroutine as a fire-and-forget background task.

    Alert failures never stop the poller; exceptions are logged at debug level.
    """

    async def _safe_send():
        try:
            await coro
        except Exception as e:
            logger.debug(f"Failed to send alert (fire-and-forget): {e}")

    try:
        asyncio.create_task(_safe_send())
    except RuntimeError:
        # No running event loop (shouldn't happen in normal operation)
        logger.debug("Cannot send alert: no running event loop")


async def send_webhook_alert(
    alert_type: AlertType,
    details: Dict[str, Any],
    force: bool = False,
    webhook_url: Optional[str] = None,
) -> bool:
    """
    Send an alert to the configured webhook URL.

    Args:
        alert_type: Type of alert being sent
        details: Additional details about the alert
        force: If True, bypass rate limiting
        webhook_url: Override VCS_ALERT_WEBHOOK_URL

    Returns:
        True if alert was sent successfully, False otherwise
    """
    webhook_url = ALERT_WEBHOOK_URL if webhook_url is None else webhook_url
    if not webhook_url:
        return False

    metrics = get_metrics()

    # Check rate limiting
    if not force and not metrics.can_send_alert(alert_type.value, ALERT_RATE_LIMIT_SECONDS):
        metrics.record_alert_rate_limited()
        logger.debug(f"Alert {alert_type.value} rate limited")
        return False

    payload = {
        "event": alert_type.value,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "details": details,
        "metrics": metrics.to_dict(),
    }

    try:
        async with httpx.AsyncClient(timeout=ALERT_WEBHOOK_TIMEOUT) as client:
            response = await client.post(
                webhook_url,
                json=payload,
                headers={"Content-Type": "application/json"},
            )
            response.raise_for_status()

        metrics.record_alert_sent(alert_type.value)
        logger.info(f"Alert sent: {alert_type.value}")
        return True

    except httpx.TimeoutException:
        metrics.record_alert_failed()
        logger.warning(f"Alert webhook timed out after {ALERT_WEBHOOK_TIMEOUT}s")
        return False
    except httpx.HTTPStatusError as e:
        metrics.record_alert_failed()
        logger.warning(f"Alert webhook returned error: {e.response.status_code}")
        return False
    except Exception as e:
        metrics.record_alert_failed()
        logger.warning(f"Failed to send alert webhook: {e}")
        return False


async def alert_tasks_stuck(kind: str, stuck_count: int, webhook_url: Optional[str] = None):
    """
    Send alert when a task kind has rows older than its stall time.

    Args:
        kind: Task kind
        stuck_count: Number of rows past the stall time
    """
    metrics = get_metrics()
    metrics.increment_stuck_reports()

    await send_webhook_alert(
        AlertType.TASKS_STUCK,
        {"kind": kind, "stuck_count": stuck_count},
        webhook_url=webhook_url,
    )


async def alert_task_failed(
    kind: str,
    task_label: str,
    retry_count: int,
    error: str,
    webhook_url: Optional[str] = None,
):
    """
    Send alert when a task fails.

    Only sends alerts after repeated failures for the same task.

    Args:
        kind: Task kind
        task_label: Stable label of the task key, e.g. "r2_key_deleting(key=a/b)"
        retry_count: Claims so far, as reported by the ledger
        error: Error message
    """
    metrics = get_metrics()
    metrics.increment_failed(task_label)
    failure_count = metrics.get_task_failure_count(task_label)

    # Only alert after 2+ failures for the same task (pattern detection)
    if failure_count >= 2:
        await send_webhook_alert(
            AlertType.TASK_FAILED,
            {
                "kind": kind,
                "task": task_label,
                "retry_count": retry_count,
                "error": error[:500] if error else None,
                "task_failure_count": failure_count,
            },
            webhook_url=webhook_url,
        )


async def alert_poller_startup(poller_id: str, webhook_url: Optional[str] = None):
    await send_webhook_alert(AlertType.POLLER_STARTUP, {"poller_id": poller_id}, force=True, webhook_url=webhook_url)


async def alert_poller_shutdown(poller_id: str, tasks_processed: int = 0, webhook_url: Optional[str] = None):
    await send_webhook_alert(
        AlertType.POLLER_SHUTDOWN,
        {
            "poller_id": poller_id,
            "tasks_processed": tasks_processed,
            "final_metrics": get_metrics().to_dict(),
        },
        force=True,
        webhook_url=webhook_url,
    )
