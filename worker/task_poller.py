#!/usr/bin/env python3
"""
Task poller: drives the task ledger through the Service API.

Every POLLER_INTERVAL seconds, for each task kind:
    1. GET /api/tasks/{kind} for due tasks (and the kind's stuck count)
    2. POST /api/tasks/{kind}/process for each due task, up to
       POLLER_CONCURRENCY at a time

The API claims each task before processing it, so running several pollers
is safe: a duplicate delivery only re-delays the task.

Run with: python -m worker.task_poller

Environment variables:
    VCS_SERVICE_API_URL: Service API URL (default: http://localhost:9100)
    VCS_SERVICE_API_SECRET: Shared secret for the task endpoints
    VCS_POLLER_INTERVAL: Seconds between polls (default: 10)
    VCS_POLLER_CONCURRENCY: Tasks processed in parallel (default: 4)
    VCS_ALERT_WEBHOOK_URL: Webhook for stuck/failing task alerts
"""

import asyncio
import logging
import signal
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

from api.enums import TaskKind
from config import POLLER_CONCURRENCY, POLLER_INTERVAL, SERVICE_API_SECRET, SERVICE_API_URL
from worker.alerts import (
    alert_poller_shutdown,
    alert_poller_startup,
    alert_task_failed,
    alert_tasks_stuck,
    get_metrics,
    send_alert_fire_and_forget,
)
from worker.http_client import ServiceAPIClient, ServiceAPIError

logger = logging.getLogger(__name__)

# Global shutdown flag
shutdown_requested = False

# Ledger bookkeeping fields returned with every task; not part of its key
LEDGER_FIELDS = ("retryCount", "executionTimeMs", "createdTimeMs")

# Cheap deletes and recordings first so they are not starved by formatting
POLL_ORDER = (
    TaskKind.GCS_KEY_DELETING,
    TaskKind.GCS_UPLOAD_FILE_DELETING,
    TaskKind.R2_KEY_DELETING,
    TaskKind.STORAGE_START_RECORDING,
    TaskKind.STORAGE_END_RECORDING,
    TaskKind.UPLOADED_RECORDING,
    TaskKind.VIDEO_CONTAINER_WRITING_TO_FILE,
    TaskKind.VIDEO_CONTAINER_SYNCING,
    TaskKind.MEDIA_FORMATTING,
    TaskKind.SUBTITLE_FORMATTING,
)


def signal_handler(sig, frame):
    """Handle shutdown signals gracefully."""
    global shutdown_requested
    logger.info("Shutdown signal received, finishing in-flight tasks...")
    shutdown_requested = True


def task_label(kind: TaskKind, task: Dict[str, Any]) -> str:
    """Stable label for a task, e.g. 'r2_key_deleting(key=a/b)'."""
    parts = ", ".join(f"{k}={v}" for k, v in sorted(task.items()) if k not in LEDGER_FIELDS)
    return f"{TaskKind(kind).value}({parts})"


@dataclass
class PollResult:
    processed: int = 0
    failed: int = 0
    skipped: int = 0


async def process_one(
    client: ServiceAPIClient,
    kind: TaskKind,
    task: Dict[str, Any],
    semaphore: asyncio.Semaphore,
    result: PollResult,
) -> None:
    label = task_label(kind, task)
    key = {k: v for k, v in task.items() if k not in LEDGER_FIELDS}
    async with semaphore:
        try:
            await client.process_task(kind, key)
            result.processed += 1
            get_metrics().clear_task_failures(label)
        except ServiceAPIError as e:
            if e.status_code == 404:
                # Already finished or deleted by another request
                logger.debug(f"{label} is gone, skipping")
                result.skipped += 1
                return
            result.failed += 1
            logger.warning(f"{label} failed (retry {task.get('retryCount', 0)}): {e.message}")
            send_alert_fire_and_forget(alert_task_failed(kind.value, label, task.get("retryCount", 0), e.message))


async def poll_once(
    client: ServiceAPIClient,
    kinds: Iterable[TaskKind] = POLL_ORDER,
    concurrency: int = POLLER_CONCURRENCY,
    limit: Optional[int] = None,
) -> PollResult:
    """One pass over every task kind."""
    semaphore = asyncio.Semaphore(concurrency)
    result = PollResult()
    for kind in kinds:
        if shutdown_requested:
            break
        try:
            response = await client.list_due_tasks(kind, limit=limit)
        except ServiceAPIError as e:
            logger.warning(f"Failed to list {kind.value} tasks: {e.message}")
            continue

        stuck_count = response.get("stuckCount", 0)
        if stuck_count:
            logger.warning(f"{stuck_count} {kind.value} task(s) past their stall time")
            send_alert_fire_and_forget(alert_tasks_stuck(kind.value, stuck_count))

        tasks = response.get("tasks", [])
        if tasks:
            logger.info(f"Processing {len(tasks)} due {kind.value} task(s)")
        await asyncio.gather(*(process_one(client, kind, task, semaphore, result) for task in tasks))
    return result


async def poller_loop(client: Optional[ServiceAPIClient] = None):
    """Main poller loop."""
    global shutdown_requested

    # Set up signal handlers
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    poller_id = str(uuid.uuid4())[:8]
    client = client or ServiceAPIClient(SERVICE_API_URL, SERVICE_API_SECRET)

    logger.info("Task poller starting...")
    logger.info(f"  API URL: {SERVICE_API_URL}")
    logger.info(f"  Poll interval: {POLLER_INTERVAL}s")
    logger.info(f"  Concurrency: {POLLER_CONCURRENCY}")
    send_alert_fire_and_forget(alert_poller_startup(poller_id))

    tasks_processed = 0
    tasks_failed = 0

    try:
        while not shutdown_requested:
            try:
                result = await poll_once(client)
                tasks_processed += result.processed
                tasks_failed += result.failed
            except Exception as e:
                logger.exception(f"Error in poller loop: {e}")
            await asyncio.sleep(POLLER_INTERVAL)
    finally:
        await alert_poller_shutdown(poller_id, tasks_processed)
        await client.close()
        logger.info(f"Task poller stopped. Tasks processed: {tasks_processed}, failed: {tasks_failed}")


def main():
    """Entry point for the task poller."""
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    asyncio.run(poller_loop())


if __name__ == "__main__":
    main()
