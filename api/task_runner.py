"""
Generic claim/process wrapper used by every background task kind.

    claim   (fast, transactional)  retry_count += 1, execution_time_ms = now + backoff
    process (slow, external)       side effect, then delete the task row

If process raises, the row stays at its claimed execution time and will be
listed as due again once the backoff passes. The error is logged and
re-raised to the caller (the task poller), never retried in-process.
"""

import logging
import time
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from databases import Database

from api.enums import TaskKind
from api.errors import NotFoundError
from api.metrics import TASK_PROCESS_DURATION_SECONDS, TASKS_PROCESSED_TOTAL
from api.task_ledger import claim_task, get_spec

logger = logging.getLogger(__name__)

ClaimFunc = Callable[[Database, TaskKind, Mapping[str, Any], str], Awaitable[Dict[str, Any]]]
ProcessFunc = Callable[[Dict[str, Any], str], Awaitable[None]]


class TaskRunner:
    """Runs one task of one kind through claim then process."""

    def __init__(self, db: Database, kind: TaskKind, claim: Optional[ClaimFunc] = None):
        self.db = db
        self.kind = TaskKind(kind)
        self.spec = get_spec(self.kind)
        self.claim = claim or claim_task

    async def run(
        self,
        key: Mapping[str, Any],
        process: ProcessFunc,
        logging_prefix: Optional[str] = None,
    ) -> None:
        """
        Claim the task identified by key, then hand the claimed row to process.

        Raises:
            NotFoundError: The task no longer exists (already processed)
            Exception: Whatever process raised
        """
        prefix = logging_prefix or f"[{self.spec.describe(key)}]"
        start_time = time.monotonic()

        try:
            task = await self.claim(self.db, self.kind, key, prefix)
        except NotFoundError:
            logger.info(f"{prefix} Task is already gone.")
            TASKS_PROCESSED_TOTAL.labels(kind=self.kind.value, result="not_found").inc()
            raise

        try:
            await process(task, prefix)
        except Exception as e:
            elapsed = time.monotonic() - start_time
            logger.exception(
                f"{prefix} Failed after {elapsed:.2f}s on attempt {task['retry_count']}; "
                f"next attempt at {task['execution_time_ms']}: {e}"
            )
            TASKS_PROCESSED_TOTAL.labels(kind=self.kind.value, result="failed").inc()
            raise

        elapsed = time.monotonic() - start_time
        TASK_PROCESS_DURATION_SECONDS.labels(kind=self.kind.value).observe(elapsed)
        TASKS_PROCESSED_TOTAL.labels(kind=self.kind.value, result="completed").inc()
        logger.info(f"{prefix} Completed in {elapsed:.2f}s.")
