"""
Task ledger: durable, retryable deferred work.

Every unit of deferred work is a row keyed by a natural identifier in one of
the *_tasks tables (see api.database). All kinds share retry_count,
execution_time_ms and created_time_ms, so one set of queries serves them all;
a TaskSpec describes how a kind maps onto its table.

List-due is a durable priority queue: rows with execution_time_ms <= now,
earliest first. Claiming bumps retry_count and pushes execution_time_ms out by
the kind's backoff, which acts as a lease: a duplicate delivery of the same
task just re-delays it.

These helpers do not open transactions themselves except claim_task; callers
compose them inside run_transaction().
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

import sqlalchemy as sa
from databases import Database

from api.common import now_ms
from api.database import (
    gcs_key_deleting_tasks,
    gcs_upload_file_deleting_tasks,
    media_formatting_tasks,
    r2_key_deleting_tasks,
    storage_end_recording_tasks,
    storage_start_recording_tasks,
    subtitle_formatting_tasks,
    uploaded_recording_tasks,
    video_container_syncing_tasks,
    video_container_writing_to_file_tasks,
)
from api.db_retry import run_transaction
from api.enums import TaskKind
from api.errors import BadRequestError, ConflictError, NotFoundError
from config import (
    FORMATTING_TASK_RETRY_BACKOFF_MS,
    FORMATTING_TASK_STALL_TIME_MS,
    TASK_RETRY_BACKOFF_MS,
    TASK_STALL_TIME_MS,
)

logger = logging.getLogger(__name__)

LEDGER_COLUMNS = ("retry_count", "execution_time_ms", "created_time_ms")


def to_camel(name: str) -> str:
    """container_id -> containerId"""
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


@dataclass(frozen=True)
class TaskSpec:
    """How one task kind maps onto its ledger table."""

    kind: TaskKind
    table: sa.Table
    key_columns: Tuple[str, ...]
    payload_columns: Tuple[str, ...] = ()
    backoff_ms: int = TASK_RETRY_BACKOFF_MS
    stall_time_ms: int = TASK_STALL_TIME_MS

    def backoff(self, retry_count: int) -> int:
        """Delay before the next attempt. A flat step per kind."""
        return self.backoff_ms

    def where(self, key: Mapping[str, Any]):
        missing = [c for c in self.key_columns if key.get(c) is None]
        if missing:
            raise BadRequestError(f"Missing task key fields: {', '.join(to_camel(c) for c in missing)}")
        return sa.and_(*(self.table.c[c] == key[c] for c in self.key_columns))

    def key_of(self, row: Mapping[str, Any]) -> Dict[str, Any]:
        return {c: row[c] for c in self.key_columns}

    def describe(self, key: Mapping[str, Any]) -> str:
        """Short label for log lines, e.g. 'r2_key_deleting(key=a/b)'."""
        parts = ", ".join(f"{c}={key.get(c)}" for c in self.key_columns)
        return f"{self.kind.value}({parts})"

    def to_api(self, row: Mapping[str, Any]) -> Dict[str, Any]:
        """Row -> camelCase dict for the HTTP surface."""
        columns = (*self.key_columns, *self.payload_columns, *LEDGER_COLUMNS)
        return {to_camel(c): row[c] for c in columns}

    def from_api(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        """camelCase key dict from the HTTP surface -> column dict."""
        return {c: data.get(to_camel(c)) for c in self.key_columns}


TASK_SPECS: Dict[TaskKind, TaskSpec] = {
    spec.kind: spec
    for spec in (
        TaskSpec(
            TaskKind.MEDIA_FORMATTING,
            media_formatting_tasks,
            ("container_id", "filename"),
            backoff_ms=FORMATTING_TASK_RETRY_BACKOFF_MS,
            stall_time_ms=FORMATTING_TASK_STALL_TIME_MS,
        ),
        TaskSpec(
            TaskKind.SUBTITLE_FORMATTING,
            subtitle_formatting_tasks,
            ("container_id", "filename"),
            backoff_ms=FORMATTING_TASK_RETRY_BACKOFF_MS,
            stall_time_ms=FORMATTING_TASK_STALL_TIME_MS,
        ),
        TaskSpec(
            TaskKind.GCS_UPLOAD_FILE_DELETING,
            gcs_upload_file_deleting_tasks,
            ("filename",),
            ("upload_session_url",),
        ),
        TaskSpec(TaskKind.GCS_KEY_DELETING, gcs_key_deleting_tasks, ("key",)),
        TaskSpec(TaskKind.R2_KEY_DELETING, r2_key_deleting_tasks, ("key",)),
        TaskSpec(
            TaskKind.STORAGE_START_RECORDING,
            storage_start_recording_tasks,
            ("r2_dirname",),
            ("account_id", "total_bytes", "start_time_ms"),
        ),
        TaskSpec(
            TaskKind.STORAGE_END_RECORDING,
            storage_end_recording_tasks,
            ("r2_dirname",),
            ("account_id", "end_time_ms"),
        ),
        TaskSpec(
            TaskKind.UPLOADED_RECORDING,
            uploaded_recording_tasks,
            ("gcs_key",),
            ("account_id", "total_bytes"),
        ),
        TaskSpec(
            TaskKind.VIDEO_CONTAINER_WRITING_TO_FILE,
            video_container_writing_to_file_tasks,
            ("container_id", "version"),
        ),
        TaskSpec(
            TaskKind.VIDEO_CONTAINER_SYNCING,
            video_container_syncing_tasks,
            ("container_id", "version"),
        ),
    )
}


def get_spec(kind: TaskKind) -> TaskSpec:
    return TASK_SPECS[TaskKind(kind)]


async def get_task(db: Database, kind: TaskKind, key: Mapping[str, Any]):
    spec = get_spec(kind)
    return await db.fetch_one(spec.table.select().where(spec.where(key)))


async def insert_task(
    db: Database,
    kind: TaskKind,
    key: Mapping[str, Any],
    payload: Optional[Mapping[str, Any]] = None,
    delay_ms: int = 0,
    current_time_ms: Optional[int] = None,
) -> None:
    """
    Insert a task due at now + delay_ms.

    An existing row with the same key is refreshed (payload and execution
    time) instead of duplicated; its retry_count and created_time_ms are kept.
    """
    spec = get_spec(kind)
    current_time_ms = now_ms() if current_time_ms is None else current_time_ms
    values: Dict[str, Any] = {c: key[c] for c in spec.key_columns}
    for c in spec.payload_columns:
        values[c] = (payload or {}).get(c)

    existing = await db.fetch_one(spec.table.select().where(spec.where(key)))
    if existing is not None:
        await db.execute(
            spec.table.update()
            .where(spec.where(key))
            .values(
                execution_time_ms=current_time_ms + delay_ms,
                **{c: values[c] for c in spec.payload_columns},
            )
        )
        return

    await db.execute(
        spec.table.insert().values(
            **values,
            retry_count=0,
            execution_time_ms=current_time_ms + delay_ms,
            created_time_ms=current_time_ms,
        )
    )


async def delete_task(db: Database, kind: TaskKind, key: Mapping[str, Any]) -> None:
    spec = get_spec(kind)
    await db.execute(spec.table.delete().where(spec.where(key)))


async def delay_task(
    db: Database,
    kind: TaskKind,
    key: Mapping[str, Any],
    execution_time_ms: int,
) -> None:
    """Move a task's next attempt to an absolute time. No-op when absent."""
    spec = get_spec(kind)
    await db.execute(spec.table.update().where(spec.where(key)).values(execution_time_ms=execution_time_ms))


async def claim_task(
    db: Database,
    kind: TaskKind,
    key: Mapping[str, Any],
    logging_prefix: str = "",
) -> Dict[str, Any]:
    """
    Claim a task by delaying it by its backoff.

    The row is locked for the claim. A row that is not due yet is already
    claimed by another processor, or is a delayed cleanup, and is refused.

    Raises:
        NotFoundError: The task was already completed (or never existed)
        ConflictError: The task is not due yet

    Returns:
        The claimed row, with retry_count and execution_time_ms updated
    """
    spec = get_spec(kind)

    async def do_claim() -> Dict[str, Any]:
        row = await db.fetch_one(spec.table.select().where(spec.where(key)).with_for_update())
        if row is None:
            raise NotFoundError("Task is not found.")
        current_time_ms = now_ms()
        if row["execution_time_ms"] > current_time_ms:
            raise ConflictError("Task is already claimed.")
        retry_count = row["retry_count"] + 1
        execution_time_ms = current_time_ms + spec.backoff(retry_count)
        logger.info(f"{logging_prefix} Claiming the task by delaying it to {execution_time_ms}.")
        await db.execute(
            spec.table.update()
            .where(spec.where(key))
            .values(retry_count=retry_count, execution_time_ms=execution_time_ms)
        )
        claimed = dict(row._mapping)
        claimed["retry_count"] = retry_count
        claimed["execution_time_ms"] = execution_time_ms
        return claimed

    return await run_transaction(db, do_claim, operation=f"claim_{spec.kind.value}")


async def list_due_tasks(
    db: Database,
    kind: TaskKind,
    current_time_ms: Optional[int] = None,
    limit: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """Rows with execution_time_ms <= now, earliest-due first."""
    spec = get_spec(kind)
    current_time_ms = now_ms() if current_time_ms is None else current_time_ms
    query = (
        spec.table.select()
        .where(spec.table.c.execution_time_ms <= current_time_ms)
        .order_by(spec.table.c.execution_time_ms.asc())
    )
    if limit is not None:
        query = query.limit(limit)
    rows = await db.fetch_all(query)
    return [spec.to_api(row) for row in rows]


async def count_stuck_tasks(
    db: Database,
    kind: TaskKind,
    current_time_ms: Optional[int] = None,
) -> int:
    """Number of rows older than the kind's stall time."""
    spec = get_spec(kind)
    current_time_ms = now_ms() if current_time_ms is None else current_time_ms
    count = await db.fetch_val(
        sa.select(sa.func.count())
        .select_from(spec.table)
        .where(spec.table.c.created_time_ms <= current_time_ms - spec.stall_time_ms)
    )
    return int(count or 0)
