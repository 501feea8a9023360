"""
Task handlers: list due tasks and process one task, for every task kind.

Each processor performs its external side effect first and only then deletes
the task row (plus any index row) in a transaction. A processor that raises
leaves the row at its claimed execution time for a later attempt.

The formatting and playlist processors live in api.formatting_tasks and
api.playlist_tasks; this module wires them into the same dispatch table.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from databases import Database

from api.container_store import delete_gcs_file, delete_r2_key
from api.db_retry import run_transaction
from api.enums import TaskKind
from api.errors import BadRequestError
from api.resumable_upload import ResumableUploadClient
from api.service_clients import MeterClient
from api.storage_clients import GcsClient, R2Client
from api.task_ledger import count_stuck_tasks, delete_task, get_spec, list_due_tasks
from api.task_runner import TaskRunner
from config import GCS_VIDEO_BUCKET_NAME

logger = logging.getLogger(__name__)

ProcessFunc = Callable[[Dict[str, Any], str], Awaitable[None]]


class TaskHandlers:
    def __init__(
        self,
        db: Database,
        gcs_client: GcsClient,
        resumable_client: ResumableUploadClient,
        r2_client: R2Client,
        meter_client: MeterClient,
        extra_processors: Optional[Mapping[TaskKind, ProcessFunc]] = None,
        bucket: str = GCS_VIDEO_BUCKET_NAME,
    ):
        self.db = db
        self.gcs_client = gcs_client
        self.resumable_client = resumable_client
        self.r2_client = r2_client
        self.meter_client = meter_client
        self.bucket = bucket
        self.processors: Dict[TaskKind, ProcessFunc] = {
            TaskKind.GCS_KEY_DELETING: self.process_gcs_key_deleting,
            TaskKind.GCS_UPLOAD_FILE_DELETING: self.process_gcs_upload_file_deleting,
            TaskKind.R2_KEY_DELETING: self.process_r2_key_deleting,
            TaskKind.STORAGE_START_RECORDING: self.process_storage_start_recording,
            TaskKind.STORAGE_END_RECORDING: self.process_storage_end_recording,
            TaskKind.UPLOADED_RECORDING: self.process_uploaded_recording,
        }
        self.processors.update(extra_processors or {})

    async def list_due(self, kind: TaskKind, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        return await list_due_tasks(self.db, kind, limit=limit)

    async def count_stuck(self, kind: TaskKind) -> int:
        return await count_stuck_tasks(self.db, kind)

    async def process(self, kind: TaskKind, data: Mapping[str, Any]) -> None:
        """
        Claim and process one task.

        Args:
            kind: Task kind
            data: The task's key fields, camelCase as returned by list_due
        """
        kind = TaskKind(kind)
        processor = self.processors.get(kind)
        if processor is None:
            raise BadRequestError(f"No processor registered for {kind.value}.")
        key = get_spec(kind).from_api(data)
        await TaskRunner(self.db, kind).run(key, processor)

    async def _finish(self, kind: TaskKind, key: Mapping[str, Any], cleanup=None) -> None:
        """Delete the task row, and optionally its index row, in one transaction."""

        async def finish() -> None:
            if cleanup is not None:
                await cleanup()
            await delete_task(self.db, kind, key)

        await run_transaction(self.db, finish, operation=f"finish_{kind.value}")

    async def process_gcs_key_deleting(self, task: Dict[str, Any], prefix: str) -> None:
        key = task["key"]
        logger.info(f"{prefix} Deleting primary store object {key}.")
        await self.gcs_client.delete_object(self.bucket, key)
        await self._finish(TaskKind.GCS_KEY_DELETING, {"key": key}, lambda: delete_gcs_file(self.db, key))

    async def process_gcs_upload_file_deleting(self, task: Dict[str, Any], prefix: str) -> None:
        filename = task["filename"]
        logger.info(f"{prefix} Cancelling upload session and deleting {filename}.")
        await self.resumable_client.delete_and_cancel(self.bucket, filename, task.get("upload_session_url"))
        await self._finish(
            TaskKind.GCS_UPLOAD_FILE_DELETING,
            {"filename": filename},
            lambda: delete_gcs_file(self.db, filename),
        )

    async def process_r2_key_deleting(self, task: Dict[str, Any], prefix: str) -> None:
        key = task["key"]
        logger.info(f"{prefix} Deleting publish store objects at {key}.")
        await self.r2_client.delete_key(key)
        await self._finish(TaskKind.R2_KEY_DELETING, {"key": key}, lambda: delete_r2_key(self.db, key))

    async def process_storage_start_recording(self, task: Dict[str, Any], prefix: str) -> None:
        logger.info(f"{prefix} Recording storage start.")
        await self.meter_client.record_storage_start(
            task["account_id"],
            task["r2_dirname"],
            task["total_bytes"],
            task["start_time_ms"],
        )
        await self._finish(TaskKind.STORAGE_START_RECORDING, {"r2_dirname": task["r2_dirname"]})

    async def process_storage_end_recording(self, task: Dict[str, Any], prefix: str) -> None:
        logger.info(f"{prefix} Recording storage end.")
        await self.meter_client.record_storage_end(task["account_id"], task["r2_dirname"], task["end_time_ms"])
        await self._finish(TaskKind.STORAGE_END_RECORDING, {"r2_dirname": task["r2_dirname"]})

    async def process_uploaded_recording(self, task: Dict[str, Any], prefix: str) -> None:
        logger.info(f"{prefix} Recording uploaded bytes.")
        await self.meter_client.record_uploaded(task["account_id"], task["gcs_key"], task["total_bytes"])
        await self._finish(TaskKind.UPLOADED_RECORDING, {"gcs_key": task["gcs_key"]})
