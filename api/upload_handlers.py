"""
Start/complete/cancel upload handlers for media files and subtitle zips.

One generic handler per operation, parameterized by an UploadKind that knows
how to read and write its own processing state on the container.

start_uploading and complete_uploading are two-phase: a slow call to the
primary store happens between two transactions, and the second transaction
re-reads the container and verifies the filename and session URL it started
from. If another request has moved the container on, the write loses with a
Conflict rather than overwriting.
"""

import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional

from databases import Database

from api.common import new_id
from api.container_store import get_container, insert_gcs_file, require_container, save_container
from api.db_retry import run_transaction
from api.enums import ProcessingKind, TaskKind
from api.errors import BadRequestError, ConflictError
from api.metrics import HANDLER_CALLS_TOTAL
from api.resumable_upload import ResumableUploadClient
from api.task_ledger import delete_task, insert_task
from api.video_container import FormattingState, Processing, UploadingState, VideoContainer
from config import (
    ACCEPTED_MEDIA_TYPES,
    ACCEPTED_SUBTITLE_ZIP_TYPES,
    GCS_VIDEO_BUCKET_NAME,
    MEDIA_CONTENT_LENGTH_LIMIT,
    SUBTITLE_ZIP_CONTENT_LENGTH_LIMIT,
)

logger = logging.getLogger(__name__)

UPLOAD_CONTENT_TYPES = {
    "mp4": "video/mp4",
    "mov": "video/quicktime",
    "mkv": "video/x-matroska",
    "aac": "audio/aac",
    "zip": "application/zip",
}


@dataclass(frozen=True)
class UploadKind:
    """Accessors for one upload/format pipeline."""

    processing_kind: ProcessingKind
    formatting_task_kind: TaskKind
    accepted_types: FrozenSet[str]
    content_length_limit: int

    @property
    def name(self) -> str:
        return self.processing_kind.value

    def get_uploading(self, container: VideoContainer) -> Optional[UploadingState]:
        processing = container.processing
        if processing and processing.kind == self.processing_kind and isinstance(processing.stage, UploadingState):
            return processing.stage
        return None

    def set_uploading(self, container: VideoContainer, state: UploadingState) -> None:
        container.processing = Processing(kind=self.processing_kind, stage=state)

    def get_formatting(self, container: VideoContainer) -> Optional[FormattingState]:
        processing = container.processing
        if processing and processing.kind == self.processing_kind and isinstance(processing.stage, FormattingState):
            return processing.stage
        return None

    def set_formatting(self, container: VideoContainer, state: FormattingState) -> None:
        container.processing = Processing(kind=self.processing_kind, stage=state)


MEDIA = UploadKind(
    processing_kind=ProcessingKind.MEDIA,
    formatting_task_kind=TaskKind.MEDIA_FORMATTING,
    accepted_types=ACCEPTED_MEDIA_TYPES,
    content_length_limit=MEDIA_CONTENT_LENGTH_LIMIT,
)

SUBTITLE = UploadKind(
    processing_kind=ProcessingKind.SUBTITLE,
    formatting_task_kind=TaskKind.SUBTITLE_FORMATTING,
    accepted_types=ACCEPTED_SUBTITLE_ZIP_TYPES,
    content_length_limit=SUBTITLE_ZIP_CONTENT_LENGTH_LIMIT,
)

UPLOAD_KINDS: Dict[ProcessingKind, UploadKind] = {
    ProcessingKind.MEDIA: MEDIA,
    ProcessingKind.SUBTITLE: SUBTITLE,
}


@dataclass
class StartUploadResult:
    session_url: str
    byte_offset: int


class UploadHandlers:
    """Upload orchestration against the database and the primary store."""

    def __init__(
        self,
        db: Database,
        resumable_client: ResumableUploadClient,
        bucket: str = GCS_VIDEO_BUCKET_NAME,
    ):
        self.db = db
        self.resumable_client = resumable_client
        self.bucket = bucket

    async def start_uploading(
        self,
        kind: UploadKind,
        container_id: str,
        content_length: int,
        file_ext: str,
        md5: str = "",
    ) -> StartUploadResult:
        """
        Begin or resume an upload.

        Re-sending the same parameters while an upload is in progress resumes
        it: the existing session is returned if still valid, otherwise a new
        session is created for the same file.
        """
        file_ext = (file_ext or "").lower().lstrip(".")
        if file_ext not in kind.accepted_types:
            raise BadRequestError(
                f"File type {file_ext} is not accepted. Accepted: {', '.join(sorted(kind.accepted_types))}."
            )
        if content_length <= 0 or content_length > kind.content_length_limit:
            raise BadRequestError(
                f"Content length {content_length} is out of range (max {kind.content_length_limit})."
            )

        async def prepare() -> UploadingState:
            container = await require_container(self.db, container_id, for_update=True)
            if container.processing is not None:
                uploading = kind.get_uploading(container)
                if uploading is None:
                    raise BadRequestError(f"Container is {container.processing.key}, not {kind.name} uploading.")
                if (
                    uploading.content_length != content_length
                    or uploading.file_ext != file_ext
                    or uploading.md5 != md5
                ):
                    raise BadRequestError("Upload parameters do not match the upload in progress.")
                return uploading

            container.last_processing_failures = []
            uploading = UploadingState(
                filename=new_id(),
                content_length=content_length,
                file_ext=file_ext,
                md5=md5,
            )
            kind.set_uploading(container, uploading)
            await save_container(self.db, container)
            await insert_gcs_file(self.db, uploading.filename)
            logger.info(f"Container {container_id} started {kind.name} uploading to {uploading.filename}")
            return uploading

        uploading = await run_transaction(self.db, prepare, operation="start_uploading")

        progress = await self.resumable_client.check_progress(uploading.session_url, uploading.content_length)
        if progress.url_valid:
            HANDLER_CALLS_TOTAL.labels(handler="start_uploading", result="resumed").inc()
            return StartUploadResult(session_url=uploading.session_url, byte_offset=progress.byte_offset)

        session_url = await self.resumable_client.create_session(
            self.bucket,
            uploading.filename,
            uploading.content_length,
            content_type=UPLOAD_CONTENT_TYPES.get(file_ext),
        )

        async def persist_session() -> None:
            container = await get_container(self.db, container_id, for_update=True)
            if container is None:
                raise ConflictError("Video container was deleted during upload start.")
            current = kind.get_uploading(container)
            if (
                current is None
                or current.filename != uploading.filename
                or current.session_url != uploading.session_url
            ):
                raise ConflictError("Upload state changed during upload start.")
            current.session_url = session_url
            await save_container(self.db, container)

        await run_transaction(self.db, persist_session, operation="start_uploading_session")
        HANDLER_CALLS_TOTAL.labels(handler="start_uploading", result="success").inc()
        return StartUploadResult(session_url=session_url, byte_offset=0)

    async def complete_uploading(self, kind: UploadKind, container_id: str, session_url: str) -> None:
        """Move a fully uploaded file to formatting and enqueue its formatting task."""
        container = await require_container(self.db, container_id)
        uploading = kind.get_uploading(container)
        if uploading is None:
            raise BadRequestError(f"Container is not {kind.name} uploading.")
        if uploading.session_url != session_url:
            raise BadRequestError("Session URL does not match the upload in progress.")

        progress = await self.resumable_client.check_progress(session_url, uploading.content_length)
        if not progress.url_valid or progress.byte_offset != uploading.content_length:
            raise BadRequestError(
                f"Upload is incomplete: {progress.byte_offset} of {uploading.content_length} bytes received."
            )

        async def finalize() -> None:
            container = await get_container(self.db, container_id, for_update=True)
            if container is None:
                raise ConflictError("Video container was deleted during upload completion.")
            current = kind.get_uploading(container)
            if current is None or current.filename != uploading.filename or current.session_url != session_url:
                raise ConflictError("Upload state changed during upload completion.")
            kind.set_formatting(container, FormattingState(filename=uploading.filename))
            await save_container(self.db, container)
            await insert_task(
                self.db,
                TaskKind.UPLOADED_RECORDING,
                {"gcs_key": uploading.filename},
                {"account_id": container.account_id, "total_bytes": uploading.content_length},
            )
            await insert_task(
                self.db,
                kind.formatting_task_kind,
                {"container_id": container_id, "filename": uploading.filename},
            )

        await run_transaction(self.db, finalize, operation="complete_uploading")
        HANDLER_CALLS_TOTAL.labels(handler="complete_uploading", result="success").inc()
        logger.info(f"Container {container_id} completed {kind.name} uploading of {uploading.filename}")

    async def cancel_uploading(self, kind: UploadKind, container_id: str) -> None:
        async def cancel() -> None:
            container = await require_container(self.db, container_id, for_update=True)
            uploading = kind.get_uploading(container)
            if uploading is None:
                raise BadRequestError(f"Container is not {kind.name} uploading.")
            container.processing = None
            await save_container(self.db, container)
            await insert_task(
                self.db,
                TaskKind.GCS_UPLOAD_FILE_DELETING,
                {"filename": uploading.filename},
                {"upload_session_url": uploading.session_url},
            )

        await run_transaction(self.db, cancel, operation="cancel_uploading")
        HANDLER_CALLS_TOTAL.labels(handler="cancel_uploading", result="success").inc()

    async def cancel_formatting(self, kind: UploadKind, container_id: str) -> None:
        async def cancel() -> None:
            container = await require_container(self.db, container_id, for_update=True)
            formatting = kind.get_formatting(container)
            if formatting is None:
                raise BadRequestError(f"Container is not {kind.name} formatting.")
            container.processing = None
            await save_container(self.db, container)
            await delete_task(
                self.db,
                kind.formatting_task_kind,
                {"container_id": container_id, "filename": formatting.filename},
            )
            await insert_task(self.db, TaskKind.GCS_KEY_DELETING, {"key": formatting.filename})

        await run_transaction(self.db, cancel, operation="cancel_formatting")
        HANDLER_CALLS_TOTAL.labels(handler="cancel_formatting", result="success").inc()
