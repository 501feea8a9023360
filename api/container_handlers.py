"""
Request handlers for containers and their tracks.

Each handler runs its whole read-validate-write sequence in one transaction
through run_transaction(). Commit and save return validation failures as
data; in that case the transaction closure returns before writing anything,
so the stored container is left exactly as it was.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from databases import Database

from api.common import new_id
from api.container_store import (
    delete_container_row,
    get_container,
    insert_container,
    require_container,
    save_container,
    schedule_dir_deletion,
    schedule_file_deletion,
)
from api.db_retry import run_transaction
from api.enums import TaskKind, TrackKind, ValidationError
from api.metrics import HANDLER_CALLS_TOTAL
from api.playlist_state import playlist_state_machine
from api.staging import (
    ProposedTrack,
    commit_staging,
    delete_track,
    drop_staging,
    merge_staging_data,
    update_track,
    validate_committed,
)
from api.task_ledger import delete_task, insert_task
from api.upload_handlers import UPLOAD_KINDS
from api.video_container import FormattingState, UploadingState, VideoContainer
from config import MAX_NUM_OF_AUDIO_TRACKS, MAX_NUM_OF_SUBTITLE_TRACKS

logger = logging.getLogger(__name__)

StagingData = Mapping[TrackKind, List[ProposedTrack]]


@dataclass
class ValidationResult:
    success: bool
    error: Optional[ValidationError] = None
    container: Optional[VideoContainer] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"success": self.success}
        if self.error is not None:
            result["error"] = self.error.value
        if self.container is not None:
            result["container"] = self.container.to_dict()
        return result


class ContainerHandlers:
    def __init__(
        self,
        db: Database,
        max_audio_tracks: int = MAX_NUM_OF_AUDIO_TRACKS,
        max_subtitle_tracks: int = MAX_NUM_OF_SUBTITLE_TRACKS,
    ):
        self.db = db
        self.max_audio_tracks = max_audio_tracks
        self.max_subtitle_tracks = max_subtitle_tracks

    async def create_container(
        self,
        account_id: str,
        season_id: Optional[str] = None,
        episode_id: Optional[str] = None,
    ) -> VideoContainer:
        container = VideoContainer.new(new_id(), account_id, season_id, episode_id)
        await insert_container(self.db, container)
        HANDLER_CALLS_TOTAL.labels(handler="create_container", result="success").inc()
        logger.info(f"Created container {container.container_id} for account {account_id}")
        return container

    async def get_container(self, container_id: str) -> VideoContainer:
        return await require_container(self.db, container_id)

    async def commit_staging_data(
        self,
        container_id: str,
        staging_data: Optional[StagingData] = None,
    ) -> ValidationResult:
        """
        Fold all staging into committed and advance the master playlist.

        When staging_data is given it is merged first with the rules of
        save_staging_data.
        """

        async def commit() -> ValidationResult:
            container = await require_container(self.db, container_id, for_update=True)

            removed_by_merge: List[str] = []
            if staging_data is not None:
                error, removed_by_merge = merge_staging_data(container, staging_data)
                if error is not None:
                    return ValidationResult(success=False, error=error)

            retired = commit_staging(container)
            transition = playlist_state_machine.advance_for_commit(container.master_playlist, retired)
            container.master_playlist = transition.state

            error = validate_committed(container, self.max_audio_tracks, self.max_subtitle_tracks)
            if error is not None:
                return ValidationResult(success=False, error=error)

            await save_container(self.db, container)
            if transition.superseded_task is not None:
                await delete_task(
                    self.db,
                    transition.superseded_task.kind,
                    {"container_id": container_id, "version": transition.superseded_task.version},
                )
            await insert_task(
                self.db,
                TaskKind.VIDEO_CONTAINER_WRITING_TO_FILE,
                {"container_id": container_id, "version": transition.state.version},
            )
            for dirname in removed_by_merge:
                await schedule_dir_deletion(self.db, container, dirname)
            return ValidationResult(success=True, container=container)

        result = await run_transaction(self.db, commit, operation="commit_staging_data")
        self._record("commit_staging_data", result)
        if result.success:
            logger.info(
                f"Committed container {container_id}; master playlist now at version "
                f"{result.container.master_playlist.version}"
            )
        return result

    async def save_staging_data(self, container_id: str, staging_data: StagingData) -> ValidationResult:
        """Replace every track's staging with a full snapshot (TRACK_MISMATCH if stale)."""

        async def save() -> ValidationResult:
            container = await require_container(self.db, container_id, for_update=True)
            error, removed = merge_staging_data(container, staging_data)
            if error is not None:
                return ValidationResult(success=False, error=error)
            await save_container(self.db, container)
            for dirname in removed:
                await schedule_dir_deletion(self.db, container, dirname)
            return ValidationResult(success=True, container=container)

        result = await run_transaction(self.db, save, operation="save_staging_data")
        self._record("save_staging_data", result)
        return result

    async def update_track(
        self,
        container_id: str,
        kind: TrackKind,
        track_dirname: str,
        fields: Mapping[str, Any],
    ) -> VideoContainer:
        async def update() -> VideoContainer:
            container = await require_container(self.db, container_id, for_update=True)
            update_track(container, kind, track_dirname, fields)
            await save_container(self.db, container)
            return container

        container = await run_transaction(self.db, update, operation="update_track")
        HANDLER_CALLS_TOTAL.labels(handler="update_track", result="success").inc()
        return container

    async def delete_track(self, container_id: str, kind: TrackKind, track_dirname: str) -> VideoContainer:
        async def stage_delete() -> VideoContainer:
            container = await require_container(self.db, container_id, for_update=True)
            delete_track(container, kind, track_dirname)
            await save_container(self.db, container)
            return container

        container = await run_transaction(self.db, stage_delete, operation="delete_track")
        HANDLER_CALLS_TOTAL.labels(handler="delete_track", result="success").inc()
        return container

    async def drop_track_staging(self, container_id: str, kind: TrackKind, track_dirname: str) -> VideoContainer:
        async def drop() -> VideoContainer:
            container = await require_container(self.db, container_id, for_update=True)
            removed = drop_staging(container, kind, track_dirname)
            await save_container(self.db, container)
            if removed is not None:
                await schedule_dir_deletion(self.db, container, removed)
            return container

        container = await run_transaction(self.db, drop, operation="drop_track_staging")
        HANDLER_CALLS_TOTAL.labels(handler="drop_track_staging", result="success").inc()
        return container

    async def delete_container(self, container_id: str) -> bool:
        """
        Delete a container and schedule cleanup of everything it references.

        Returns:
            False when the container was already gone (nothing changed)
        """

        async def delete() -> bool:
            container = await get_container(self.db, container_id, for_update=True)
            if container is None:
                return False

            pending = playlist_state_machine.pending_deletions(container.master_playlist)
            if pending.in_flight_task is not None:
                await delete_task(
                    self.db,
                    pending.in_flight_task.kind,
                    {"container_id": container_id, "version": pending.in_flight_task.version},
                )
            for filename in pending.files:
                await schedule_file_deletion(self.db, container, filename)
            for dirname in pending.dirs:
                await schedule_dir_deletion(self.db, container, dirname)

            processing = container.processing
            if processing is not None:
                stage = processing.stage
                if isinstance(stage, UploadingState):
                    await insert_task(
                        self.db,
                        TaskKind.GCS_UPLOAD_FILE_DELETING,
                        {"filename": stage.filename},
                        {"upload_session_url": stage.session_url},
                    )
                elif isinstance(stage, FormattingState):
                    await delete_task(
                        self.db,
                        UPLOAD_KINDS[processing.kind].formatting_task_kind,
                        {"container_id": container_id, "filename": stage.filename},
                    )
                    await insert_task(self.db, TaskKind.GCS_KEY_DELETING, {"key": stage.filename})

            for track in container.all_tracks():
                await schedule_dir_deletion(self.db, container, track.track_dirname)

            await delete_container_row(self.db, container_id)
            return True

        deleted = await run_transaction(self.db, delete, operation="delete_container")
        HANDLER_CALLS_TOTAL.labels(handler="delete_container", result="success" if deleted else "noop").inc()
        if deleted:
            logger.info(f"Deleted container {container_id}")
        return deleted

    def _record(self, handler: str, result: ValidationResult) -> None:
        HANDLER_CALLS_TOTAL.labels(
            handler=handler,
            result="success" if result.success else "validation_error",
        ).inc()
