"""
Processors for the master playlist convergence tasks.

    video_container_writing_to_file   WritingToFile{v} -> Syncing{v}
    video_container_syncing           Syncing{v}       -> Synced{v}

Both re-read the container in their final transaction and require the
playlist to still be in the expected state at the same version; a commit
that landed mid-flight makes the stale processor lose with a Conflict.
"""

import logging
from typing import Any, Dict

from databases import Database

from api.common import new_id, now_ms
from api.container_store import (
    get_container,
    insert_r2_key,
    save_container,
    schedule_dir_deletion,
    schedule_file_deletion,
)
from api.db_retry import run_transaction
from api.enums import PlaylistStateName, TaskKind
from api.errors import ConflictError, InternalError
from api.playlist_state import playlist_state_machine
from api.service_clients import ProductServiceClient
from api.storage_clients import R2Client
from api.task_ledger import delay_task, delete_task, insert_task
from api.video_container import VideoContainer
from config import CLEANUP_ON_ERROR_DELAY_MS, PLAYLIST_CLEANUP_DELAY_MS

logger = logging.getLogger(__name__)

# Names written by the formatter inside every track directory
LOCAL_MASTER_PLAYLIST_NAME = "master.m3u8"
LOCAL_PLAYLIST_NAME = "o.m3u8"


def _committed_video_track(container: VideoContainer):
    for track in container.video_tracks:
        if track.committed is not None:
            return track
    raise InternalError(f"Container {container.container_id} has no committed video track.")


def build_media_lines(container: VideoContainer) -> list:
    """One #EXT-X-MEDIA line per committed audio and subtitle track."""
    lines = []
    for track in container.audio_tracks:
        if track.committed is None:
            continue
        lines.append(
            f'#EXT-X-MEDIA:TYPE=AUDIO,GROUP-ID="audio",NAME="{track.committed.name}",'
            f'DEFAULT={"YES" if track.committed.is_default else "NO"},AUTOSELECT=NO,'
            f'URI="{track.track_dirname}/{LOCAL_PLAYLIST_NAME}"'
        )
    for track in container.subtitle_tracks:
        if track.committed is None:
            continue
        lines.append(
            f'#EXT-X-MEDIA:TYPE=SUBTITLES,GROUP-ID="subs",NAME="{track.committed.name}",'
            f'DEFAULT={"YES" if track.committed.is_default else "NO"},AUTOSELECT=NO,'
            f'URI="{track.track_dirname}/{LOCAL_PLAYLIST_NAME}"'
        )
    return lines


class PlaylistTaskProcessors:
    def __init__(self, db: Database, r2_client: R2Client, product_client: ProductServiceClient):
        self.db = db
        self.r2_client = r2_client
        self.product_client = product_client

    async def _get_valid_container(
        self,
        container_id: str,
        expected: PlaylistStateName,
        version: int,
        for_update: bool = False,
    ) -> VideoContainer:
        container = await get_container(self.db, container_id, for_update=for_update)
        if container is None:
            raise ConflictError(f"Video container {container_id} is not found.")
        if not playlist_state_machine.is_current(container.master_playlist, expected, version):
            raise ConflictError(
                f"Video container {container_id} is not {expected.value} at version {version}."
            )
        return container

    async def build_master_playlist(self, container: VideoContainer) -> str:
        """The video track's master playlist plus the audio/subtitle media lines."""
        video_track = _committed_video_track(container)
        video_master = await self.r2_client.get_text(
            container.storage_key(f"{video_track.track_dirname}/{LOCAL_MASTER_PLAYLIST_NAME}")
        )
        video_master = video_master.replace(
            LOCAL_PLAYLIST_NAME,
            f"{video_track.track_dirname}/{LOCAL_PLAYLIST_NAME}",
            1,
        )
        return "\n".join([video_master, *build_media_lines(container)])

    async def process_writing_to_file(self, task: Dict[str, Any], prefix: str) -> None:
        container_id = task["container_id"]
        version = task["version"]
        container = await self._get_valid_container(container_id, PlaylistStateName.WRITING_TO_FILE, version)

        filename = f"{new_id()}.m3u8"
        key = container.storage_key(filename)

        async def claim_file() -> None:
            await insert_r2_key(self.db, key)
            await insert_task(self.db, TaskKind.R2_KEY_DELETING, {"key": key}, delay_ms=PLAYLIST_CLEANUP_DELAY_MS)

        logger.info(f"{prefix} Claiming master playlist {filename} with a delayed cleanup.")
        await run_transaction(self.db, claim_file, operation="claim_master_playlist")

        try:
            content = await self.build_master_playlist(container)
            await self.r2_client.put_text(key, content)

            async def finalize() -> None:
                current = await self._get_valid_container(
                    container_id, PlaylistStateName.WRITING_TO_FILE, version, for_update=True
                )
                current.master_playlist = playlist_state_machine.to_syncing(current.master_playlist, filename)
                await save_container(self.db, current)
                await insert_task(
                    self.db,
                    TaskKind.VIDEO_CONTAINER_SYNCING,
                    {"container_id": container_id, "version": version},
                )
                await delete_task(
                    self.db,
                    TaskKind.VIDEO_CONTAINER_WRITING_TO_FILE,
                    {"container_id": container_id, "version": version},
                )
                await delete_task(self.db, TaskKind.R2_KEY_DELETING, {"key": key})

            logger.info(f"{prefix} Finalizing master playlist {filename}.")
            await run_transaction(self.db, finalize, operation="finalize_writing_to_file")
        except Exception:
            logger.warning(f"{prefix} Encountered error. Cleaning up master playlist {filename}.")

            async def reschedule_cleanup() -> None:
                await delay_task(
                    self.db,
                    TaskKind.R2_KEY_DELETING,
                    {"key": key},
                    now_ms() + CLEANUP_ON_ERROR_DELAY_MS,
                )

            await run_transaction(self.db, reschedule_cleanup, operation="cleanup_master_playlist")
            raise

    async def process_syncing(self, task: Dict[str, Any], prefix: str) -> None:
        container_id = task["container_id"]
        version = task["version"]
        container = await self._get_valid_container(container_id, PlaylistStateName.SYNCING, version)
        video_track = _committed_video_track(container)

        logger.info(f"{prefix} Syncing video container to the product service.")
        await self.product_client.cache_video_container(
            container_id=container_id,
            season_id=container.season_id,
            episode_id=container.episode_id,
            version=version,
            r2_root_dirname=container.storage_root_prefix,
            master_playlist_filename=container.master_playlist.filename,
            duration_sec=video_track.committed.duration_sec,
            resolution=video_track.committed.resolution,
            audio_tracks=[t.committed.to_dict() for t in container.audio_tracks if t.committed is not None],
            subtitle_tracks=[t.committed.to_dict() for t in container.subtitle_tracks if t.committed is not None],
        )

        async def finalize() -> None:
            current = await self._get_valid_container(
                container_id, PlaylistStateName.SYNCING, version, for_update=True
            )
            synced, files, dirs = playlist_state_machine.to_synced(current.master_playlist)
            current.master_playlist = synced
            await save_container(self.db, current)
            await delete_task(
                self.db,
                TaskKind.VIDEO_CONTAINER_SYNCING,
                {"container_id": container_id, "version": version},
            )
            for filename in files:
                await schedule_file_deletion(self.db, current, filename)
            for dirname in dirs:
                await schedule_dir_deletion(self.db, current, dirname)

        logger.info(f"{prefix} Task is being finalized.")
        await run_transaction(self.db, finalize, operation="finalize_syncing")
