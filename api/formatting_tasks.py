"""
Processors for media_formatting and subtitle_formatting tasks.

Flow for both kinds:

    1. validate the source (probe / unzip); a rejected file is reported as a
       FailureRecord on the container and its task is finished
    2. allocate track dirnames and claim them with r2_keys rows plus an
       r2_key_deleting task delayed by FORMATTING_CLEANUP_DELAY_MS
    3. format into a local work dir and upload each dir to the publish store
    4. finalize: append the new tracks as staged adds, start storage billing
       for each dir, delete the delayed cleanups

Any unexpected error after step 2 pulls the delayed cleanups in to
now + CLEANUP_ON_ERROR_DELAY_MS and re-raises, so the task is retried and
the half-uploaded dirs are eventually removed.
"""

import asyncio
import logging
import shutil
from pathlib import Path
from typing import Any, Dict, List

from databases import Database

from api.common import new_id, now_ms
from api.container_store import get_container, insert_r2_key, save_container
from api.db_retry import run_transaction
from api.enums import ProcessingFailureReason, TaskKind
from api.errors import ConflictError
from api.storage_clients import R2Client
from api.task_ledger import delay_task, delete_task, insert_task
from api.upload_handlers import MEDIA, SUBTITLE, UploadKind
from api.video_container import (
    AudioMetadata,
    AudioTrack,
    FailureRecord,
    StagingToAdd,
    SubtitleMetadata,
    SubtitleTrack,
    VideoContainer,
    VideoMetadata,
    VideoTrack,
)
from config import (
    CLEANUP_ON_ERROR_DELAY_MS,
    FORMATTER_WORK_DIR,
    FORMATTING_CLEANUP_DELAY_MS,
    GCS_VIDEO_MOUNTED_LOCAL_DIR,
    MAX_NUM_OF_AUDIO_TRACKS,
)
from worker.formatter import FormattingFailure, MediaFormatter, SubtitleFormatter

logger = logging.getLogger(__name__)


class FormattingTaskProcessors:
    def __init__(
        self,
        db: Database,
        r2_client: R2Client,
        media_formatter: MediaFormatter,
        subtitle_formatter: SubtitleFormatter,
        source_dir: Path = GCS_VIDEO_MOUNTED_LOCAL_DIR,
        work_dir: Path = FORMATTER_WORK_DIR,
        max_audio_tracks: int = MAX_NUM_OF_AUDIO_TRACKS,
    ):
        self.db = db
        self.r2_client = r2_client
        self.media_formatter = media_formatter
        self.subtitle_formatter = subtitle_formatter
        self.source_dir = Path(source_dir)
        self.work_dir = Path(work_dir)
        self.max_audio_tracks = max_audio_tracks

    async def _get_valid_container(
        self, kind: UploadKind, container_id: str, filename: str, for_update: bool = False
    ) -> VideoContainer:
        container = await get_container(self.db, container_id, for_update=for_update)
        if container is None:
            raise ConflictError(f"Video container {container_id} is not found.")
        formatting = kind.get_formatting(container)
        if formatting is None or formatting.filename != filename:
            raise ConflictError(f"Video container {container_id} is not {kind.name} formatting {filename}.")
        return container

    async def _report_failures(
        self,
        kind: UploadKind,
        container_id: str,
        filename: str,
        reasons: List[ProcessingFailureReason],
        prefix: str,
    ) -> None:
        logger.info(f"{prefix} Reporting failures: {', '.join(r.value for r in reasons)}")

        async def report() -> None:
            container = await self._get_valid_container(kind, container_id, filename, for_update=True)
            container.processing = None
            container.last_processing_failures.append(FailureRecord(reasons=list(reasons), time_ms=now_ms()))
            await save_container(self.db, container)
            await delete_task(self.db, kind.formatting_task_kind, {"container_id": container_id, "filename": filename})
            await insert_task(self.db, TaskKind.GCS_KEY_DELETING, {"key": filename})

        await run_transaction(self.db, report, operation=f"report_{kind.name}_formatting_failures")

    async def _claim_dirs(self, container: VideoContainer, dirnames: List[str], prefix: str) -> None:
        logger.info(f"{prefix} Claiming dirs [{', '.join(dirnames)}] with a delayed cleanup.")

        async def claim() -> None:
            for dirname in dirnames:
                key = container.storage_key(dirname)
                await insert_r2_key(self.db, key)
                await insert_task(
                    self.db,
                    TaskKind.R2_KEY_DELETING,
                    {"key": key},
                    delay_ms=FORMATTING_CLEANUP_DELAY_MS,
                )

        await run_transaction(self.db, claim, operation="claim_track_dirs")

    async def _reschedule_cleanup(self, container: VideoContainer, dirnames: List[str], delay_ms: int) -> None:
        execution_time_ms = now_ms() + delay_ms

        async def reschedule() -> None:
            for dirname in dirnames:
                await delay_task(
                    self.db,
                    TaskKind.R2_KEY_DELETING,
                    {"key": container.storage_key(dirname)},
                    execution_time_ms,
                )

        await run_transaction(self.db, reschedule, operation="cleanup_track_dirs")

    async def _finalize(
        self,
        kind: UploadKind,
        container_id: str,
        filename: str,
        add_tracks,
        dir_sizes: Dict[str, int],
        prefix: str,
    ) -> None:
        logger.info(f"{prefix} Task is being finalized.")

        async def finalize() -> None:
            container = await self._get_valid_container(kind, container_id, filename, for_update=True)
            container.processing = None
            add_tracks(container)
            await save_container(self.db, container)
            await delete_task(self.db, kind.formatting_task_kind, {"container_id": container_id, "filename": filename})
            await insert_task(self.db, TaskKind.GCS_KEY_DELETING, {"key": filename})
            start_time_ms = now_ms()
            for dirname, total_bytes in dir_sizes.items():
                key = container.storage_key(dirname)
                await insert_task(
                    self.db,
                    TaskKind.STORAGE_START_RECORDING,
                    {"r2_dirname": key},
                    {
                        "account_id": container.account_id,
                        "total_bytes": total_bytes,
                        "start_time_ms": start_time_ms,
                    },
                )
                await delete_task(self.db, TaskKind.R2_KEY_DELETING, {"key": key})

        await run_transaction(self.db, finalize, operation=f"finalize_{kind.name}_formatting")

    async def _upload_dirs(self, container: VideoContainer, local_root: Path, dirnames: List[str]) -> Dict[str, int]:
        sizes: Dict[str, int] = {}
        for dirname in dirnames:
            sizes[dirname] = await self.r2_client.upload_directory(local_root / dirname, container.storage_key(dirname))
        return sizes

    async def process_media_formatting(self, task: Dict[str, Any], prefix: str) -> None:
        container_id = task["container_id"]
        filename = task["filename"]
        container = await self._get_valid_container(MEDIA, container_id, filename)
        source = self.source_dir / filename

        logger.info(f"{prefix} Validating codecs and extracting metadata.")
        probe = await self.media_formatter.probe(source, len(container.audio_tracks), self.max_audio_tracks)
        if probe.failures:
            await self._report_failures(MEDIA, container_id, filename, probe.failures, prefix)
            return

        video_dirs = [new_id()] if probe.video is not None else []
        audio_dirs = [new_id() for _ in range(probe.audio_count)]
        dirnames = [*video_dirs, *audio_dirs]
        await self._claim_dirs(container, dirnames, prefix)

        local_root = self.work_dir / f"{container_id}-{filename}"
        try:
            logger.info(f"{prefix} Start HLS formatting.")
            try:
                await self.media_formatter.format(
                    source,
                    local_root / video_dirs[0] if video_dirs else None,
                    [local_root / d for d in audio_dirs],
                )
            except FormattingFailure as e:
                await self._report_failures(MEDIA, container_id, filename, e.reasons, prefix)
                await self._reschedule_cleanup(container, dirnames, 0)
                return

            dir_sizes = await self._upload_dirs(container, local_root, dirnames)

            def add_tracks(current: VideoContainer) -> None:
                for dirname in video_dirs:
                    current.video_tracks.append(
                        VideoTrack(
                            track_dirname=dirname,
                            total_bytes=dir_sizes[dirname],
                            staging=StagingToAdd(
                                VideoMetadata(
                                    duration_sec=probe.video.duration_sec,
                                    resolution=probe.video.resolution,
                                )
                            ),
                        )
                    )
                existing = len(current.audio_tracks)
                for i, dirname in enumerate(audio_dirs):
                    current.audio_tracks.append(
                        AudioTrack(
                            track_dirname=dirname,
                            total_bytes=dir_sizes[dirname],
                            staging=StagingToAdd(
                                AudioMetadata(name=str(existing + i + 1), is_default=existing + i == 0)
                            ),
                        )
                    )

            await self._finalize(MEDIA, container_id, filename, add_tracks, dir_sizes, prefix)
        except Exception:
            logger.warning(f"{prefix} Encountered error. Cleaning up dirs [{', '.join(dirnames)}].")
            await self._reschedule_cleanup(container, dirnames, CLEANUP_ON_ERROR_DELAY_MS)
            raise
        finally:
            await asyncio.to_thread(shutil.rmtree, local_root, ignore_errors=True)

    async def process_subtitle_formatting(self, task: Dict[str, Any], prefix: str) -> None:
        container_id = task["container_id"]
        filename = task["filename"]
        container = await self._get_valid_container(SUBTITLE, container_id, filename)
        source = self.source_dir / filename
        local_root = self.work_dir / f"{container_id}-{filename}"
        extract_dir = local_root / "extracted"

        try:
            try:
                subtitle_files = await asyncio.to_thread(self.subtitle_formatter.extract, source, extract_dir)
            except FormattingFailure as e:
                await self._report_failures(SUBTITLE, container_id, filename, e.reasons, prefix)
                return

            dirs_and_files = [(new_id(), path) for path in subtitle_files]
            dirnames = [dirname for dirname, _ in dirs_and_files]
            await self._claim_dirs(container, dirnames, prefix)

            try:
                for dirname, path in dirs_and_files:
                    await asyncio.to_thread(self.subtitle_formatter.format, path, local_root / dirname)
                dir_sizes = await self._upload_dirs(container, local_root, dirnames)

                def add_tracks(current: VideoContainer) -> None:
                    existing = len(current.subtitle_tracks)
                    for i, (dirname, path) in enumerate(dirs_and_files):
                        current.subtitle_tracks.append(
                            SubtitleTrack(
                                track_dirname=dirname,
                                total_bytes=dir_sizes[dirname],
                                staging=StagingToAdd(
                                    SubtitleMetadata(
                                        name=self.subtitle_formatter.track_name(path),
                                        is_default=existing + i == 0,
                                    )
                                ),
                            )
                        )

                await self._finalize(SUBTITLE, container_id, filename, add_tracks, dir_sizes, prefix)
            except Exception:
                logger.warning(f"{prefix} Encountered error. Cleaning up dirs [{', '.join(dirnames)}].")
                await self._reschedule_cleanup(container, dirnames, CLEANUP_ON_ERROR_DELAY_MS)
                raise
        finally:
            await asyncio.to_thread(shutil.rmtree, local_root, ignore_errors=True)
