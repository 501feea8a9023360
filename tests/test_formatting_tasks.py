"""Tests for the media and subtitle formatting processors."""

import threading
import zipfile

import pytest

from api.common import now_ms
from api.container_store import get_container, insert_container
from api.database import r2_keys
from api.enums import ProcessingFailureReason, ProcessingKind, TaskKind
from api.errors import ConflictError
from api.formatting_tasks import FormattingTaskProcessors
from api.task_ledger import get_task, insert_task, list_due_tasks
from api.video_container import (
    AudioMetadata,
    FormattingState,
    Processing,
    StagingToAdd,
    SubtitleMetadata,
    VideoMetadata,
)
from worker.formatter import (
    FormattingFailure,
    MediaProbeResult,
    SubtitleFormatter,
    VideoInfo,
)

FAR_FUTURE_MS = 2**62


async def _tasks(db, kind):
    return await list_due_tasks(db, kind, current_time_ms=FAR_FUTURE_MS)


class FakeMediaFormatter:
    """Returns a canned probe result and writes small HLS directories."""

    def __init__(self, probe_result: MediaProbeResult, failure: FormattingFailure = None):
        self.probe_result = probe_result
        self.failure = failure
        self.probed = []

    async def probe(self, source, existing_audio_tracks=0, max_audio_tracks=10):
        self.probed.append((source.name, existing_audio_tracks, max_audio_tracks))
        return self.probe_result

    async def format(self, source, video_dir, audio_dirs):
        if self.failure is not None:
            raise self.failure
        if video_dir is not None:
            video_dir.mkdir(parents=True, exist_ok=True)
            (video_dir / "master.m3u8").write_text("#EXTM3U\no.m3u8\n")
            (video_dir / "o.m3u8").write_text("#EXTM3U\n0.ts\n")
            (video_dir / "0.ts").write_bytes(b"v" * 100)
        for audio_dir in audio_dirs:
            audio_dir.mkdir(parents=True, exist_ok=True)
            (audio_dir / "o.m3u8").write_text("#EXTM3U\n0.ts\n")
            (audio_dir / "0.ts").write_bytes(b"a" * 10)


async def _formatting_container(db, kind: ProcessingKind, filename: str, container):
    container.processing = Processing(kind=kind, stage=FormattingState(filename=filename))
    await insert_container(db, container)
    task_kind = TaskKind.MEDIA_FORMATTING if kind == ProcessingKind.MEDIA else TaskKind.SUBTITLE_FORMATTING
    await insert_task(db, task_kind, {"container_id": container.container_id, "filename": filename})


def _processors(db, r2_client, tmp_path, media_formatter=None):
    return FormattingTaskProcessors(
        db,
        r2_client,
        media_formatter or FakeMediaFormatter(MediaProbeResult()),
        SubtitleFormatter(),
        source_dir=tmp_path / "src",
        work_dir=tmp_path / "work",
    )


class ThreadRecordingSubtitleFormatter(SubtitleFormatter):
    """Records the thread each blocking file step runs on."""

    def __init__(self):
        self.threads = []

    def extract(self, source, work_dir):
        self.threads.append(threading.get_ident())
        return super().extract(source, work_dir)

    def format(self, subtitle_file, out_dir):
        self.threads.append(threading.get_ident())
        super().format(subtitle_file, out_dir)


class TestMediaFormatting:
    @pytest.mark.asyncio
    async def test_success_adds_staged_tracks(self, test_database, r2_client, tmp_path, container_factory):
        await _formatting_container(test_database, ProcessingKind.MEDIA, "f1", container_factory(audio=0))
        formatter = FakeMediaFormatter(
            MediaProbeResult(video=VideoInfo(duration_sec=120, resolution="1280x720"), audio_count=2)
        )
        processors = _processors(test_database, r2_client, tmp_path, formatter)

        await processors.process_media_formatting({"container_id": "c1", "filename": "f1"}, "[test]")

        stored = await get_container(test_database, "c1")
        assert stored.processing is None
        new_video = stored.video_tracks[-1]
        assert new_video.staging == StagingToAdd(VideoMetadata(duration_sec=120, resolution="1280x720"))
        assert new_video.committed is None
        assert new_video.total_bytes == len("#EXTM3U\no.m3u8\n") + len("#EXTM3U\n0.ts\n") + 100
        assert [t.staging.metadata for t in stored.audio_tracks] == [
            AudioMetadata(name="1", is_default=True),
            AudioMetadata(name="2", is_default=False),
        ]

        dirnames = [new_video.track_dirname, *(t.track_dirname for t in stored.audio_tracks)]
        assert f"c1/{new_video.track_dirname}/master.m3u8" in r2_client.objects
        assert await get_task(test_database, TaskKind.MEDIA_FORMATTING, {"container_id": "c1", "filename": "f1"}) is None
        assert [t["key"] for t in await _tasks(test_database, TaskKind.GCS_KEY_DELETING)] == ["f1"]
        assert await _tasks(test_database, TaskKind.R2_KEY_DELETING) == []
        starts = await _tasks(test_database, TaskKind.STORAGE_START_RECORDING)
        assert {t["r2Dirname"] for t in starts} == {f"c1/{d}" for d in dirnames}
        assert all(t["accountId"] == "acct1" for t in starts)
        claimed = {r["key"] for r in await test_database.fetch_all(r2_keys.select())}
        assert claimed == {f"c1/{d}" for d in dirnames}
        assert not (tmp_path / "work" / "c1-f1").exists()

    @pytest.mark.asyncio
    async def test_new_audio_tracks_follow_existing_ones(self, test_database, r2_client, tmp_path, container_factory):
        await _formatting_container(test_database, ProcessingKind.MEDIA, "f1", container_factory(audio=1))
        formatter = FakeMediaFormatter(MediaProbeResult(audio_count=1))
        processors = _processors(test_database, r2_client, tmp_path, formatter)

        await processors.process_media_formatting({"container_id": "c1", "filename": "f1"}, "[test]")

        stored = await get_container(test_database, "c1")
        assert len(stored.video_tracks) == 1
        assert stored.audio_tracks[1].staging.metadata == AudioMetadata(name="2", is_default=False)
        assert formatter.probed == [("f1", 1, 10)]

    @pytest.mark.asyncio
    async def test_probe_failures_reported(self, test_database, r2_client, tmp_path, container_factory):
        await _formatting_container(test_database, ProcessingKind.MEDIA, "f1", container_factory())
        formatter = FakeMediaFormatter(
            MediaProbeResult(
                failures=[
                    ProcessingFailureReason.VIDEO_CODEC_REQUIRES_H264,
                    ProcessingFailureReason.AUDIO_CODEC_REQUIRES_AAC,
                ]
            )
        )
        processors = _processors(test_database, r2_client, tmp_path, formatter)

        await processors.process_media_formatting({"container_id": "c1", "filename": "f1"}, "[test]")

        stored = await get_container(test_database, "c1")
        assert stored.processing is None
        assert stored.last_processing_failures[0].reasons == [
            ProcessingFailureReason.VIDEO_CODEC_REQUIRES_H264,
            ProcessingFailureReason.AUDIO_CODEC_REQUIRES_AAC,
        ]
        assert await _tasks(test_database, TaskKind.MEDIA_FORMATTING) == []
        assert [t["key"] for t in await _tasks(test_database, TaskKind.GCS_KEY_DELETING)] == ["f1"]
        assert await test_database.fetch_all(r2_keys.select()) == []

    @pytest.mark.asyncio
    async def test_format_failure_reported_and_dirs_cleaned(self, test_database, r2_client, tmp_path, container_factory):
        await _formatting_container(test_database, ProcessingKind.MEDIA, "f1", container_factory())
        formatter = FakeMediaFormatter(
            MediaProbeResult(video=VideoInfo(10, "640x360"), audio_count=1),
            failure=FormattingFailure([ProcessingFailureReason.MEDIA_FORMAT_FAILURE]),
        )
        processors = _processors(test_database, r2_client, tmp_path, formatter)

        await processors.process_media_formatting({"container_id": "c1", "filename": "f1"}, "[test]")

        stored = await get_container(test_database, "c1")
        assert stored.last_processing_failures[0].reasons == [ProcessingFailureReason.MEDIA_FORMAT_FAILURE]
        due_now = await list_due_tasks(test_database, TaskKind.R2_KEY_DELETING)
        assert len(due_now) == 2

    @pytest.mark.asyncio
    async def test_upload_failure_reschedules_cleanup(self, test_database, r2_client, tmp_path, container_factory):
        await _formatting_container(test_database, ProcessingKind.MEDIA, "f1", container_factory())
        r2_client.fail_upload = True
        formatter = FakeMediaFormatter(MediaProbeResult(video=VideoInfo(10, "640x360")))
        processors = _processors(test_database, r2_client, tmp_path, formatter)

        with pytest.raises(RuntimeError):
            await processors.process_media_formatting({"container_id": "c1", "filename": "f1"}, "[test]")

        stored = await get_container(test_database, "c1")
        assert stored.processing is not None
        cleanups = await _tasks(test_database, TaskKind.R2_KEY_DELETING)
        assert len(cleanups) == 1
        assert cleanups[0]["executionTimeMs"] < now_ms() + 24 * 60 * 60 * 1000
        assert await _tasks(test_database, TaskKind.MEDIA_FORMATTING) != []
        assert not (tmp_path / "work" / "c1-f1").exists()

    @pytest.mark.asyncio
    async def test_not_formatting_conflicts(self, test_database, r2_client, tmp_path, committed_container):
        processors = _processors(test_database, r2_client, tmp_path)
        with pytest.raises(ConflictError):
            await processors.process_media_formatting({"container_id": "c1", "filename": "f1"}, "[test]")


class TestSubtitleFormatting:
    def _write_zip(self, tmp_path, name, files):
        src = tmp_path / "src"
        src.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(src / name, "w") as archive:
            for filename, content in files.items():
                archive.writestr(filename, content)

    @pytest.mark.asyncio
    async def test_success_adds_subtitle_tracks(self, test_database, r2_client, tmp_path, container_factory):
        self._write_zip(tmp_path, "z1", {"en.vtt": "WEBVTT\n", "fr.vtt": "WEBVTT\n\n"})
        await _formatting_container(test_database, ProcessingKind.SUBTITLE, "z1", container_factory())
        processors = _processors(test_database, r2_client, tmp_path)

        await processors.process_subtitle_formatting({"container_id": "c1", "filename": "z1"}, "[test]")

        stored = await get_container(test_database, "c1")
        assert stored.processing is None
        assert [t.staging.metadata for t in stored.subtitle_tracks] == [
            SubtitleMetadata(name="en", is_default=True),
            SubtitleMetadata(name="fr", is_default=False),
        ]
        first = stored.subtitle_tracks[0].track_dirname
        assert r2_client.objects[f"c1/{first}/subtitle.vtt"] == b"WEBVTT\n"
        assert f"c1/{first}/o.m3u8" in r2_client.objects
        assert len(await _tasks(test_database, TaskKind.STORAGE_START_RECORDING)) == 2
        assert await _tasks(test_database, TaskKind.SUBTITLE_FORMATTING) == []

    @pytest.mark.asyncio
    async def test_existing_subtitles_keep_default(self, test_database, r2_client, tmp_path, container_factory):
        self._write_zip(tmp_path, "z1", {"de.srt.vtt": "WEBVTT\n"})
        await _formatting_container(test_database, ProcessingKind.SUBTITLE, "z1", container_factory(subtitles=1))
        processors = _processors(test_database, r2_client, tmp_path)

        await processors.process_subtitle_formatting({"container_id": "c1", "filename": "z1"}, "[test]")

        stored = await get_container(test_database, "c1")
        assert stored.subtitle_tracks[1].staging.metadata == SubtitleMetadata(name="de", is_default=False)

    @pytest.mark.asyncio
    async def test_invalid_zip_reported(self, test_database, r2_client, tmp_path, container_factory):
        (tmp_path / "src").mkdir()
        (tmp_path / "src" / "z1").write_bytes(b"not a zip")
        await _formatting_container(test_database, ProcessingKind.SUBTITLE, "z1", container_factory())
        processors = _processors(test_database, r2_client, tmp_path)

        await processors.process_subtitle_formatting({"container_id": "c1", "filename": "z1"}, "[test]")

        stored = await get_container(test_database, "c1")
        assert stored.processing is None
        assert stored.last_processing_failures[0].reasons == [ProcessingFailureReason.SUBTITLE_ZIP_FORMAT_INVALID]
        assert [t["key"] for t in await _tasks(test_database, TaskKind.GCS_KEY_DELETING)] == ["z1"]

    @pytest.mark.asyncio
    async def test_zip_work_runs_off_event_loop(self, test_database, r2_client, tmp_path, container_factory):
        self._write_zip(tmp_path, "z1", {"en.vtt": "WEBVTT\n", "fr.vtt": "WEBVTT\n"})
        await _formatting_container(test_database, ProcessingKind.SUBTITLE, "z1", container_factory())
        formatter = ThreadRecordingSubtitleFormatter()
        processors = _processors(test_database, r2_client, tmp_path)
        processors.subtitle_formatter = formatter

        await processors.process_subtitle_formatting({"container_id": "c1", "filename": "z1"}, "[test]")

        assert len(formatter.threads) == 3
        assert threading.get_ident() not in formatter.threads
        assert not (tmp_path / "work" / "c1-z1").exists()
