"""Tests for the video container document model."""

import json

import pytest

from api.enums import ProcessingFailureReason, ProcessingKind, TrackKind
from api.video_container import (
    AudioMetadata,
    AudioTrack,
    FailureRecord,
    FormattingState,
    Processing,
    StagingToAdd,
    StagingToDelete,
    Synced,
    Syncing,
    UploadingState,
    VideoContainer,
    VideoMetadata,
    VideoTrack,
    WritingToFile,
    master_playlist_from_dict,
    master_playlist_to_dict,
    staging_from_dict,
)


def _row(container: VideoContainer) -> dict:
    return {
        "container_id": container.container_id,
        "account_id": container.account_id,
        "season_id": container.season_id,
        "episode_id": container.episode_id,
        "data": container.to_json(),
    }


class TestNewContainer:
    """Tests for VideoContainer.new."""

    def test_starts_synced_at_version_zero(self):
        container = VideoContainer.new("c1", "acct1")
        assert container.master_playlist == Synced(version=0, filename="0")
        assert container.processing is None
        assert container.all_tracks() == []

    def test_storage_root_is_container_id(self):
        container = VideoContainer.new("c1", "acct1")
        assert container.storage_key("dir1") == "c1/dir1"

    def test_tracks_by_kind(self):
        container = VideoContainer.new("c1", "acct1")
        container.audio_tracks.append(AudioTrack(track_dirname="a1"))
        assert container.tracks(TrackKind.AUDIO)[0].track_dirname == "a1"
        assert container.tracks(TrackKind.VIDEO) == []


class TestDocumentEncoding:
    """The stored JSON document uses camelCase and survives a reload."""

    def test_keys_are_camel_case(self):
        container = VideoContainer.new("c1", "acct1")
        container.video_tracks.append(
            VideoTrack(track_dirname="v1", total_bytes=5, committed=VideoMetadata(10, "640x360"))
        )
        data = json.loads(container.to_json())
        assert data["storageRootPrefix"] == "c1"
        assert data["masterPlaylist"] == {"synced": {"version": 0, "filename": "0"}}
        assert data["videoTracks"][0] == {
            "trackDirname": "v1",
            "totalBytes": 5,
            "committed": {"durationSec": 10, "resolution": "640x360"},
        }

    def test_reload_keeps_tracks_staging_and_processing(self):
        container = VideoContainer.new("c1", "acct1", season_id="s1", episode_id="e1")
        container.audio_tracks.append(
            AudioTrack(
                track_dirname="a1",
                committed=AudioMetadata("1", True),
                staging=StagingToDelete(),
            )
        )
        container.audio_tracks.append(
            AudioTrack(track_dirname="a2", staging=StagingToAdd(AudioMetadata("2", False)))
        )
        container.processing = Processing(
            kind=ProcessingKind.MEDIA,
            stage=UploadingState(filename="f1", session_url="https://s", content_length=10, file_ext="mp4"),
        )
        container.last_processing_failures.append(
            FailureRecord(reasons=[ProcessingFailureReason.AUDIO_CODEC_REQUIRES_AAC], time_ms=123)
        )

        loaded = VideoContainer.from_row(_row(container))

        assert loaded == container
        assert isinstance(loaded.audio_tracks[0].staging, StagingToDelete)
        assert loaded.audio_tracks[1].staging.metadata == AudioMetadata("2", False)

    def test_to_dict_includes_identity(self):
        container = VideoContainer.new("c1", "acct1", season_id="s1")
        data = container.to_dict()
        assert data["containerId"] == "c1"
        assert data["accountId"] == "acct1"
        assert data["seasonId"] == "s1"
        assert data["episodeId"] is None


class TestMasterPlaylistEncoding:
    """Each playlist state encodes under its own tag."""

    @pytest.mark.parametrize(
        "state",
        [
            Synced(version=3, filename="p.m3u8"),
            Syncing(version=4, filename="q.m3u8", files_to_delete=["p.m3u8"], dirs_to_delete=["d1"]),
            WritingToFile(version=5, files_to_delete=["p.m3u8", "q.m3u8"], dirs_to_delete=[]),
        ],
    )
    def test_state_tags(self, state):
        encoded = master_playlist_to_dict(state)
        assert len(encoded) == 1
        assert master_playlist_from_dict(encoded) == state

    def test_unknown_state_rejected(self):
        with pytest.raises(ValueError):
            master_playlist_from_dict({"publishing": {"version": 1}})


class TestProcessing:
    """Processing is keyed by pipeline kind and stage."""

    def test_key_names(self):
        uploading = Processing(kind=ProcessingKind.SUBTITLE, stage=UploadingState(filename="f"))
        formatting = Processing(kind=ProcessingKind.MEDIA, stage=FormattingState(filename="f"))
        assert uploading.key == "subtitleUploading"
        assert formatting.key == "mediaFormatting"
        assert formatting.to_dict() == {"mediaFormatting": {"filename": "f"}}

    def test_from_dict(self):
        processing = Processing.from_dict({"subtitleFormatting": {"filename": "z"}})
        assert processing.kind == ProcessingKind.SUBTITLE
        assert processing.stage == FormattingState(filename="z")

    def test_unknown_processing_rejected(self):
        with pytest.raises(ValueError):
            Processing.from_dict({"audioUploading": {"filename": "z"}})


class TestStagingDecoding:
    def test_empty_is_none(self):
        assert staging_from_dict(None, VideoMetadata) is None
        assert staging_from_dict({}, VideoMetadata) is None

    def test_to_delete_wins(self):
        assert isinstance(staging_from_dict({"toDelete": True}, VideoMetadata), StagingToDelete)

    def test_to_add_uses_metadata_class(self):
        staging = staging_from_dict({"toAdd": {"durationSec": 7}}, VideoMetadata)
        assert staging.metadata == VideoMetadata(duration_sec=7, resolution="")
