"""
Centralized enums for values used throughout the application.
Using str-based enums for database and JSON compatibility.
"""

from enum import Enum


class TrackKind(str, Enum):
    """Kinds of tracks held by a video container."""

    VIDEO = "video"
    AUDIO = "audio"
    SUBTITLE = "subtitle"


class ProcessingKind(str, Enum):
    """Upload/format pipelines. At most one is active per container."""

    MEDIA = "media"
    SUBTITLE = "subtitle"


class PlaylistStateName(str, Enum):
    """Master playlist convergence states."""

    SYNCED = "synced"
    SYNCING = "syncing"
    WRITING_TO_FILE = "writingToFile"


class TaskKind(str, Enum):
    """Kinds of rows in the task ledger."""

    MEDIA_FORMATTING = "media_formatting"
    SUBTITLE_FORMATTING = "subtitle_formatting"
    GCS_UPLOAD_FILE_DELETING = "gcs_upload_file_deleting"
    GCS_KEY_DELETING = "gcs_key_deleting"
    R2_KEY_DELETING = "r2_key_deleting"
    STORAGE_START_RECORDING = "storage_start_recording"
    STORAGE_END_RECORDING = "storage_end_recording"
    UPLOADED_RECORDING = "uploaded_recording"
    VIDEO_CONTAINER_WRITING_TO_FILE = "video_container_writing_to_file"
    VIDEO_CONTAINER_SYNCING = "video_container_syncing"


class ValidationError(str, Enum):
    """Commit/save rule violations. Returned as data, never raised."""

    NO_VIDEO_TRACK = "NO_VIDEO_TRACK"
    MORE_THAN_ONE_VIDEO_TRACKS = "MORE_THAN_ONE_VIDEO_TRACKS"
    NO_DEFAULT_AUDIO_TRACK = "NO_DEFAULT_AUDIO_TRACK"
    MORE_THAN_ONE_DEFAULT_AUDIO_TRACKS = "MORE_THAN_ONE_DEFAULT_AUDIO_TRACKS"
    TOO_MANY_AUDIO_TRACKS = "TOO_MANY_AUDIO_TRACKS"
    NO_DEFAULT_SUBTITLE_TRACK = "NO_DEFAULT_SUBTITLE_TRACK"
    MORE_THAN_ONE_DEFAULT_SUBTITLE_TRACKS = "MORE_THAN_ONE_DEFAULT_SUBTITLE_TRACKS"
    TOO_MANY_SUBTITLE_TRACKS = "TOO_MANY_SUBTITLE_TRACKS"
    TRACK_MISMATCH = "TRACK_MISMATCH"


class ProcessingFailureReason(str, Enum):
    """Why a formatting attempt was rejected."""

    MEDIA_FORMAT_INVALID = "MEDIA_FORMAT_INVALID"
    VIDEO_CODEC_REQUIRES_H264 = "VIDEO_CODEC_REQUIRES_H264"
    AUDIO_CODEC_REQUIRES_AAC = "AUDIO_CODEC_REQUIRES_AAC"
    AUDIO_TOO_MANY_TRACKS = "AUDIO_TOO_MANY_TRACKS"
    MEDIA_FORMAT_FAILURE = "MEDIA_FORMAT_FAILURE"
    SUBTITLE_ZIP_FORMAT_INVALID = "SUBTITLE_ZIP_FORMAT_INVALID"
