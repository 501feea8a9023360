"""
Video container aggregate.

A container holds one video track, any number of audio and subtitle tracks,
the master playlist convergence state and the active upload/format pipeline.
The whole aggregate is persisted as one JSON document in
video_containers.data; the dataclasses below are its in-memory form.

Tagged unions (master playlist state, track staging, processing stage) are
modelled as one dataclass per case so that exactly one case can be active:

    masterPlaylist: Synced | Syncing | WritingToFile
    staging:        StagingToAdd | StagingToDelete | None
    processing:     Processing(kind, UploadingState | FormattingState) | None

JSON keys are camelCase so the stored document and the HTTP payloads share
one vocabulary.
"""

import copy
import json
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Type, Union

from api.enums import ProcessingFailureReason, ProcessingKind, TrackKind

# =============================================================================
# Track metadata
# =============================================================================


@dataclass
class VideoMetadata:
    duration_sec: int = 0
    resolution: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"durationSec": self.duration_sec, "resolution": self.resolution}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "VideoMetadata":
        return cls(
            duration_sec=int(data.get("durationSec", 0) or 0),
            resolution=data.get("resolution", "") or "",
        )


@dataclass
class AudioMetadata:
    name: str = ""
    is_default: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "isDefault": self.is_default}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AudioMetadata":
        return cls(name=data.get("name", "") or "", is_default=bool(data.get("isDefault", False)))


@dataclass
class SubtitleMetadata:
    name: str = ""
    is_default: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "isDefault": self.is_default}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SubtitleMetadata":
        return cls(name=data.get("name", "") or "", is_default=bool(data.get("isDefault", False)))


TrackMetadata = Union[VideoMetadata, AudioMetadata, SubtitleMetadata]

# =============================================================================
# Track staging
# =============================================================================


@dataclass
class StagingToAdd:
    """Proposed add or update. Folded into `committed` on commit."""

    metadata: TrackMetadata


@dataclass
class StagingToDelete:
    """Proposed deletion of a committed track."""

    pass


TrackStaging = Union[StagingToAdd, StagingToDelete]


def staging_to_dict(staging: Optional[TrackStaging]) -> Optional[Dict[str, Any]]:
    if staging is None:
        return None
    if isinstance(staging, StagingToDelete):
        return {"toDelete": True}
    return {"toAdd": staging.metadata.to_dict()}


def staging_from_dict(
    data: Optional[Mapping[str, Any]],
    metadata_cls: Type,
) -> Optional[TrackStaging]:
    if not data:
        return None
    if data.get("toDelete"):
        return StagingToDelete()
    if data.get("toAdd") is not None:
        return StagingToAdd(metadata=metadata_cls.from_dict(data["toAdd"]))
    return None


# =============================================================================
# Tracks
# =============================================================================


@dataclass
class Track:
    """
    One elementary stream and its publish-store directory.

    A track row is kept iff committed is not None or staging is not None.
    """

    track_dirname: str
    total_bytes: int = 0
    committed: Optional[TrackMetadata] = None
    staging: Optional[TrackStaging] = None

    kind = TrackKind.VIDEO
    metadata_cls: ClassVar[Type] = VideoMetadata

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "trackDirname": self.track_dirname,
            "totalBytes": self.total_bytes,
        }
        if self.committed is not None:
            result["committed"] = self.committed.to_dict()
        if self.staging is not None:
            result["staging"] = staging_to_dict(self.staging)
        return result

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Track":
        committed = data.get("committed")
        return cls(
            track_dirname=data["trackDirname"],
            total_bytes=int(data.get("totalBytes", 0) or 0),
            committed=cls.metadata_cls.from_dict(committed) if committed is not None else None,
            staging=staging_from_dict(data.get("staging"), cls.metadata_cls),
        )


@dataclass
class VideoTrack(Track):
    kind = TrackKind.VIDEO
    metadata_cls: ClassVar[Type] = VideoMetadata


@dataclass
class AudioTrack(Track):
    kind = TrackKind.AUDIO
    metadata_cls: ClassVar[Type] = AudioMetadata


@dataclass
class SubtitleTrack(Track):
    kind = TrackKind.SUBTITLE
    metadata_cls: ClassVar[Type] = SubtitleMetadata


TRACK_CLASSES: Dict[TrackKind, Type[Track]] = {
    TrackKind.VIDEO: VideoTrack,
    TrackKind.AUDIO: AudioTrack,
    TrackKind.SUBTITLE: SubtitleTrack,
}

# =============================================================================
# Master playlist states
# =============================================================================


@dataclass
class Synced:
    """Currently published playlist."""

    version: int
    filename: str


@dataclass
class Syncing:
    """A new playlist file is written and being promoted."""

    version: int
    filename: str
    files_to_delete: List[str] = field(default_factory=list)
    dirs_to_delete: List[str] = field(default_factory=list)


@dataclass
class WritingToFile:
    """A new playlist file is being generated."""

    version: int
    files_to_delete: List[str] = field(default_factory=list)
    dirs_to_delete: List[str] = field(default_factory=list)


MasterPlaylist = Union[Synced, Syncing, WritingToFile]


def master_playlist_to_dict(state: MasterPlaylist) -> Dict[str, Any]:
    if isinstance(state, Synced):
        return {"synced": {"version": state.version, "filename": state.filename}}
    if isinstance(state, Syncing):
        return {
            "syncing": {
                "version": state.version,
                "filename": state.filename,
                "filesToDelete": list(state.files_to_delete),
                "dirsToDelete": list(state.dirs_to_delete),
            }
        }
    return {
        "writingToFile": {
            "version": state.version,
            "filesToDelete": list(state.files_to_delete),
            "dirsToDelete": list(state.dirs_to_delete),
        }
    }


def master_playlist_from_dict(data: Mapping[str, Any]) -> MasterPlaylist:
    if "synced" in data:
        d = data["synced"]
        return Synced(version=int(d["version"]), filename=d.get("filename", ""))
    if "syncing" in data:
        d = data["syncing"]
        return Syncing(
            version=int(d["version"]),
            filename=d.get("filename", ""),
            files_to_delete=list(d.get("filesToDelete", [])),
            dirs_to_delete=list(d.get("dirsToDelete", [])),
        )
    if "writingToFile" in data:
        d = data["writingToFile"]
        return WritingToFile(
            version=int(d["version"]),
            files_to_delete=list(d.get("filesToDelete", [])),
            dirs_to_delete=list(d.get("dirsToDelete", [])),
        )
    raise ValueError(f"Unknown master playlist state: {sorted(data.keys())}")


# =============================================================================
# Processing
# =============================================================================


@dataclass
class UploadingState:
    """Resumable upload in progress to the primary store."""

    filename: str
    session_url: str = ""
    content_length: int = 0
    file_ext: str = ""
    md5: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "filename": self.filename,
            "sessionUrl": self.session_url,
            "contentLength": self.content_length,
            "fileExt": self.file_ext,
            "md5": self.md5,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "UploadingState":
        return cls(
            filename=data["filename"],
            session_url=data.get("sessionUrl", "") or "",
            content_length=int(data.get("contentLength", 0) or 0),
            file_ext=data.get("fileExt", "") or "",
            md5=data.get("md5", "") or "",
        )


@dataclass
class FormattingState:
    """Uploaded file waiting for (or undergoing) formatting."""

    filename: str

    def to_dict(self) -> Dict[str, Any]:
        return {"filename": self.filename}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FormattingState":
        return cls(filename=data["filename"])


@dataclass
class Processing:
    kind: ProcessingKind
    stage: Union[UploadingState, FormattingState]

    @property
    def key(self) -> str:
        suffix = "Uploading" if isinstance(self.stage, UploadingState) else "Formatting"
        return f"{self.kind.value}{suffix}"

    def to_dict(self) -> Dict[str, Any]:
        return {self.key: self.stage.to_dict()}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Processing":
        for kind in ProcessingKind:
            if f"{kind.value}Uploading" in data:
                return cls(kind=kind, stage=UploadingState.from_dict(data[f"{kind.value}Uploading"]))
            if f"{kind.value}Formatting" in data:
                return cls(kind=kind, stage=FormattingState.from_dict(data[f"{kind.value}Formatting"]))
        raise ValueError(f"Unknown processing state: {sorted(data.keys())}")


@dataclass
class FailureRecord:
    reasons: List[ProcessingFailureReason]
    time_ms: int

    def to_dict(self) -> Dict[str, Any]:
        return {"reasons": [r.value for r in self.reasons], "timeMs": self.time_ms}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FailureRecord":
        return cls(
            reasons=[ProcessingFailureReason(r) for r in data.get("reasons", [])],
            time_ms=int(data.get("timeMs", 0)),
        )


# =============================================================================
# Container
# =============================================================================


@dataclass
class VideoContainer:
    container_id: str
    account_id: str
    storage_root_prefix: str
    master_playlist: MasterPlaylist
    season_id: Optional[str] = None
    episode_id: Optional[str] = None
    processing: Optional[Processing] = None
    video_tracks: List[VideoTrack] = field(default_factory=list)
    audio_tracks: List[AudioTrack] = field(default_factory=list)
    subtitle_tracks: List[SubtitleTrack] = field(default_factory=list)
    last_processing_failures: List[FailureRecord] = field(default_factory=list)

    @classmethod
    def new(
        cls,
        container_id: str,
        account_id: str,
        season_id: Optional[str] = None,
        episode_id: Optional[str] = None,
    ) -> "VideoContainer":
        """A fresh container: no tracks, playlist Synced at version 0."""
        return cls(
            container_id=container_id,
            account_id=account_id,
            season_id=season_id,
            episode_id=episode_id,
            storage_root_prefix=container_id,
            master_playlist=Synced(version=0, filename="0"),
        )

    def tracks(self, kind: TrackKind) -> List[Track]:
        if kind == TrackKind.VIDEO:
            return self.video_tracks
        if kind == TrackKind.AUDIO:
            return self.audio_tracks
        return self.subtitle_tracks

    def set_tracks(self, kind: TrackKind, tracks: List[Track]) -> None:
        if kind == TrackKind.VIDEO:
            self.video_tracks = tracks
        elif kind == TrackKind.AUDIO:
            self.audio_tracks = tracks
        else:
            self.subtitle_tracks = tracks

    def all_tracks(self) -> List[Track]:
        return [*self.video_tracks, *self.audio_tracks, *self.subtitle_tracks]

    def storage_key(self, name: str) -> str:
        """Publish-store key of a file or directory under this container."""
        return f"{self.storage_root_prefix}/{name}"

    def copy(self) -> "VideoContainer":
        return copy.deepcopy(self)

    def data_dict(self) -> Dict[str, Any]:
        """The JSON document stored in video_containers.data."""
        return {
            "storageRootPrefix": self.storage_root_prefix,
            "masterPlaylist": master_playlist_to_dict(self.master_playlist),
            "processing": self.processing.to_dict() if self.processing else None,
            "videoTracks": [t.to_dict() for t in self.video_tracks],
            "audioTracks": [t.to_dict() for t in self.audio_tracks],
            "subtitleTracks": [t.to_dict() for t in self.subtitle_tracks],
            "lastProcessingFailures": [f.to_dict() for f in self.last_processing_failures],
        }

    def to_json(self) -> str:
        return json.dumps(self.data_dict(), sort_keys=True)

    def to_dict(self) -> Dict[str, Any]:
        """Full API representation."""
        return {
            "containerId": self.container_id,
            "accountId": self.account_id,
            "seasonId": self.season_id,
            "episodeId": self.episode_id,
            **self.data_dict(),
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "VideoContainer":
        """Build from a video_containers row."""
        data = json.loads(row["data"])
        processing = data.get("processing")
        return cls(
            container_id=row["container_id"],
            account_id=row["account_id"],
            season_id=row["season_id"],
            episode_id=row["episode_id"],
            storage_root_prefix=data["storageRootPrefix"],
            master_playlist=master_playlist_from_dict(data["masterPlaylist"]),
            processing=Processing.from_dict(processing) if processing else None,
            video_tracks=[VideoTrack.from_dict(t) for t in data.get("videoTracks", [])],
            audio_tracks=[AudioTrack.from_dict(t) for t in data.get("audioTracks", [])],
            subtitle_tracks=[SubtitleTrack.from_dict(t) for t in data.get("subtitleTracks", [])],
            last_processing_failures=[
                FailureRecord.from_dict(f) for f in data.get("lastProcessingFailures", [])
            ],
        )
