"""
Request and response models for the service API.

JSON bodies use camelCase, matching the stored container document; models
accept either the camelCase alias or the snake_case field name.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from api.enums import TrackKind
from api.staging import ProposedTrack
from api.video_container import TRACK_CLASSES, staging_from_dict

# Identifiers are uuid hex strings; leave room for external account ids
MAX_ID_LENGTH = 64


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ContainerCreate(CamelModel):
    account_id: str = Field(..., min_length=1, max_length=MAX_ID_LENGTH)
    season_id: Optional[str] = Field(default=None, max_length=MAX_ID_LENGTH)
    episode_id: Optional[str] = Field(default=None, max_length=MAX_ID_LENGTH)


class StagingBody(CamelModel):
    to_add: Optional[Dict[str, Any]] = None
    to_delete: bool = False


class StagingEntry(CamelModel):
    track_dirname: str = Field(..., min_length=1, max_length=MAX_ID_LENGTH)
    staging: Optional[StagingBody] = None


class StagingDataRequest(CamelModel):
    """
    A full staging snapshot: one entry per existing track of each kind.

    Omitted lists are treated as empty, so they only match a container with
    no tracks of that kind.
    """

    video_tracks: List[StagingEntry] = Field(default_factory=list)
    audio_tracks: List[StagingEntry] = Field(default_factory=list)
    subtitle_tracks: List[StagingEntry] = Field(default_factory=list)

    def to_staging_data(self) -> Dict[TrackKind, List[ProposedTrack]]:
        entries = {
            TrackKind.VIDEO: self.video_tracks,
            TrackKind.AUDIO: self.audio_tracks,
            TrackKind.SUBTITLE: self.subtitle_tracks,
        }
        result: Dict[TrackKind, List[ProposedTrack]] = {}
        for kind, items in entries.items():
            metadata_cls = TRACK_CLASSES[kind].metadata_cls
            result[kind] = [
                ProposedTrack(
                    track_dirname=item.track_dirname,
                    staging=staging_from_dict(
                        item.staging.model_dump(by_alias=True) if item.staging else None,
                        metadata_cls,
                    ),
                )
                for item in items
            ]
        return result


class TrackUpdate(CamelModel):
    """Fields to stage on one track. Which fields apply depends on the track kind."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    is_default: Optional[bool] = None
    duration_sec: Optional[int] = Field(default=None, ge=0)
    resolution: Optional[str] = Field(default=None, max_length=32)

    def fields(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class StartUploadRequest(CamelModel):
    content_length: int = Field(..., gt=0)
    file_ext: str = Field(..., min_length=1, max_length=16)
    md5: str = Field(default="", max_length=64)

    @field_validator("file_ext")
    @classmethod
    def normalize_file_ext(cls, v: str) -> str:
        return v.strip().lower().lstrip(".")


class StartUploadResponse(CamelModel):
    session_url: str
    byte_offset: int


class CompleteUploadRequest(CamelModel):
    session_url: str = Field(..., min_length=1)


class ValidationResponse(CamelModel):
    success: bool
    error: Optional[str] = None
    container: Optional[Dict[str, Any]] = None


class DeleteContainerResponse(CamelModel):
    deleted: bool


class TaskListResponse(CamelModel):
    kind: str
    tasks: List[Dict[str, Any]]
    stuck_count: int = 0


class StatusResponse(CamelModel):
    status: str
    message: Optional[str] = None
