"""
Track staging and commit rules.

Pure functions over a VideoContainer; nothing here touches the database.
Handlers in api.container_handlers call these inside a transaction and turn
the returned directory names into task ledger rows.

A track row is kept iff it has committed metadata or staging. Every function
that can break that invariant returns the dirnames of the rows it removed so
the caller can schedule their cleanup.
"""

import dataclasses
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

from api.enums import TrackKind, ValidationError
from api.errors import BadRequestError, NotFoundError
from api.video_container import (
    StagingToAdd,
    StagingToDelete,
    Track,
    TrackStaging,
    VideoContainer,
)

# Metadata fields callers may change per track kind
UPDATABLE_FIELDS: Dict[TrackKind, Tuple[str, ...]] = {
    TrackKind.VIDEO: ("duration_sec", "resolution"),
    TrackKind.AUDIO: ("name", "is_default"),
    TrackKind.SUBTITLE: ("name", "is_default"),
}


@dataclass
class ProposedTrack:
    """One element of a bulk staging snapshot."""

    track_dirname: str
    staging: Optional[TrackStaging] = None


def find_track(container: VideoContainer, kind: TrackKind, track_dirname: str) -> Track:
    for track in container.tracks(kind):
        if track.track_dirname == track_dirname:
            return track
    raise NotFoundError(f"{kind.value.capitalize()} track {track_dirname} is not found.")


def update_track(
    container: VideoContainer,
    kind: TrackKind,
    track_dirname: str,
    fields: Mapping[str, Any],
) -> Track:
    """
    Stage an add/update on a track.

    Seeds toAdd from committed when there is no staging or when the track was
    staged for deletion, then overwrites the supplied fields. Fields with a
    None value are left untouched.
    """
    track = find_track(container, kind, track_dirname)
    unknown = set(fields) - set(UPDATABLE_FIELDS[kind])
    if unknown:
        raise BadRequestError(f"Unknown {kind.value} track fields: {', '.join(sorted(unknown))}")

    if isinstance(track.staging, StagingToAdd):
        base = track.staging.metadata
    elif track.committed is not None:
        base = track.committed
    else:
        base = track.metadata_cls()

    changes = {name: value for name, value in fields.items() if value is not None}
    track.staging = StagingToAdd(metadata=dataclasses.replace(base, **changes))
    return track


def delete_track(container: VideoContainer, kind: TrackKind, track_dirname: str) -> Track:
    """Stage deletion of a committed track."""
    track = find_track(container, kind, track_dirname)
    if track.committed is None:
        raise BadRequestError(
            f"{kind.value.capitalize()} track {track_dirname} is not committed. Drop its staging instead."
        )
    track.staging = StagingToDelete()
    return track


def drop_staging(container: VideoContainer, kind: TrackKind, track_dirname: str) -> Optional[str]:
    """
    Discard a track's staging.

    Returns:
        The track dirname when the row was removed because it was never
        committed, otherwise None.
    """
    track = find_track(container, kind, track_dirname)
    if track.staging is None:
        raise BadRequestError(f"{kind.value.capitalize()} track {track_dirname} has no staging.")
    track.staging = None
    if track.committed is None:
        container.set_tracks(kind, [t for t in container.tracks(kind) if t is not track])
        return track.track_dirname
    return None


def commit_staging(container: VideoContainer) -> List[str]:
    """
    Fold staging into committed for every track.

    Returns:
        Dirnames of tracks retired by this commit (toDelete, or rows left with
        no metadata at all).
    """
    retired: List[str] = []
    for kind in TrackKind:
        kept: List[Track] = []
        for track in container.tracks(kind):
            if isinstance(track.staging, StagingToDelete):
                retired.append(track.track_dirname)
                continue
            if isinstance(track.staging, StagingToAdd):
                track.committed = track.staging.metadata
            track.staging = None
            if track.committed is None:
                retired.append(track.track_dirname)
                continue
            kept.append(track)
        container.set_tracks(kind, kept)
    return retired


def validate_committed(
    container: VideoContainer,
    max_audio_tracks: int,
    max_subtitle_tracks: int,
) -> Optional[ValidationError]:
    """Check the committed track sets. Returns the first rule violated, if any."""
    video = [t for t in container.video_tracks if t.committed is not None]
    if not video:
        return ValidationError.NO_VIDEO_TRACK
    if len(video) > 1:
        return ValidationError.MORE_THAN_ONE_VIDEO_TRACKS

    audio = [t for t in container.audio_tracks if t.committed is not None]
    if audio:
        defaults = sum(1 for t in audio if t.committed.is_default)
        if defaults == 0:
            return ValidationError.NO_DEFAULT_AUDIO_TRACK
        if defaults > 1:
            return ValidationError.MORE_THAN_ONE_DEFAULT_AUDIO_TRACKS
        if len(audio) > max_audio_tracks:
            return ValidationError.TOO_MANY_AUDIO_TRACKS

    subtitles = [t for t in container.subtitle_tracks if t.committed is not None]
    if subtitles:
        defaults = sum(1 for t in subtitles if t.committed.is_default)
        if defaults == 0:
            return ValidationError.NO_DEFAULT_SUBTITLE_TRACK
        if defaults > 1:
            return ValidationError.MORE_THAN_ONE_DEFAULT_SUBTITLE_TRACKS
        if len(subtitles) > max_subtitle_tracks:
            return ValidationError.TOO_MANY_SUBTITLE_TRACKS

    return None


def merge_staging_data(
    container: VideoContainer,
    proposed: Mapping[TrackKind, List[ProposedTrack]],
) -> Tuple[Optional[ValidationError], List[str]]:
    """
    Replace every track's staging with a caller-supplied snapshot.

    The snapshot must list exactly the stored tracks, in order, for every
    kind; a kind missing from `proposed` is treated as an empty list.
    Nothing is modified on mismatch.

    Returns:
        (TRACK_MISMATCH, []) on mismatch, otherwise (None, removed dirnames)
        for rows left with neither committed nor staging.
    """
    for kind in TrackKind:
        stored = [t.track_dirname for t in container.tracks(kind)]
        offered = [p.track_dirname for p in proposed.get(kind, [])]
        if stored != offered:
            return ValidationError.TRACK_MISMATCH, []

    removed: List[str] = []
    for kind in TrackKind:
        kept: List[Track] = []
        for track, proposal in zip(container.tracks(kind), proposed.get(kind, [])):
            track.staging = proposal.staging
            if track.committed is None and track.staging is None:
                removed.append(track.track_dirname)
                continue
            kept.append(track)
        container.set_tracks(kind, kept)
    return None, removed
