"""
Master Playlist State Machine - Explicit convergence states for a container's
published master playlist.

State Transition Diagram:

    SYNCED ──commit──> WRITING_TO_FILE ──file written──> SYNCING ──cache updated──> SYNCED
       ^                  │      ^                          │
       │                  │      └────────commit────────────┤
       │                  └──commit (version bump)──┘       │
       └────────────────────────────────────────────────────┘

Every commit bumps the version, whatever the current state, and carries all
pending deletions forward so that superseding an in-flight write never leaks
an orphaned playlist file or track directory. The in-flight task of the
superseded version is returned so the caller can delete it in the same
transaction that inserts the new one.

Usage:
    from api.playlist_state import MasterPlaylistStateMachine

    state_machine = MasterPlaylistStateMachine()
    transition = state_machine.advance_for_commit(container.master_playlist)
    container.master_playlist = transition.state

Note: Checks are point-in-time. The writing and syncing processors re-read the
container inside their final transaction and call is_current() before
applying a transition; a stale version is a Conflict, never an overwrite.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from api.enums import PlaylistStateName, TaskKind
from api.video_container import MasterPlaylist, Synced, Syncing, WritingToFile

logger = logging.getLogger(__name__)


@dataclass
class InFlightTask:
    """The background task driving a non-terminal playlist state."""

    kind: TaskKind
    version: int


@dataclass
class CommitTransition:
    """Result of advancing the playlist for a commit."""

    state: WritingToFile
    superseded_task: Optional[InFlightTask] = None


@dataclass
class PendingDeletions:
    """Everything a playlist state references that must be removed on delete."""

    files: List[str] = field(default_factory=list)
    dirs: List[str] = field(default_factory=list)
    in_flight_task: Optional[InFlightTask] = None


class MasterPlaylistStateMachine:
    """
    Stateless helper for master playlist transitions.

    All methods return new state objects; the input is never mutated.
    """

    def get_state(self, state: MasterPlaylist) -> PlaylistStateName:
        if isinstance(state, Synced):
            return PlaylistStateName.SYNCED
        if isinstance(state, Syncing):
            return PlaylistStateName.SYNCING
        return PlaylistStateName.WRITING_TO_FILE

    def in_flight_task(self, state: MasterPlaylist) -> Optional[InFlightTask]:
        """Task row that exists while the playlist is in this state, if any."""
        if isinstance(state, Syncing):
            return InFlightTask(TaskKind.VIDEO_CONTAINER_SYNCING, state.version)
        if isinstance(state, WritingToFile):
            return InFlightTask(TaskKind.VIDEO_CONTAINER_WRITING_TO_FILE, state.version)
        return None

    def advance_for_commit(
        self,
        state: MasterPlaylist,
        dirs_to_delete: Optional[List[str]] = None,
    ) -> CommitTransition:
        """
        Move to WritingToFile at version + 1.

        Args:
            state: Current playlist state
            dirs_to_delete: Track directories retired by this commit, appended
                after the ones already pending

        Returns:
            CommitTransition with the new state and the superseded in-flight
            task (None when advancing from Synced)
        """
        extra_dirs = list(dirs_to_delete or [])
        if isinstance(state, Synced):
            files = [state.filename]
            dirs: List[str] = []
        elif isinstance(state, Syncing):
            files = [*state.files_to_delete, state.filename]
            dirs = list(state.dirs_to_delete)
        else:
            files = list(state.files_to_delete)
            dirs = list(state.dirs_to_delete)

        new_state = WritingToFile(
            version=state.version + 1,
            files_to_delete=files,
            dirs_to_delete=[*dirs, *extra_dirs],
        )
        return CommitTransition(state=new_state, superseded_task=self.in_flight_task(state))

    def is_current(self, state: MasterPlaylist, expected: PlaylistStateName, version: int) -> bool:
        """True when the playlist is still in `expected` at `version`."""
        return self.get_state(state) == expected and state.version == version

    def to_syncing(self, state: WritingToFile, filename: str) -> Syncing:
        """WritingToFile -> Syncing once the new playlist file is written."""
        return Syncing(
            version=state.version,
            filename=filename,
            files_to_delete=list(state.files_to_delete),
            dirs_to_delete=list(state.dirs_to_delete),
        )

    def to_synced(self, state: Syncing) -> Tuple[Synced, List[str], List[str]]:
        """
        Syncing -> Synced once the product cache points at the new file.

        Returns the new state and the files and dirs now safe to delete.
        """
        return (
            Synced(version=state.version, filename=state.filename),
            list(state.files_to_delete),
            list(state.dirs_to_delete),
        )

    def pending_deletions(self, state: MasterPlaylist) -> PendingDeletions:
        """Files, dirs and in-flight task to clean up when the container goes away."""
        if isinstance(state, Synced):
            return PendingDeletions(files=[state.filename])
        if isinstance(state, Syncing):
            return PendingDeletions(
                files=[state.filename, *state.files_to_delete],
                dirs=list(state.dirs_to_delete),
                in_flight_task=self.in_flight_task(state),
            )
        return PendingDeletions(
            files=list(state.files_to_delete),
            dirs=list(state.dirs_to_delete),
            in_flight_task=self.in_flight_task(state),
        )


playlist_state_machine = MasterPlaylistStateMachine()
