"""
Persistence for video containers and the storage index tables.

Also holds the cleanup-scheduling helpers shared by the request handlers and
task processors, so that "retire a track directory" means the same two ledger
rows everywhere.
"""

import logging
from typing import Optional

from databases import Database

from api.common import now_ms
from api.database import gcs_files, r2_keys, video_containers
from api.enums import TaskKind
from api.errors import NotFoundError
from api.task_ledger import insert_task
from api.video_container import VideoContainer

logger = logging.getLogger(__name__)


async def get_container(db: Database, container_id: str, for_update: bool = False) -> Optional[VideoContainer]:
    """
    Load a container.

    Inside a transaction pass for_update=True: the row lock serializes every
    read-modify-write of the same container (SQLite ignores the clause and
    serializes writers anyway).
    """
    query = video_containers.select().where(video_containers.c.container_id == container_id)
    if for_update:
        query = query.with_for_update()
    row = await db.fetch_one(query)
    if row is None:
        return None
    return VideoContainer.from_row(row)


async def require_container(db: Database, container_id: str, for_update: bool = False) -> VideoContainer:
    container = await get_container(db, container_id, for_update=for_update)
    if container is None:
        raise NotFoundError("Video container is not found.")
    return container


async def insert_container(db: Database, container: VideoContainer) -> None:
    await db.execute(
        video_containers.insert().values(
            container_id=container.container_id,
            account_id=container.account_id,
            season_id=container.season_id,
            episode_id=container.episode_id,
            data=container.to_json(),
            created_time_ms=now_ms(),
        )
    )


async def save_container(db: Database, container: VideoContainer) -> None:
    await db.execute(
        video_containers.update()
        .where(video_containers.c.container_id == container.container_id)
        .values(data=container.to_json())
    )


async def delete_container_row(db: Database, container_id: str) -> None:
    await db.execute(video_containers.delete().where(video_containers.c.container_id == container_id))


# =============================================================================
# Storage index
# =============================================================================


async def insert_gcs_file(db: Database, filename: str) -> None:
    await db.execute(gcs_files.insert().values(filename=filename))


async def delete_gcs_file(db: Database, filename: str) -> None:
    await db.execute(gcs_files.delete().where(gcs_files.c.filename == filename))


async def insert_r2_key(db: Database, key: str) -> None:
    await db.execute(r2_keys.insert().values(key=key))


async def delete_r2_key(db: Database, key: str) -> None:
    await db.execute(r2_keys.delete().where(r2_keys.c.key == key))


# =============================================================================
# Cleanup scheduling
# =============================================================================


async def schedule_file_deletion(db: Database, container: VideoContainer, filename: str) -> None:
    """Delete a publish-store file (e.g. a retired master playlist)."""
    await insert_task(db, TaskKind.R2_KEY_DELETING, {"key": container.storage_key(filename)})


async def schedule_dir_deletion(db: Database, container: VideoContainer, dirname: str) -> None:
    """
    Delete a track directory and stop billing its storage.

    The directory may already have consumed storage quota, so an end
    recording is emitted alongside the deletion.
    """
    key = container.storage_key(dirname)
    await insert_task(
        db,
        TaskKind.STORAGE_END_RECORDING,
        {"r2_dirname": key},
        {"account_id": container.account_id, "end_time_ms": now_ms()},
    )
    await insert_task(db, TaskKind.R2_KEY_DELETING, {"key": key})
