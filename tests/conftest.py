"""
Pytest fixtures for video container service tests.
Provides a per-test SQLite database, fake storage/service clients and sample
containers.
"""

import os
import tempfile
from pathlib import Path
from typing import AsyncGenerator, Dict, List, Optional

import pytest
from databases import Database

# Set up test environment BEFORE importing config
_test_temp_dir = tempfile.mkdtemp()
os.environ["VCS_TEST_MODE"] = "1"
os.environ["VCS_DATABASE_URL"] = f"sqlite:///{Path(_test_temp_dir) / 'vcs_app.db'}"
os.environ["VCS_RATE_LIMIT_ENABLED"] = "false"
os.environ["VCS_SERVICE_API_SECRET"] = ""
os.environ["VCS_ALERT_WEBHOOK_URL"] = ""

from api.container_store import insert_container  # noqa: E402
from api.database import configure_database, create_tables  # noqa: E402
from api.resumable_upload import UploadProgress  # noqa: E402
from api.video_container import (  # noqa: E402
    AudioMetadata,
    AudioTrack,
    SubtitleMetadata,
    SubtitleTrack,
    VideoContainer,
    VideoMetadata,
    VideoTrack,
)


class FakeResumableClient:
    """In-memory stand-in for the primary store's resumable upload API."""

    def __init__(self):
        self.sessions: Dict[str, UploadProgress] = {}
        self.created: List[str] = []
        self.cancelled: List[str] = []
        self.deleted: List[tuple] = []
        self.fail_delete = False

    async def create_session(self, bucket, key, content_length, content_type=None) -> str:
        session_url = f"https://upload.test/session/{len(self.created) + 1}"
        self.created.append(key)
        self.sessions[session_url] = UploadProgress(url_valid=True, byte_offset=0)
        return session_url

    async def check_progress(self, session_url, content_length) -> UploadProgress:
        if not session_url or session_url not in self.sessions:
            return UploadProgress(url_valid=False, byte_offset=0)
        return self.sessions[session_url]

    def set_progress(self, session_url: str, byte_offset: int, url_valid: bool = True) -> None:
        self.sessions[session_url] = UploadProgress(url_valid=url_valid, byte_offset=byte_offset)

    async def cancel(self, session_url) -> None:
        self.cancelled.append(session_url)

    async def delete_and_cancel(self, bucket, key, session_url) -> None:
        if self.fail_delete:
            raise RuntimeError("primary store unavailable")
        self.deleted.append((key, session_url))

    async def close(self) -> None:
        pass


class FakeGcsClient:
    def __init__(self):
        self.deleted: List[str] = []

    async def delete_object(self, bucket, key) -> None:
        self.deleted.append(key)

    async def close(self) -> None:
        pass


class FakeR2Client:
    """Publish store kept in a dict of key -> bytes."""

    def __init__(self):
        self.objects: Dict[str, bytes] = {}
        self.deleted_keys: List[str] = []
        self.fail_upload = False
        self.fail_put = False

    async def put_text(self, key: str, text: str, content_type: Optional[str] = None) -> None:
        if self.fail_put:
            raise RuntimeError("publish store unavailable")
        self.objects[key] = text.encode("utf-8")

    async def get_text(self, key: str) -> str:
        return self.objects[key].decode("utf-8")

    async def delete_key(self, key: str) -> int:
        self.deleted_keys.append(key)
        keys = [k for k in self.objects if k == key or k.startswith(f"{key}/")]
        for key in keys:
            del self.objects[key]
        return len(keys)

    async def upload_directory(self, local_dir: Path, prefix: str) -> int:
        if self.fail_upload:
            raise RuntimeError("publish store unavailable")
        total_bytes = 0
        for path in sorted(p for p in Path(local_dir).rglob("*") if p.is_file()):
            data = path.read_bytes()
            self.objects[f"{prefix}/{path.relative_to(local_dir).as_posix()}"] = data
            total_bytes += len(data)
        return total_bytes


class FakeMeterClient:
    def __init__(self):
        self.calls: List[tuple] = []
        self.fail = False

    async def record_storage_start(self, account_id, r2_dirname, total_bytes, start_time_ms):
        if self.fail:
            raise RuntimeError("meter service unavailable")
        self.calls.append(("storage_start", account_id, r2_dirname, total_bytes, start_time_ms))

    async def record_storage_end(self, account_id, r2_dirname, end_time_ms):
        if self.fail:
            raise RuntimeError("meter service unavailable")
        self.calls.append(("storage_end", account_id, r2_dirname, end_time_ms))

    async def record_uploaded(self, account_id, gcs_key, total_bytes):
        if self.fail:
            raise RuntimeError("meter service unavailable")
        self.calls.append(("uploaded", account_id, gcs_key, total_bytes))

    async def close(self) -> None:
        pass


class FakeProductClient:
    def __init__(self):
        self.cached: List[dict] = []
        self.fail = False

    async def cache_video_container(self, **kwargs):
        if self.fail:
            raise RuntimeError("product service unavailable")
        self.cached.append(kwargs)

    async def close(self) -> None:
        pass


def make_committed_container(
    container_id: str = "c1",
    account_id: str = "acct1",
    audio: int = 1,
    subtitles: int = 0,
) -> VideoContainer:
    """A container with one committed video track plus committed audio/subtitle tracks."""
    container = VideoContainer.new(container_id, account_id, season_id="s1", episode_id="e1")
    container.video_tracks.append(
        VideoTrack(
            track_dirname="v1",
            total_bytes=100,
            committed=VideoMetadata(duration_sec=60, resolution="1920x1080"),
        )
    )
    for i in range(audio):
        container.audio_tracks.append(
            AudioTrack(
                track_dirname=f"a{i + 1}",
                total_bytes=10,
                committed=AudioMetadata(name=str(i + 1), is_default=i == 0),
            )
        )
    for i in range(subtitles):
        container.subtitle_tracks.append(
            SubtitleTrack(
                track_dirname=f"s{i + 1}",
                total_bytes=1,
                committed=SubtitleMetadata(name=f"lang{i + 1}", is_default=i == 0),
            )
        )
    return container


@pytest.fixture(scope="function")
def test_db_url(tmp_path: Path) -> str:
    """Create a SQLite database file with every table and return its URL."""
    db_url = f"sqlite:///{tmp_path / 'vcs_test.db'}"
    create_tables(db_url)
    return db_url


@pytest.fixture(scope="function")
async def test_database(test_db_url: str) -> AsyncGenerator[Database, None]:
    """Create a fresh test database for each test."""
    database = Database(test_db_url)
    await database.connect()
    await configure_database(database)

    yield database

    await database.disconnect()


@pytest.fixture
def resumable_client() -> FakeResumableClient:
    return FakeResumableClient()


@pytest.fixture
def gcs_client() -> FakeGcsClient:
    return FakeGcsClient()


@pytest.fixture
def r2_client() -> FakeR2Client:
    return FakeR2Client()


@pytest.fixture
def meter_client() -> FakeMeterClient:
    return FakeMeterClient()


@pytest.fixture
def product_client() -> FakeProductClient:
    return FakeProductClient()


@pytest.fixture(scope="function")
async def sample_container(test_database: Database) -> VideoContainer:
    """An empty container stored in the test database."""
    container = VideoContainer.new("c1", "acct1", season_id="s1", episode_id="e1")
    await insert_container(test_database, container)
    return container


@pytest.fixture(scope="function")
async def committed_container(test_database: Database) -> VideoContainer:
    """A stored container with one committed video and one committed audio track."""
    container = make_committed_container()
    await insert_container(test_database, container)
    return container


@pytest.fixture
def container_factory():
    """Build (but do not store) a container with committed tracks."""
    return make_committed_container
