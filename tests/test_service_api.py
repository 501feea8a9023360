"""
Tests for the service API endpoints.

Requests go through the real FastAPI app and lifespan against the SQLite
database at VCS_DATABASE_URL, with fake storage and service clients.
"""

from unittest.mock import patch

import pytest
import sqlalchemy as sa
from fastapi.testclient import TestClient

from api.container_store import get_container, insert_container
from api.database import create_tables, database, metadata
from api.enums import TaskKind
from api.service_api import app, build_services
from api.task_ledger import get_task, insert_task
from config import DATABASE_URL


@pytest.fixture
def fakes(resumable_client, gcs_client, r2_client, meter_client, product_client):
    return {
        "resumable_client": resumable_client,
        "gcs_client": gcs_client,
        "r2_client": r2_client,
        "meter_client": meter_client,
        "product_client": product_client,
    }


@pytest.fixture
def api_client(fakes):
    """TestClient over a clean app database, wired to fake clients."""
    create_tables(DATABASE_URL)
    engine = sa.create_engine(DATABASE_URL)
    with engine.begin() as conn:
        for table in reversed(metadata.sorted_tables):
            conn.execute(table.delete())
    engine.dispose()

    app.state.services = build_services(database, **fakes)
    with TestClient(app) as client:
        yield client


def _seed(client: TestClient, func, *args, **kwargs):
    """Run a database coroutine on the app's event loop."""
    return client.portal.call(lambda: func(database, *args, **kwargs))


@pytest.fixture
def seed_container(api_client, container_factory):
    """Store a committed container through the app database."""

    def seed(**kwargs):
        container = container_factory(**kwargs)
        _seed(api_client, insert_container, container)
        return container

    return seed


class TestHealthAndMetrics:
    def test_health(self, api_client):
        response = api_client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "checks": {"database": True}}

    def test_metrics(self, api_client):
        response = api_client.get("/metrics")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert "vcs_" in response.text

    def test_request_id_header(self, api_client):
        response = api_client.get("/health", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"


class TestContainerEndpoints:
    def test_create_and_get(self, api_client):
        response = api_client.post("/api/containers", json={"accountId": "acct1", "seasonId": "s1"})
        assert response.status_code == 201
        created = response.json()
        assert created["accountId"] == "acct1"
        assert created["seasonId"] == "s1"
        assert created["videoTracks"] == []
        assert created["masterPlaylist"] == {"synced": {"version": 0, "filename": "0"}}

        fetched = api_client.get(f"/api/containers/{created['containerId']}")
        assert fetched.status_code == 200
        assert fetched.json() == created

    def test_create_requires_account(self, api_client):
        response = api_client.post("/api/containers", json={})
        assert response.status_code == 422

    def test_get_missing(self, api_client):
        response = api_client.get("/api/containers/missing")
        assert response.status_code == 404
        assert "not found" in response.json()["detail"].lower()

    def test_delete_is_idempotent(self, api_client, seed_container):
        seed_container()

        first = api_client.delete("/api/containers/c1")
        second = api_client.delete("/api/containers/c1")

        assert first.json() == {"deleted": True}
        assert second.json() == {"deleted": False}
        assert _seed(api_client, get_container, "c1") is None
        assert _seed(api_client, get_task, TaskKind.R2_KEY_DELETING, {"key": "c1/v1"}) is not None

    def test_commit_empty_container_fails_validation(self, api_client):
        created = api_client.post("/api/containers", json={"accountId": "acct1"}).json()

        response = api_client.post(f"/api/containers/{created['containerId']}/commit")

        assert response.status_code == 200
        assert response.json()["success"] is False
        assert response.json()["error"] == "NO_VIDEO_TRACK"

    def test_update_then_commit(self, api_client, seed_container):
        seed_container()

        updated = api_client.patch("/api/containers/c1/tracks/audio/a1", json={"name": "English"})
        assert updated.status_code == 200
        assert updated.json()["audioTracks"][0]["staging"] == {"toAdd": {"name": "English", "isDefault": True}}

        committed = api_client.post("/api/containers/c1/commit")
        body = committed.json()
        assert body["success"] is True
        assert body["container"]["audioTracks"][0]["committed"]["name"] == "English"
        assert "writingToFile" in body["container"]["masterPlaylist"]

    def test_update_rejects_unknown_field(self, api_client, seed_container):
        seed_container()
        response = api_client.patch("/api/containers/c1/tracks/audio/a1", json={"codec": "aac"})
        assert response.status_code == 422

    def test_update_rejects_field_for_other_kind(self, api_client, seed_container):
        seed_container()
        response = api_client.patch("/api/containers/c1/tracks/audio/a1", json={"resolution": "1x1"})
        assert response.status_code == 400

    def test_delete_track_and_drop_staging(self, api_client, seed_container):
        seed_container(audio=2)

        deleted = api_client.delete("/api/containers/c1/tracks/audio/a2")
        assert deleted.json()["audioTracks"][1]["staging"] == {"toDelete": True}

        dropped = api_client.delete("/api/containers/c1/tracks/audio/a2/staging")
        assert "staging" not in dropped.json()["audioTracks"][1]

    def test_unknown_track(self, api_client, seed_container):
        seed_container()
        response = api_client.delete("/api/containers/c1/tracks/video/nope")
        assert response.status_code == 404

    def test_save_staging_mismatch(self, api_client, seed_container):
        seed_container()

        response = api_client.put("/api/containers/c1/staging", json={"videoTracks": [{"trackDirname": "v1"}]})

        assert response.status_code == 200
        assert response.json() == {"success": False, "error": "TRACK_MISMATCH", "container": None}

    def test_save_staging(self, api_client, seed_container):
        seed_container()

        response = api_client.put(
            "/api/containers/c1/staging",
            json={
                "videoTracks": [{"trackDirname": "v1"}],
                "audioTracks": [
                    {"trackDirname": "a1", "staging": {"toAdd": {"name": "Main", "isDefault": True}}},
                ],
            },
        )

        body = response.json()
        assert body["success"] is True
        assert body["container"]["audioTracks"][0]["staging"]["toAdd"]["name"] == "Main"


class TestUploadEndpoints:
    def test_start_complete_and_schedule_formatting(self, api_client, seed_container, resumable_client):
        seed_container()

        started = api_client.post(
            "/api/containers/c1/uploads/media/start",
            json={"contentLength": 100, "fileExt": ".MP4"},
        )
        assert started.status_code == 200
        session_url = started.json()["sessionUrl"]
        assert started.json()["byteOffset"] == 0

        container = api_client.get("/api/containers/c1").json()
        assert container["processing"]["mediaUploading"]["fileExt"] == "mp4"

        resumable_client.set_progress(session_url, 100)
        completed = api_client.post(
            "/api/containers/c1/uploads/media/complete",
            json={"sessionUrl": session_url},
        )
        assert completed.status_code == 200
        assert completed.json()["status"] == "ok"

        container = api_client.get("/api/containers/c1").json()
        assert "mediaFormatting" in container["processing"]

        tasks = api_client.get("/api/tasks/media_formatting").json()["tasks"]
        assert [t["containerId"] for t in tasks] == ["c1"]

    def test_resume_returns_offset(self, api_client, seed_container, resumable_client):
        seed_container()
        body = {"contentLength": 100, "fileExt": "zip"}

        first = api_client.post("/api/containers/c1/uploads/subtitle/start", json=body).json()
        resumable_client.set_progress(first["sessionUrl"], 40)
        second = api_client.post("/api/containers/c1/uploads/subtitle/start", json=body).json()

        assert second == {"sessionUrl": first["sessionUrl"], "byteOffset": 40}

    def test_wrong_file_type(self, api_client, seed_container):
        seed_container()
        response = api_client.post(
            "/api/containers/c1/uploads/subtitle/start",
            json={"contentLength": 100, "fileExt": "mp4"},
        )
        assert response.status_code == 400

    def test_incomplete_upload_rejected(self, api_client, seed_container):
        seed_container()
        started = api_client.post(
            "/api/containers/c1/uploads/media/start",
            json={"contentLength": 100, "fileExt": "mp4"},
        ).json()

        response = api_client.post(
            "/api/containers/c1/uploads/media/complete",
            json={"sessionUrl": started["sessionUrl"]},
        )
        assert response.status_code == 400
        assert "incomplete" in response.json()["detail"].lower()

    def test_cancel_upload(self, api_client, seed_container):
        seed_container()
        api_client.post("/api/containers/c1/uploads/media/start", json={"contentLength": 100, "fileExt": "mp4"})

        response = api_client.post("/api/containers/c1/uploads/media/cancel")

        assert response.status_code == 200
        assert api_client.get("/api/containers/c1").json()["processing"] is None
        tasks = api_client.get("/api/tasks/gcs_upload_file_deleting").json()["tasks"]
        assert len(tasks) == 1

    def test_cancel_formatting_when_not_formatting(self, api_client, seed_container):
        seed_container()
        response = api_client.post("/api/containers/c1/formatting/media/cancel")
        assert response.status_code == 400

    def test_unknown_processing_kind(self, api_client):
        response = api_client.post("/api/containers/c1/uploads/video/cancel")
        assert response.status_code == 422


class TestTaskEndpoints:
    def test_list_due_tasks(self, api_client):
        _seed(api_client, insert_task, TaskKind.R2_KEY_DELETING, {"key": "c1/d1"}, current_time_ms=0)

        response = api_client.get("/api/tasks/r2_key_deleting?limit=10")

        assert response.status_code == 200
        body = response.json()
        assert body["kind"] == "r2_key_deleting"
        assert body["stuckCount"] == 1
        assert body["tasks"][0]["key"] == "c1/d1"
        assert body["tasks"][0]["retryCount"] == 0

    def test_unknown_kind(self, api_client):
        assert api_client.get("/api/tasks/nope").status_code == 422

    def test_process_task(self, api_client, r2_client):
        r2_client.objects["c1/d1/o.m3u8"] = b"x"
        _seed(api_client, insert_task, TaskKind.R2_KEY_DELETING, {"key": "c1/d1"})

        response = api_client.post("/api/tasks/r2_key_deleting/process", json={"key": "c1/d1"})

        assert response.status_code == 200
        assert r2_client.objects == {}
        assert _seed(api_client, get_task, TaskKind.R2_KEY_DELETING, {"key": "c1/d1"}) is None

    def test_process_missing_task(self, api_client):
        response = api_client.post("/api/tasks/r2_key_deleting/process", json={"key": "gone"})
        assert response.status_code == 404

    def test_process_missing_key_field(self, api_client):
        response = api_client.post("/api/tasks/r2_key_deleting/process", json={})
        assert response.status_code == 400

    def test_process_failure_is_500_and_keeps_task(self, api_client, meter_client):
        meter_client.fail = True
        _seed(
            api_client,
            insert_task,
            TaskKind.UPLOADED_RECORDING,
            {"gcs_key": "f1"},
            {"account_id": "acct1", "total_bytes": 1},
        )

        response = api_client.post("/api/tasks/uploaded_recording/process", json={"gcsKey": "f1"})

        assert response.status_code == 500
        assert response.json()["detail"] == "Failed to process task"
        task = _seed(api_client, get_task, TaskKind.UPLOADED_RECORDING, {"gcs_key": "f1"})
        assert task["retry_count"] == 1

    def test_service_secret(self, api_client):
        with patch("api.service_api.SERVICE_API_SECRET", "s3cret"):
            assert api_client.get("/api/tasks/r2_key_deleting").status_code == 401
            wrong = api_client.get("/api/tasks/r2_key_deleting", headers={"X-Service-Secret": "nope"})
            assert wrong.status_code == 403
            right = api_client.get("/api/tasks/r2_key_deleting", headers={"X-Service-Secret": "s3cret"})
            assert right.status_code == 200
