"""
Service API - FastAPI app for video containers and the task ledger.

Provides endpoints for:
- Container create/get/delete
- Track staging (update, stage delete, drop, bulk save) and commit
- Resumable media/subtitle upload start, complete and cancel
- Formatting cancel
- Task ledger: list due tasks and process one task (called by worker.task_poller)

Run with: uvicorn api.service_api:app --host 0.0.0.0 --port 9100

Request handlers never call slow external services inside a transaction.
Anything that must happen after a commit is written to the task ledger in
the same transaction and done later by a task processor.
"""

import hmac
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, Optional

from databases import Database
from fastapi import Body, Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded

from api.common import RequestIDMiddleware, check_health, get_real_ip, rate_limit_exceeded_handler
from api.container_handlers import ContainerHandlers
from api.database import configure_database, database
from api.enums import ProcessingKind, TaskKind, TrackKind
from api.exception_utils import handle_api_exceptions
from api.formatting_tasks import FormattingTaskProcessors
from api.metrics import TASKS_DUE, TASKS_STUCK, get_metrics, init_app_info
from api.playlist_tasks import PlaylistTaskProcessors
from api.resumable_upload import ResumableUploadClient
from api.schemas import (
    CompleteUploadRequest,
    ContainerCreate,
    DeleteContainerResponse,
    StagingDataRequest,
    StartUploadRequest,
    StartUploadResponse,
    StatusResponse,
    TaskListResponse,
    TrackUpdate,
    ValidationResponse,
)
from api.service_clients import MeterClient, ProductServiceClient
from api.storage_clients import GcsClient, R2Client
from api.task_handlers import TaskHandlers
from api.upload_handlers import UPLOAD_KINDS, UploadHandlers
from config import (
    CORS_ORIGINS,
    RATE_LIMIT_DEFAULT,
    RATE_LIMIT_ENABLED,
    RATE_LIMIT_STORAGE_URL,
    RATE_LIMIT_TASKS,
    RATE_LIMIT_UPLOAD,
    SERVICE_API_SECRET,
)
from worker.formatter import MediaFormatter, SubtitleFormatter

logger = logging.getLogger(__name__)

# Initialize rate limiter
limiter = Limiter(
    key_func=get_real_ip,
    storage_uri=RATE_LIMIT_STORAGE_URL if RATE_LIMIT_ENABLED else None,
    enabled=RATE_LIMIT_ENABLED,
)


@dataclass
class Services:
    """Handlers plus the outbound clients they own."""

    containers: ContainerHandlers
    uploads: UploadHandlers
    tasks: TaskHandlers
    resumable_client: ResumableUploadClient
    gcs_client: GcsClient
    meter_client: MeterClient
    product_client: ProductServiceClient

    async def close(self) -> None:
        await self.resumable_client.close()
        await self.gcs_client.close()
        await self.meter_client.close()
        await self.product_client.close()


def build_services(
    db: Database,
    resumable_client: Optional[ResumableUploadClient] = None,
    gcs_client: Optional[GcsClient] = None,
    r2_client: Optional[R2Client] = None,
    meter_client: Optional[MeterClient] = None,
    product_client: Optional[ProductServiceClient] = None,
) -> Services:
    """Wire every handler and task processor against one database."""
    resumable_client = resumable_client or ResumableUploadClient()
    gcs_client = gcs_client or GcsClient()
    r2_client = r2_client or R2Client()
    meter_client = meter_client or MeterClient()
    product_client = product_client or ProductServiceClient()

    formatting = FormattingTaskProcessors(db, r2_client, MediaFormatter(), SubtitleFormatter())
    playlist = PlaylistTaskProcessors(db, r2_client, product_client)
    tasks = TaskHandlers(
        db,
        gcs_client,
        resumable_client,
        r2_client,
        meter_client,
        extra_processors={
            TaskKind.MEDIA_FORMATTING: formatting.process_media_formatting,
            TaskKind.SUBTITLE_FORMATTING: formatting.process_subtitle_formatting,
            TaskKind.VIDEO_CONTAINER_WRITING_TO_FILE: playlist.process_writing_to_file,
            TaskKind.VIDEO_CONTAINER_SYNCING: playlist.process_syncing,
        },
    )
    return Services(
        containers=ContainerHandlers(db),
        uploads=UploadHandlers(db, resumable_client),
        tasks=tasks,
        resumable_client=resumable_client,
        gcs_client=gcs_client,
        meter_client=meter_client,
        product_client=product_client,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage database connection and outbound client lifecycle."""
    await database.connect()
    await configure_database()
    init_app_info()
    if getattr(app.state, "services", None) is None:
        app.state.services = build_services(database)
    logger.info("Service API started - database connected")

    yield

    await app.state.services.close()
    app.state.services = None
    await database.disconnect()
    logger.info("Service API shutdown complete")


app = FastAPI(
    title="Video Container Service API",
    description="Video containers, resumable uploads and the task ledger",
    version="1.0.0",
    lifespan=lifespan,
)

# Request ID middleware for tracing
app.add_middleware(RequestIDMiddleware)

# Note: allow_credentials must be False with wildcard origins per CORS spec
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials="*" not in CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)

# Rate limiting setup
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)


def get_services(request: Request) -> Services:
    return request.app.state.services


async def verify_service_secret(x_service_secret: Optional[str] = Header(None, alias="X-Service-Secret")):
    """
    Verify the shared secret on task endpoints.

    Set VCS_SERVICE_API_SECRET to enable the check; the task poller sends the
    same value. When unset the endpoints are open (local development).

    Raises:
        HTTPException 401: If X-Service-Secret header is missing
        HTTPException 403: If X-Service-Secret header is invalid
    """
    if not SERVICE_API_SECRET:
        return
    if not x_service_secret:
        raise HTTPException(status_code=401, detail="X-Service-Secret header required")
    if not hmac.compare_digest(x_service_secret, SERVICE_API_SECRET):
        raise HTTPException(status_code=403, detail="Invalid service secret")


def _upload_kind(processing_kind: ProcessingKind):
    return UPLOAD_KINDS[processing_kind]


# =============================================================================
# Health and metrics
# =============================================================================


@app.get("/health")
async def health_check(request: Request):
    """Health check endpoint for kubernetes probes. Returns 503 if the database is down."""
    result = await check_health(database)
    return JSONResponse(
        status_code=result["status_code"],
        content={
            "status": "healthy" if result["healthy"] else "unhealthy",
            "checks": result["checks"],
        },
    )


@app.get("/metrics")
async def metrics():
    return Response(content=get_metrics(), media_type=CONTENT_TYPE_LATEST)


# =============================================================================
# Containers
# =============================================================================


@app.post("/api/containers", status_code=201)
@limiter.limit(RATE_LIMIT_DEFAULT)
@handle_api_exceptions("create_container", "Failed to create container")
async def create_container(
    request: Request,
    data: ContainerCreate,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    container = await services.containers.create_container(data.account_id, data.season_id, data.episode_id)
    return container.to_dict()


@app.get("/api/containers/{container_id}")
@limiter.limit(RATE_LIMIT_DEFAULT)
@handle_api_exceptions("get_container", "Failed to get container")
async def get_container(
    request: Request,
    container_id: str,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    container = await services.containers.get_container(container_id)
    return container.to_dict()


@app.delete("/api/containers/{container_id}", response_model=DeleteContainerResponse)
@limiter.limit(RATE_LIMIT_DEFAULT)
@handle_api_exceptions("delete_container", "Failed to delete container")
async def delete_container(
    request: Request,
    container_id: str,
    services: Services = Depends(get_services),
):
    """Idempotent: deleting a missing container succeeds with deleted=false."""
    deleted = await services.containers.delete_container(container_id)
    return DeleteContainerResponse(deleted=deleted)


@app.post("/api/containers/{container_id}/commit", response_model=ValidationResponse)
@limiter.limit(RATE_LIMIT_DEFAULT)
@handle_api_exceptions("commit_staging_data", "Failed to commit staging data")
async def commit_staging_data(
    request: Request,
    container_id: str,
    data: Optional[StagingDataRequest] = Body(default=None),
    services: Services = Depends(get_services),
):
    """
    Commit all staged changes. An optional staging snapshot in the body is
    saved first, in the same transaction.

    Validation failures return 200 with success=false and an error code.
    """
    result = await services.containers.commit_staging_data(
        container_id,
        data.to_staging_data() if data is not None else None,
    )
    return ValidationResponse(**result.to_dict())


@app.put("/api/containers/{container_id}/staging", response_model=ValidationResponse)
@limiter.limit(RATE_LIMIT_DEFAULT)
@handle_api_exceptions("save_staging_data", "Failed to save staging data")
async def save_staging_data(
    request: Request,
    container_id: str,
    data: StagingDataRequest,
    services: Services = Depends(get_services),
):
    result = await services.containers.save_staging_data(container_id, data.to_staging_data())
    return ValidationResponse(**result.to_dict())


@app.patch("/api/containers/{container_id}/tracks/{kind}/{track_dirname}")
@limiter.limit(RATE_LIMIT_DEFAULT)
@handle_api_exceptions("update_track", "Failed to update track")
async def update_track(
    request: Request,
    container_id: str,
    kind: TrackKind,
    track_dirname: str,
    data: TrackUpdate,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    container = await services.containers.update_track(container_id, kind, track_dirname, data.fields())
    return container.to_dict()


@app.delete("/api/containers/{container_id}/tracks/{kind}/{track_dirname}")
@limiter.limit(RATE_LIMIT_DEFAULT)
@handle_api_exceptions("delete_track", "Failed to delete track")
async def delete_track(
    request: Request,
    container_id: str,
    kind: TrackKind,
    track_dirname: str,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """Stage the deletion of a committed track; it takes effect on commit."""
    container = await services.containers.delete_track(container_id, kind, track_dirname)
    return container.to_dict()


@app.delete("/api/containers/{container_id}/tracks/{kind}/{track_dirname}/staging")
@limiter.limit(RATE_LIMIT_DEFAULT)
@handle_api_exceptions("drop_track_staging", "Failed to drop track staging")
async def drop_track_staging(
    request: Request,
    container_id: str,
    kind: TrackKind,
    track_dirname: str,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    container = await services.containers.drop_track_staging(container_id, kind, track_dirname)
    return container.to_dict()


# =============================================================================
# Uploads and formatting
# =============================================================================


@app.post("/api/containers/{container_id}/uploads/{processing_kind}/start", response_model=StartUploadResponse)
@limiter.limit(RATE_LIMIT_UPLOAD)
@handle_api_exceptions("start_uploading", "Failed to start upload")
async def start_uploading(
    request: Request,
    container_id: str,
    processing_kind: ProcessingKind,
    data: StartUploadRequest,
    services: Services = Depends(get_services),
):
    """
    Start or resume an upload. The client PUTs bytes to sessionUrl starting
    at byteOffset, then calls complete.
    """
    result = await services.uploads.start_uploading(
        _upload_kind(processing_kind),
        container_id,
        data.content_length,
        data.file_ext,
        data.md5,
    )
    return StartUploadResponse(session_url=result.session_url, byte_offset=result.byte_offset)


@app.post("/api/containers/{container_id}/uploads/{processing_kind}/complete", response_model=StatusResponse)
@limiter.limit(RATE_LIMIT_UPLOAD)
@handle_api_exceptions("complete_uploading", "Failed to complete upload")
async def complete_uploading(
    request: Request,
    container_id: str,
    processing_kind: ProcessingKind,
    data: CompleteUploadRequest,
    services: Services = Depends(get_services),
):
    await services.uploads.complete_uploading(_upload_kind(processing_kind), container_id, data.session_url)
    return StatusResponse(status="ok", message="Upload completed; formatting scheduled")


@app.post("/api/containers/{container_id}/uploads/{processing_kind}/cancel", response_model=StatusResponse)
@limiter.limit(RATE_LIMIT_UPLOAD)
@handle_api_exceptions("cancel_uploading", "Failed to cancel upload")
async def cancel_uploading(
    request: Request,
    container_id: str,
    processing_kind: ProcessingKind,
    services: Services = Depends(get_services),
):
    await services.uploads.cancel_uploading(_upload_kind(processing_kind), container_id)
    return StatusResponse(status="ok")


@app.post("/api/containers/{container_id}/formatting/{processing_kind}/cancel", response_model=StatusResponse)
@limiter.limit(RATE_LIMIT_DEFAULT)
@handle_api_exceptions("cancel_formatting", "Failed to cancel formatting")
async def cancel_formatting(
    request: Request,
    container_id: str,
    processing_kind: ProcessingKind,
    services: Services = Depends(get_services),
):
    await services.uploads.cancel_formatting(_upload_kind(processing_kind), container_id)
    return StatusResponse(status="ok")


# =============================================================================
# Task ledger
# =============================================================================


@app.get("/api/tasks/{kind}", response_model=TaskListResponse)
@limiter.limit(RATE_LIMIT_TASKS)
@handle_api_exceptions("list_due_tasks", "Failed to list tasks")
async def list_due_tasks(
    request: Request,
    kind: TaskKind,
    limit: Optional[int] = Query(default=None, ge=1, le=1000),
    _secret: None = Depends(verify_service_secret),
    services: Services = Depends(get_services),
):
    tasks = await services.tasks.list_due(kind, limit=limit)
    stuck_count = await services.tasks.count_stuck(kind)
    TASKS_DUE.labels(kind=kind.value).set(len(tasks))
    TASKS_STUCK.labels(kind=kind.value).set(stuck_count)
    return TaskListResponse(kind=kind.value, tasks=tasks, stuck_count=stuck_count)


@app.post("/api/tasks/{kind}/process", response_model=StatusResponse)
@limiter.limit(RATE_LIMIT_TASKS)
@handle_api_exceptions("process_task", "Failed to process task")
async def process_task(
    request: Request,
    kind: TaskKind,
    data: Dict[str, Any] = Body(...),
    _secret: None = Depends(verify_service_secret),
    services: Services = Depends(get_services),
):
    """
    Claim and process one task, identified by its camelCase key fields.

    404 means the task is already gone; any other error leaves it in the
    ledger for a later attempt.
    """
    await services.tasks.process(kind, data)
    return StatusResponse(status="ok")
