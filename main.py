import logging
from contextlib import asynccontextmanager
from typing import Optional

import redis
from fastapi import APIRouter, Depends, FastAPI, File, Form, Header, Query, Request, UploadFile, status
from fastapi.responses import JSONResponse, Response

# Local imports
from errors import JobServiceError, NotFoundError, ValidationError
from models import EntryState, JobState
from schemas import (
    API_ARTIFACT_NAMES,
    ArtifactKind,
    HealthResponse,
    JobListResponse,
    JobOutputs,
    JobStatusResponse,
    JobSummary,
    QueueDebugResponse,
    SubmitResponse,
)
from services import Services, build_services
from status import JobStatusView
from utils import Settings
from worker import WorkerPool, celery_task

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

LOG_PREVIEW_CHARS = 5000

router = APIRouter(prefix="/api")


def get_services(request: Request) -> Services:
    return request.app.state.services


def redis_available(url: str) -> bool:
    try:
        r = redis.from_url(url, socket_connect_timeout=1)
        r.ping()
        return True
    except redis.RedisError:
        return False


def _status_response(view: JobStatusView, services: Services) -> JobStatusResponse:
    outputs = None
    if view.state == JobState.COMPLETED and view.result is not None:
        artifacts = view.result.outputs
        outputs = JobOutputs(
            gff=artifacts[ArtifactKind.PRIMARY_ANNOTATION].filename if ArtifactKind.PRIMARY_ANNOTATION in artifacts else None,
            fasta=artifacts[ArtifactKind.PRIMARY_SEQUENCE].filename if ArtifactKind.PRIMARY_SEQUENCE in artifacts else None,
        )
        try:
            log = services.materializer.download(view.job_id, ArtifactKind.LOG)
            outputs.log = log.data.decode("utf-8", errors="replace")[:LOG_PREVIEW_CHARS]
        except NotFoundError:
            pass  # log file might not exist

    return JobStatusResponse(
        job_id=view.job_id,
        status=view.state,
        progress=view.progress,
        attempts=view.attempts,
        created_at=view.created_at,
        updated_at=view.updated_at,
        outputs=outputs,
        error=view.error,
        condition=view.condition,
        message=view.message,
        queue_position=view.queue_position,
    )


@router.post("/jobs", response_model=SubmitResponse, status_code=status.HTTP_201_CREATED)
async def submit_job(
    file: Optional[UploadFile] = File(None),
    options: Optional[str] = Form(None),
    services: Services = Depends(get_services),
):
    """
    Submit a genome file for StORF-Reporter analysis.
    """
    if file is None:
        raise ValidationError("No file provided")
    content = await file.read()
    job = await services.jobs.submit(file.filename, content, options)
    return {
        "job_id": job.job_id,
        "status": job.state,
        "filename": job.filename,
        "created_at": job.created_at,
    }


@router.get("/jobs", response_model=JobListResponse)
async def list_jobs(
    page: int = Query(1, ge=1),
    size: int = Query(15, ge=1, le=100),
    status: Optional[JobState] = None,
    services: Services = Depends(get_services),
):
    """List jobs with pagination and status filter"""
    total = services.store.count(status)
    pages = (total + size - 1) // size
    jobs = services.store.list(state=status, offset=(page - 1) * size, limit=size)
    return {
        "items": [JobSummary.model_validate(job, from_attributes=True) for job in jobs],
        "total": total,
        "page": page,
        "size": size,
        "pages": pages,
    }


@router.get("/jobs/{job_id}", response_model=JobStatusResponse)
async def get_status(job_id: str, services: Services = Depends(get_services)):
    """Get status and progress of a job"""
    view = services.status.get_status(job_id)
    return _status_response(view, services)


@router.get("/jobs/{job_id}/download/{file_type}")
async def download(job_id: str, file_type: str, services: Services = Depends(get_services)):
    """Download one artifact of a job: gff, fasta or log."""
    if file_type not in API_ARTIFACT_NAMES:
        raise ValidationError("Invalid file type")
    artifact = services.materializer.download(job_id, API_ARTIFACT_NAMES[file_type])
    return Response(
        content=artifact.data,
        media_type=artifact.content_type,
        headers={"Content-Disposition": f'attachment; filename="{artifact.filename}"'},
    )


@router.delete("/jobs/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_job(job_id: str, services: Services = Depends(get_services)):
    """Remove a job that is not running, including its files."""
    services.jobs.delete(job_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/health", response_model=HealthResponse)
async def health_check(services: Services = Depends(get_services)):
    """Health check for the job service"""
    settings = services.settings
    backend = "Celery/Redis" if settings.use_celery else "Internal Threading"
    healthy = services.db.ping()
    queues = {"database": "connected" if healthy else "unavailable"}

    if settings.use_celery:
        broker_ok = redis_available(settings.redis_url)
        queues["broker"] = "connected" if broker_ok else "unavailable"
        healthy = healthy and broker_ok
    if queues["database"] == "connected":
        queues["active_workers"] = len(services.queue.active_workers())

    return {
        "status": "healthy" if healthy else "degraded",
        "message": f"API is {'healthy' if healthy else 'degraded'}. Backend: {backend}",
        "queues": queues,
    }


@router.get("/debug/queue", response_model=QueueDebugResponse)
async def debug_queue(
    authorization: Optional[str] = Header(None),
    services: Services = Depends(get_services),
):
    """Queue counts, waiting and active entries, and registered workers."""
    token = services.settings.admin_token
    if token and authorization != f"Bearer {token}":
        return JSONResponse(status_code=401, content={"error": "unauthorized", "detail": "Unauthorized"})

    queue = services.queue
    return {
        "queue": queue.counts(),
        "waiting_jobs": [s.to_dict() for s in queue.query([EntryState.WAITING, EntryState.DELAYED], limit=50)],
        "active_jobs": [s.to_dict() for s in queue.query([EntryState.ACTIVE], limit=50)],
        "workers": queue.active_workers(),
    }


def create_app(settings: Optional[Settings] = None, runner=None, start_workers: bool = True) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        dispatch = celery_task.delay if settings.use_celery else None
        services = build_services(settings, dispatch=dispatch)
        services.db.create_all()
        pool = WorkerPool(services.queue, settings, runner=runner)
        app.state.services = services
        app.state.pool = pool

        if settings.use_celery:
            logger.info("🚀 API running in Celery mode. Delegation enabled.")
        elif start_workers:
            logger.info("🔧 Starting internal workers (Stand-alone mode)")
            pool.start(settings.worker_pool_size)
        services.maintenance.start()
        try:
            yield
        finally:
            pool.stop()
            services.close()
            logger.info("Job service stopped")

    app = FastAPI(
        title="StORF Job Service",
        version="1.0.0",
        description="Submits StORF-Reporter analyses and reports their status and results",
        lifespan=lifespan,
    )

    @app.exception_handler(JobServiceError)
    async def handle_job_error(request: Request, exc: JobServiceError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    app.include_router(router)
    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    port = Settings.from_env().port
    print("\n🚀 Starting StORF Job Service...")
    print(f"📡 API: http://0.0.0.0:{port}")
    print(f"📚 Docs: http://0.0.0.0:{port}/docs")
    uvicorn.run(app, host="0.0.0.0", port=port)
