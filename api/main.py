"""
FastAPI Application — REST API for the job queue.

Provides:
- Job submission (generic, bulk campaigns, scheduled single messages)
- Job inspection: get, paginated list, statistics
- Cancel / delete / retention cleanup
- Rate-limited admin login check
- Dispatcher, retention sweeper and rate-limiter cleanup run in the lifespan
"""
from __future__ import annotations

import hmac
import math
import structlog
from datetime import datetime, timedelta, timezone
from typing import Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from auth.rate_limiter import LoginRateLimiter
from channels.base import ContactDirectory, MessageSender
from channels.whatsapp_gateway import GatewayDirectory, GatewaySender
from config.settings import Settings, get_settings
from database.store_base import BaseJobStore
from database.store_factory import create_store
from job_queue.dispatcher import JobDispatcher, RetentionSweeper
from job_queue.errors import (
    JobStateError, NotFoundError, StorageError, ValidationError,
)
from job_queue.handlers import HandlerRegistry
from job_queue.service import JobQueueService
from models.schemas import (
    BulkMessagePayload, Job, JobPage, JobRequest, JobStatistics, JobStatus,
    JobSubmitResponse, ScheduledMessagePayload,
)

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

class Runtime:
    """Everything the routes need, wired from settings."""

    def __init__(
        self,
        settings: Settings,
        store: BaseJobStore,
        sender: MessageSender,
        directory: ContactDirectory,
    ):
        self.settings = settings
        self.store = store
        self.sender = sender
        self.directory = directory
        queue_cfg = settings.job_queue
        self.registry = HandlerRegistry.default(sender, directory)
        self.dispatcher = JobDispatcher(store, self.registry, queue_cfg)
        self.sweeper = RetentionSweeper(
            store,
            retention_days=queue_cfg.retention_days,
            interval_seconds=queue_cfg.retention_sweep_interval_seconds,
        )
        self.service = JobQueueService(store, self.dispatcher, queue_cfg)
        self.limiter = LoginRateLimiter.from_config(settings.rate_limit)

    async def start(self, start_workers: bool = True):
        await self.store.initialize()
        await self.limiter.start()
        if start_workers:
            await self.dispatcher.start()
            await self.sweeper.start_background()

    async def stop(self):
        await self.dispatcher.stop()
        await self.sweeper.stop()
        await self.limiter.stop()
        for client in (self.sender, self.directory):
            close = getattr(client, "close", None)
            if close is not None:
                await close()
        await self.store.close()


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[BaseJobStore] = None,
    sender: Optional[MessageSender] = None,
    directory: Optional[ContactDirectory] = None,
    start_workers: bool = True,
) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db = settings.database
        runtime = Runtime(
            settings,
            store or create_store({
                "store_backend": db.store_backend,
                "store_file_dir": db.store_file_dir,
                "url": db.url,
                "default_priority": settings.job_queue.default_priority,
                "default_max_attempts": settings.job_queue.default_max_attempts,
            }),
            sender or GatewaySender(settings.gateway),
            directory or GatewayDirectory(settings.gateway),
        )
        await runtime.start(start_workers)
        app.state.runtime = runtime
        logger.info("dispatch_service_started",
                    store=type(runtime.store).__name__,
                    workers=start_workers)
        yield
        await runtime.stop()
        logger.info("dispatch_service_stopped")

    app = FastAPI(
        title=f"{settings.app_name} API",
        description="Job queue and scheduler for multi-session messaging",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_error_handlers(app)
    app.include_router(router)
    return app


def _register_error_handlers(app: FastAPI):
    def handler(status_code: int):
        async def _handle(request: Request, exc: Exception) -> JSONResponse:
            return JSONResponse(status_code=status_code, content={"detail": str(exc)})
        return _handle

    app.add_exception_handler(ValidationError, handler(422))
    app.add_exception_handler(NotFoundError, handler(404))
    app.add_exception_handler(JobStateError, handler(409))   # includes AlreadyTerminalError
    app.add_exception_handler(StorageError, handler(503))


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def get_service(request: Request) -> JobQueueService:
    return request.app.state.runtime.service


# ──────────────────────────────────────────────────────────────
#  Request/Response Models
# ──────────────────────────────────────────────────────────────

class BulkMessageJobRequest(BulkMessagePayload):
    scheduled_at: Optional[datetime] = None


class ScheduledMessageJobRequest(ScheduledMessagePayload):
    scheduled_at: datetime


class LoginRequest(BaseModel):
    username: str
    password: str


def _submitted(job: Job) -> JobSubmitResponse:
    message = "Job scheduled" if job.status == JobStatus.SCHEDULED else "Job queued"
    return JobSubmitResponse(job_id=job.job_id, status=job.status, message=message)


router = APIRouter()


# ══════════════════════════════════════════════════════════════
#  HEALTH
# ══════════════════════════════════════════════════════════════

@router.get("/health")
async def health(runtime: Runtime = Depends(get_runtime)):
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "store": type(runtime.store).__name__,
        "dispatcher_running": runtime.dispatcher.running,
        "jobs_in_flight": runtime.dispatcher.in_flight,
        "job_types": [t.value for t in runtime.registry.job_types],
    }


# ══════════════════════════════════════════════════════════════
#  JOBS
# ══════════════════════════════════════════════════════════════

@router.post("/api/v1/jobs", status_code=201, response_model=JobSubmitResponse)
async def submit_job(req: JobRequest, service: JobQueueService = Depends(get_service)):
    return _submitted(await service.submit(req))


@router.post("/api/v1/jobs/bulk-message", status_code=201, response_model=JobSubmitResponse)
async def submit_bulk_message(req: BulkMessageJobRequest, service: JobQueueService = Depends(get_service)):
    payload = BulkMessagePayload.model_validate(req.model_dump(exclude={"scheduled_at"}))
    return _submitted(await service.enqueue_bulk_message(payload, req.scheduled_at))


@router.post("/api/v1/jobs/scheduled-message", status_code=201, response_model=JobSubmitResponse)
async def submit_scheduled_message(req: ScheduledMessageJobRequest,
                                   service: JobQueueService = Depends(get_service)):
    payload = ScheduledMessagePayload.model_validate(req.model_dump(exclude={"scheduled_at"}))
    return _submitted(await service.enqueue_scheduled_message(payload, req.scheduled_at))


@router.get("/api/v1/jobs", response_model=JobPage)
async def list_jobs(
    status: str = "all",
    type: str = "all",
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    service: JobQueueService = Depends(get_service),
):
    return await service.list_jobs(status=status, job_type=type, page=page, limit=limit)


@router.get("/api/v1/jobs/statistics", response_model=JobStatistics)
async def job_statistics(service: JobQueueService = Depends(get_service)):
    return await service.statistics()


@router.post("/api/v1/jobs/cleanup")
async def cleanup_jobs(days: int = Query(7, ge=1), service: JobQueueService = Depends(get_service)):
    removed = await service.cleanup_old_jobs(timedelta(days=days))
    return {"deleted": removed, "older_than_days": days}


@router.get("/api/v1/jobs/{job_id}", response_model=Job)
async def get_job(job_id: str, service: JobQueueService = Depends(get_service)):
    return await service.get(job_id)


@router.post("/api/v1/jobs/{job_id}/cancel", response_model=Job)
async def cancel_job(job_id: str, service: JobQueueService = Depends(get_service)):
    return await service.cancel(job_id)


@router.delete("/api/v1/jobs/{job_id}")
async def delete_job(job_id: str, service: JobQueueService = Depends(get_service)):
    await service.delete(job_id)
    return {"status": "deleted", "job_id": job_id}


# ══════════════════════════════════════════════════════════════
#  AUTH
# ══════════════════════════════════════════════════════════════

@router.post("/api/v1/auth/login")
async def login(req: LoginRequest, request: Request, runtime: Runtime = Depends(get_runtime)):
    key = request.client.host if request.client else "unknown"
    limiter = runtime.limiter

    if limiter.is_blocked(key):
        retry_after = math.ceil(limiter.remaining_block_time(key))
        logger.warning("login_rejected_blocked", key=key, retry_after=retry_after)
        raise HTTPException(
            status_code=429,
            detail="Too many failed login attempts",
            headers={"Retry-After": str(retry_after)},
        )

    auth = runtime.settings.auth
    ok = auth.login_enabled and (
        hmac.compare_digest(req.username.encode(), auth.admin_username.encode())
        & hmac.compare_digest(req.password.encode(), auth.admin_password.encode())
    )
    limiter.record_attempt(key, ok)
    if not ok:
        raise HTTPException(401, "Invalid credentials")
    return {"status": "ok", "username": req.username}


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
