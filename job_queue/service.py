"""
Job Queue Service — Producer-facing API over the job store.

    service = JobQueueService(store, dispatcher, config)
    job = await service.submit(JobRequest(type="scheduled_message", payload={...}))
    job = await service.get(job.job_id)
    page = await service.list_jobs(status="failed", page=2)
    await service.cancel(job.job_id)

Errors: ValidationError (bad request), NotFoundError, AlreadyTerminalError,
JobStateError (illegal transition), StorageError (backend down).
"""
from __future__ import annotations

import math
import structlog
from datetime import datetime, timedelta
from typing import Any, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from config.settings import JobQueueConfig
from database.store_base import BaseJobStore
from job_queue.dispatcher import JobDispatcher
from job_queue.errors import AlreadyTerminalError, JobStateError, NotFoundError, ValidationError
from models.schemas import (
    BulkMessagePayload, Job, JobPage, JobRequest, JobStatistics, JobStatus, JobType,
    ScheduledMessagePayload,
)

logger = structlog.get_logger()

MAX_PAGE_SIZE = 100
BULK_MESSAGE_PRIORITY = 7
SCHEDULED_MESSAGE_PRIORITY = 5


def _validation_message(e: PydanticValidationError) -> str:
    parts = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts)


class JobQueueService:
    def __init__(self, store: BaseJobStore, dispatcher: Optional[JobDispatcher] = None,
                 config: JobQueueConfig = None):
        self.store = store
        self.dispatcher = dispatcher
        self.config = config or JobQueueConfig()

    # ── Submit ────────────────────────────────────────────

    async def submit(self, request: Union[JobRequest, dict[str, Any]]) -> Job:
        if not isinstance(request, JobRequest):
            try:
                request = JobRequest.model_validate(request)
            except PydanticValidationError as e:
                raise ValidationError(_validation_message(e)) from e

        job = await self.store.create(request)
        logger.info("job_submitted",
                    job_id=job.job_id,
                    job_type=job.type.value,
                    status=job.status.value,
                    priority=job.priority,
                    scheduled_at=job.scheduled_at.isoformat() if job.scheduled_at else None)
        if self.dispatcher and job.status == JobStatus.PENDING:
            self.dispatcher.notify()
        return job

    async def enqueue_bulk_message(self, payload: Union[BulkMessagePayload, dict[str, Any]],
                                   scheduled_at: Optional[datetime] = None) -> Job:
        return await self.submit(self._request(
            JobType.BULK_MESSAGE, payload, BULK_MESSAGE_PRIORITY, scheduled_at,
        ))

    async def enqueue_scheduled_message(self, payload: Union[ScheduledMessagePayload, dict[str, Any]],
                                        scheduled_at: Optional[datetime] = None) -> Job:
        return await self.submit(self._request(
            JobType.SCHEDULED_MESSAGE, payload, SCHEDULED_MESSAGE_PRIORITY, scheduled_at,
        ))

    def _request(self, job_type: JobType, payload: Any, priority: int,
                 scheduled_at: Optional[datetime]) -> JobRequest:
        if hasattr(payload, "model_dump"):
            payload = payload.model_dump()
        try:
            return JobRequest.model_validate({
                "type": job_type,
                "payload": payload,
                "priority": priority,
                "max_attempts": self.config.default_max_attempts,
                "scheduled_at": scheduled_at,
            })
        except PydanticValidationError as e:
            raise ValidationError(_validation_message(e)) from e

    # ── Read ──────────────────────────────────────────────

    async def get(self, job_id: str) -> Job:
        job = await self.store.get(job_id)
        if job is None:
            raise NotFoundError(job_id)
        return job

    async def list_jobs(
        self,
        status: Optional[str] = None,
        job_type: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> JobPage:
        """Paginated listing, newest first. "all" or None disables a filter."""
        status_filter = None
        if status and status != "all":
            try:
                status_filter = JobStatus(status)
            except ValueError as e:
                raise ValidationError(f"unknown status {status!r}") from e
        type_filter = None
        if job_type and job_type != "all":
            try:
                type_filter = JobType(job_type).value
            except ValueError as e:
                raise ValidationError(f"unknown job type {job_type!r}") from e

        page = max(page, 1)
        limit = min(max(limit, 1), MAX_PAGE_SIZE)
        jobs, total = await self.store.list_jobs(
            status=status_filter, job_type=type_filter,
            limit=limit, offset=(page - 1) * limit,
        )
        return JobPage(jobs=jobs, total=total, page=page, limit=limit,
                       pages=math.ceil(total / limit) if total else 0)

    async def statistics(self) -> JobStatistics:
        return await self.store.statistics()

    # ── Cancel / delete ───────────────────────────────────

    async def cancel(self, job_id: str) -> Job:
        job = await self.get(job_id)
        if job.is_terminal:
            raise AlreadyTerminalError(job_id, job.status.value, "cancel")

        cancelled = await self.store.mark_terminal(job_id, JobStatus.CANCELLED)
        if cancelled is None:
            # Lost a race with the dispatcher finishing it
            current = await self.get(job_id)
            raise AlreadyTerminalError(job_id, current.status.value, "cancel")

        logger.info("job_cancelled", job_id=job_id, previous_status=job.status.value)
        return cancelled

    async def delete(self, job_id: str) -> None:
        """Delete a job that has not started. Running jobs must be cancelled first."""
        job = await self.get(job_id)
        self._check_deletable(job)
        if not await self.store.delete(job_id):
            self._check_deletable(await self.get(job_id))
            raise JobStateError(job_id, job.status.value, "delete")
        logger.info("job_deleted", job_id=job_id)

    @staticmethod
    def _check_deletable(job: Job):
        if job.is_terminal:
            raise AlreadyTerminalError(job.job_id, job.status.value, "delete")
        if job.status == JobStatus.RUNNING:
            raise JobStateError(job.job_id, job.status.value, "delete")

    # ── Maintenance ───────────────────────────────────────

    async def cleanup_old_jobs(self, older_than: Optional[timedelta] = None) -> int:
        """Delete terminal jobs finished more than `older_than` ago (default: retention_days)."""
        if older_than is None:
            older_than = timedelta(days=self.config.retention_days)
        if older_than <= timedelta(0):
            raise ValidationError("older_than must be positive")
        removed = await self.store.delete_terminal_older_than(older_than)
        logger.info("jobs_cleaned_up", removed=removed, older_than_days=older_than.days)
        return removed
