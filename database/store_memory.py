"""
InMemoryJobStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlJobStore
  - Compare-and-set transitions serialized by an asyncio.Lock
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timedelta
from typing import Collection, Optional

from database.store_base import BaseJobStore, TERMINAL_SOURCES
from models.schemas import (
    CLAIMABLE_STATUSES, TERMINAL_STATUSES,
    Job, JobRequest, JobResult, JobStatistics, JobStatus, as_utc, utcnow,
)

logger = structlog.get_logger()


class InMemoryJobStore(BaseJobStore):
    """
    Full-featured in-memory store with the same interface as SqlJobStore.
    Hands out copies so callers can never mutate stored state directly.
    """

    def __init__(self, default_priority: int = 5, default_max_attempts: int = 3):
        super().__init__(default_priority, default_max_attempts)
        self._jobs: dict[str, Job] = {}
        self._lock = asyncio.Lock()
        logger.info("inmemory_store_initialized")

    def _changed(self) -> None:
        """Hook called after every mutation (file backend persists here)."""

    def _apply(self, changes: dict[str, Optional[Job]]) -> None:
        for job_id, job in changes.items():
            if job is None:
                self._jobs.pop(job_id, None)
            else:
                self._jobs[job_id] = job

    def _commit(self, changes: dict[str, Optional[Job]]) -> None:
        """
        Install changed jobs (None deletes) and run the _changed hook. If the
        hook raises, the previous entries are put back before re-raising, so a
        failed write leaves the store as it was.
        """
        previous = {job_id: self._jobs.get(job_id) for job_id in changes}
        self._apply(changes)
        try:
            self._changed()
        except Exception:
            self._apply(previous)
            raise

    @staticmethod
    def _copy(job: Optional[Job]) -> Optional[Job]:
        return job.model_copy(deep=True) if job else None

    # ── Create / read ─────────────────────────────────────

    async def create(self, request: JobRequest, now: Optional[datetime] = None) -> Job:
        job = self.build_job(request, now)
        async with self._lock:
            self._commit({job.job_id: job})
        logger.debug("job_stored", job_id=job.job_id, status=job.status.value)
        return self._copy(job)

    async def get(self, job_id: str) -> Optional[Job]:
        return self._copy(self._jobs.get(job_id))

    async def list_eligible(self, limit: int, now: Optional[datetime] = None) -> list[Job]:
        now = now or utcnow()
        eligible = [j for j in self._jobs.values() if j.is_eligible(now)]
        eligible.sort(key=lambda j: (-j.priority, as_utc(j.created_at)))
        return [self._copy(j) for j in eligible[:limit]]

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        job_type: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Job], int]:
        matches = [
            j for j in self._jobs.values()
            if (status is None or j.status == status)
            and (job_type is None or j.type.value == job_type)
        ]
        matches.sort(key=lambda j: as_utc(j.created_at), reverse=True)
        page = matches[offset:offset + limit]
        return [self._copy(j) for j in page], len(matches)

    async def statistics(self) -> JobStatistics:
        stats = JobStatistics(total=len(self._jobs))
        for job in self._jobs.values():
            field = job.status.value
            setattr(stats, field, getattr(stats, field) + 1)
        return stats

    # ── Transitions ───────────────────────────────────────
    # Each transition edits a copy; _commit swaps it in.

    async def mark_running(self, job_id: str, now: Optional[datetime] = None) -> Optional[Job]:
        now = now or utcnow()
        async with self._lock:
            job = self._copy(self._jobs.get(job_id))
            if not job or job.status not in CLAIMABLE_STATUSES or job.attempts >= job.max_attempts:
                return None
            job.status = JobStatus.RUNNING
            if job.started_at is None:
                job.started_at = now
            job.updated_at = now
            self._commit({job_id: job})
            return self._copy(job)

    async def increment_attempts(self, job_id: str) -> Optional[Job]:
        async with self._lock:
            job = self._copy(self._jobs.get(job_id))
            if not job or job.status != JobStatus.RUNNING or job.attempts >= job.max_attempts:
                return None
            job.attempts += 1
            job.updated_at = utcnow()
            self._commit({job_id: job})
            return self._copy(job)

    async def mark_terminal(
        self,
        job_id: str,
        status: JobStatus,
        result: Optional[JobResult] = None,
        error: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[Job]:
        now = now or utcnow()
        async with self._lock:
            job = self._copy(self._jobs.get(job_id))
            if not job or job.status not in TERMINAL_SOURCES[status]:
                return None
            job.status = status
            if result is not None:
                job.result = result
            if error is not None:
                job.error = error
            job.completed_at = now
            job.updated_at = now
            self._commit({job_id: job})
            return self._copy(job)

    async def mark_retry(self, job_id: str, error: str, next_attempt_at: datetime) -> Optional[Job]:
        async with self._lock:
            job = self._copy(self._jobs.get(job_id))
            if not job or job.status != JobStatus.RUNNING:
                return None
            job.status = JobStatus.PENDING
            job.error = error
            job.next_attempt_at = next_attempt_at
            job.updated_at = utcnow()
            self._commit({job_id: job})
            return self._copy(job)

    # ── Removal / maintenance ─────────────────────────────

    async def delete(self, job_id: str) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            if not job or job.status not in CLAIMABLE_STATUSES:
                return False
            self._commit({job_id: None})
            return True

    async def delete_terminal_older_than(self, age: timedelta, now: Optional[datetime] = None) -> int:
        cutoff = (now or utcnow()) - age
        async with self._lock:
            doomed = {
                job_id: None for job_id, j in self._jobs.items()
                if j.status in TERMINAL_STATUSES
                and j.completed_at is not None and as_utc(j.completed_at) < cutoff
            }
            if doomed:
                self._commit(doomed)
        return len(doomed)

    async def requeue_stale(self, timeout: timedelta, now: Optional[datetime] = None,
                            exclude: Collection[str] = ()) -> int:
        now = now or utcnow()
        cutoff = now - timeout
        changes: dict[str, Optional[Job]] = {}
        async with self._lock:
            for job_id, stored in self._jobs.items():
                if (stored.status != JobStatus.RUNNING or job_id in exclude
                        or as_utc(stored.updated_at) >= cutoff):
                    continue
                job = self._copy(stored)
                if job.attempts >= job.max_attempts:
                    job.status = JobStatus.FAILED
                    job.error = job.error or "worker lost while running"
                    job.completed_at = now
                else:
                    job.status = JobStatus.PENDING
                job.updated_at = now
                changes[job_id] = job
            if changes:
                self._commit(changes)
        return len(changes)
