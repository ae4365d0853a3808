"""
Abstract Job Store — Interface for all storage backends.

Implementations:
  - SqlJobStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryJobStore (dict-based, single-process, no persistence)
  - FileJobStore     (JSON file on disk, single-process, durable)

Every status change is a compare-and-set: the write only happens when the
job is still in one of the expected source statuses, and the losing caller
gets None back. That is what makes a claim exclusive.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Collection, Optional

from models.schemas import (
    Job, JobRequest, JobStatistics, JobStatus, JobResult, utcnow,
)

# Legal source statuses for each terminal transition.
TERMINAL_SOURCES: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.COMPLETED: frozenset({JobStatus.RUNNING}),
    JobStatus.FAILED: frozenset({JobStatus.RUNNING}),
    JobStatus.CANCELLED: frozenset({JobStatus.PENDING, JobStatus.SCHEDULED, JobStatus.RUNNING}),
}


class BaseJobStore(ABC):
    """Interface that all job store backends must implement."""

    def __init__(self, default_priority: int = 5, default_max_attempts: int = 3):
        self.default_priority = default_priority
        self.default_max_attempts = default_max_attempts

    def build_job(self, request: JobRequest, now: Optional[datetime] = None) -> Job:
        """Apply defaults and compute the initial status for a new job."""
        now = now or utcnow()
        scheduled_at = request.scheduled_at
        status = JobStatus.SCHEDULED if scheduled_at and scheduled_at > now else JobStatus.PENDING
        return Job(
            type=request.type,
            status=status,
            priority=request.priority if request.priority is not None else self.default_priority,
            payload=request.payload,
            max_attempts=(request.max_attempts if request.max_attempts is not None
                          else self.default_max_attempts),
            scheduled_at=scheduled_at,
            created_at=now,
            updated_at=now,
        )

    # ── Lifecycle ─────────────────────────────────────────────

    async def initialize(self) -> None:
        """Prepare the backend (create tables, open files). Default: nothing to do."""

    async def close(self) -> None:
        """Release backend resources. Default: nothing to do."""

    # ── Create / read ─────────────────────────────────────────

    @abstractmethod
    async def create(self, request: JobRequest, now: Optional[datetime] = None) -> Job:
        ...

    @abstractmethod
    async def get(self, job_id: str) -> Optional[Job]:
        ...

    @abstractmethod
    async def list_eligible(self, limit: int, now: Optional[datetime] = None) -> list[Job]:
        """Claimable jobs whose time gates have passed, priority DESC then created_at ASC."""
        ...

    @abstractmethod
    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        job_type: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Job], int]:
        """Newest first. Returns (page, total matching)."""
        ...

    @abstractmethod
    async def statistics(self) -> JobStatistics:
        ...

    # ── Transitions ───────────────────────────────────────────

    @abstractmethod
    async def mark_running(self, job_id: str, now: Optional[datetime] = None) -> Optional[Job]:
        """pending/scheduled → running, only while attempts < max_attempts."""
        ...

    @abstractmethod
    async def increment_attempts(self, job_id: str) -> Optional[Job]:
        """attempts += 1 for a running job that has attempts left."""
        ...

    @abstractmethod
    async def mark_terminal(
        self,
        job_id: str,
        status: JobStatus,
        result: Optional[JobResult] = None,
        error: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[Job]:
        ...

    @abstractmethod
    async def mark_retry(self, job_id: str, error: str, next_attempt_at: datetime) -> Optional[Job]:
        """running → pending with the failure recorded and a backoff gate."""
        ...

    # ── Removal / maintenance ─────────────────────────────────

    @abstractmethod
    async def delete(self, job_id: str) -> bool:
        """Remove a job that is still pending or scheduled."""
        ...

    @abstractmethod
    async def delete_terminal_older_than(self, age: timedelta, now: Optional[datetime] = None) -> int:
        ...

    @abstractmethod
    async def requeue_stale(self, timeout: timedelta, now: Optional[datetime] = None,
                            exclude: Collection[str] = ()) -> int:
        """
        Recover jobs left running longer than `timeout`: back to pending, or
        failed if exhausted. Ids in `exclude` (still executing here) are skipped.
        """
        ...
