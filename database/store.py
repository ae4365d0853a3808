"""
SqlJobStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

Every transition is a single conditional UPDATE whose WHERE clause names the
allowed source statuses; `rowcount` tells the caller whether it won. No
SELECT ... FOR UPDATE, so the same statements run on all three databases.
"""
from __future__ import annotations

import json
import structlog
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncGenerator, Collection, Optional

from sqlalchemy import select, update, delete, and_, or_, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import JobRow
from database.session import get_session, init_db, close_db
from database.store_base import BaseJobStore, TERMINAL_SOURCES
from job_queue.errors import StorageError
from models.schemas import (
    CLAIMABLE_STATUSES, TERMINAL_STATUSES,
    Job, JobRequest, JobResult, JobStatistics, JobStatus, as_utc, utcnow,
)

logger = structlog.get_logger()

_CLAIMABLE = [s.value for s in CLAIMABLE_STATUSES]
_TERMINAL = [s.value for s in TERMINAL_STATUSES]


class SqlJobStore(BaseJobStore):
    """
    Persistent job store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    def __init__(self, db_url: Optional[str] = None, default_priority: int = 5,
                 default_max_attempts: int = 3):
        super().__init__(default_priority, default_max_attempts)
        self._db_url = db_url

    async def initialize(self) -> None:
        try:
            await init_db(self._db_url)
        except SQLAlchemyError as e:
            raise StorageError(f"Database initialization failed: {e}") from e

    async def close(self) -> None:
        await close_db()

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession, None]:
        """get_session() with driver faults surfaced as StorageError."""
        try:
            async with get_session() as db:
                yield db
        except SQLAlchemyError as e:
            logger.error("job_store_error", error=str(e))
            raise StorageError(str(e)) from e

    async def _update_one(self, db: AsyncSession, job_id: str, *conditions, **values) -> Optional[Job]:
        stmt = (
            update(JobRow)
            .where(and_(JobRow.job_id == job_id, *conditions))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        if result.rowcount != 1:
            return None
        row = await db.get(JobRow, job_id)
        return self._row_to_job(row) if row else None

    # ── Create / read ──────────────────────────────────────

    async def create(self, request: JobRequest, now: Optional[datetime] = None) -> Job:
        job = self.build_job(request, now)
        async with self._session() as db:
            db.add(JobRow(
                job_id=job.job_id,
                type=job.type.value,
                status=job.status.value,
                priority=job.priority,
                payload=job.payload.model_dump(mode="json"),
                attempts=job.attempts,
                max_attempts=job.max_attempts,
                scheduled_at=job.scheduled_at,
                created_at=job.created_at,
                updated_at=job.updated_at,
            ))
        logger.debug("job_stored", job_id=job.job_id, status=job.status.value)
        return job

    async def get(self, job_id: str) -> Optional[Job]:
        async with self._session() as db:
            row = await db.get(JobRow, job_id)
            return self._row_to_job(row) if row else None

    async def list_eligible(self, limit: int, now: Optional[datetime] = None) -> list[Job]:
        now = now or utcnow()
        stmt = (
            select(JobRow)
            .where(and_(
                JobRow.status.in_(_CLAIMABLE),
                JobRow.attempts < JobRow.max_attempts,
                or_(JobRow.scheduled_at.is_(None), JobRow.scheduled_at <= now),
                or_(JobRow.next_attempt_at.is_(None), JobRow.next_attempt_at <= now),
            ))
            .order_by(JobRow.priority.desc(), JobRow.created_at.asc())
            .limit(limit)
        )
        async with self._session() as db:
            result = await db.execute(stmt)
            return [self._row_to_job(r) for r in result.scalars()]

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        job_type: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Job], int]:
        conditions = []
        if status is not None:
            conditions.append(JobRow.status == status.value)
        if job_type is not None:
            conditions.append(JobRow.type == job_type)

        stmt = select(JobRow).order_by(JobRow.created_at.desc()).limit(limit).offset(offset)
        count_stmt = select(func.count()).select_from(JobRow)
        if conditions:
            stmt = stmt.where(and_(*conditions))
            count_stmt = count_stmt.where(and_(*conditions))

        async with self._session() as db:
            total = (await db.execute(count_stmt)).scalar_one()
            result = await db.execute(stmt)
            return [self._row_to_job(r) for r in result.scalars()], total

    async def statistics(self) -> JobStatistics:
        stmt = select(JobRow.status, func.count()).group_by(JobRow.status)
        async with self._session() as db:
            result = await db.execute(stmt)
            counts = {status: count for status, count in result.all()}
        stats = JobStatistics(total=sum(counts.values()))
        for status in JobStatus:
            setattr(stats, status.value, counts.get(status.value, 0))
        return stats

    # ── Transitions ────────────────────────────────────────

    async def mark_running(self, job_id: str, now: Optional[datetime] = None) -> Optional[Job]:
        now = now or utcnow()
        async with self._session() as db:
            return await self._update_one(
                db, job_id,
                JobRow.status.in_(_CLAIMABLE),
                JobRow.attempts < JobRow.max_attempts,
                status=JobStatus.RUNNING.value,
                started_at=func.coalesce(JobRow.started_at, now),
                updated_at=now,
            )

    async def increment_attempts(self, job_id: str) -> Optional[Job]:
        async with self._session() as db:
            return await self._update_one(
                db, job_id,
                JobRow.status == JobStatus.RUNNING.value,
                JobRow.attempts < JobRow.max_attempts,
                attempts=JobRow.attempts + 1,
                updated_at=utcnow(),
            )

    async def mark_terminal(
        self,
        job_id: str,
        status: JobStatus,
        result: Optional[JobResult] = None,
        error: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[Job]:
        now = now or utcnow()
        values: dict[str, Any] = {
            "status": status.value,
            "completed_at": now,
            "updated_at": now,
        }
        if result is not None:
            values["result"] = result.model_dump(mode="json")
        if error is not None:
            values["error"] = error
        sources = [s.value for s in TERMINAL_SOURCES[status]]
        async with self._session() as db:
            return await self._update_one(db, job_id, JobRow.status.in_(sources), **values)

    async def mark_retry(self, job_id: str, error: str, next_attempt_at: datetime) -> Optional[Job]:
        async with self._session() as db:
            return await self._update_one(
                db, job_id,
                JobRow.status == JobStatus.RUNNING.value,
                status=JobStatus.PENDING.value,
                error=error,
                next_attempt_at=next_attempt_at,
                updated_at=utcnow(),
            )

    # ── Removal / maintenance ──────────────────────────────

    async def delete(self, job_id: str) -> bool:
        stmt = delete(JobRow).where(and_(
            JobRow.job_id == job_id,
            JobRow.status.in_(_CLAIMABLE),
        )).execution_options(synchronize_session=False)
        async with self._session() as db:
            result = await db.execute(stmt)
            return result.rowcount == 1

    async def delete_terminal_older_than(self, age: timedelta, now: Optional[datetime] = None) -> int:
        cutoff = (now or utcnow()) - age
        stmt = delete(JobRow).where(and_(
            JobRow.status.in_(_TERMINAL),
            JobRow.completed_at.is_not(None),
            JobRow.completed_at < cutoff,
        )).execution_options(synchronize_session=False)
        async with self._session() as db:
            result = await db.execute(stmt)
            return result.rowcount

    async def requeue_stale(self, timeout: timedelta, now: Optional[datetime] = None,
                            exclude: Collection[str] = ()) -> int:
        now = now or utcnow()
        cutoff = now - timeout
        stale = and_(JobRow.status == JobStatus.RUNNING.value, JobRow.updated_at < cutoff)
        if exclude:
            stale = and_(stale, JobRow.job_id.not_in(list(exclude)))
        exhausted = (
            update(JobRow)
            .where(and_(stale, JobRow.attempts >= JobRow.max_attempts))
            .values(
                status=JobStatus.FAILED.value,
                error=func.coalesce(JobRow.error, "worker lost while running"),
                completed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        retryable = (
            update(JobRow)
            .where(and_(stale, JobRow.attempts < JobRow.max_attempts))
            .values(status=JobStatus.PENDING.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        async with self._session() as db:
            failed = (await db.execute(exhausted)).rowcount
            requeued = (await db.execute(retryable)).rowcount
        return failed + requeued

    # ── Converters ─────────────────────────────────────────

    @staticmethod
    def _json(value: Any) -> Any:
        # Some drivers hand JSON back as text
        if isinstance(value, str):
            return json.loads(value)
        return value

    @classmethod
    def _row_to_job(cls, row: JobRow) -> Job:
        return Job.model_validate({
            "job_id": row.job_id,
            "type": row.type,
            "status": row.status,
            "priority": row.priority,
            "payload": cls._json(row.payload),
            "result": cls._json(row.result),
            "error": row.error,
            "attempts": row.attempts,
            "max_attempts": row.max_attempts,
            "scheduled_at": as_utc(row.scheduled_at),
            "next_attempt_at": as_utc(row.next_attempt_at),
            "started_at": as_utc(row.started_at),
            "completed_at": as_utc(row.completed_at),
            "created_at": as_utc(row.created_at),
            "updated_at": as_utc(row.updated_at),
        })
