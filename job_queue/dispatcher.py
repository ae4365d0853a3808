"""
Job Dispatcher — Polls the job store and drives claimed jobs to an outcome.

Runs as async tasks inside the application process (single dispatcher per
database; no cross-node coordination).

Loop:
  ┌──────────┐  list_eligible   ┌─────────────┐  mark_running +     ┌──────────────┐
  │  Poller  │─────────────────▶│  Job Store  │  increment_attempts │ Worker tasks │
  │ (every N │◀─ notify() on ───│             │────────────────────▶│ (≤ pool size)│
  │ seconds) │   submit         └──────┬──────┘                     └──────┬───────┘
  └──────────┘                         ▲                                   │
                                       │ completed / pending+backoff /     │
                                       └──────────── failed ───────────────┘

A slow campaign occupies one worker slot; the poller keeps filling the rest.

Store writes that fail with StorageError are retried (tenacity); an outcome
that still cannot be written is parked and written at the start of each later
poll. Every cycle also requeues stale running jobs this process does not own.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import timedelta
from functools import partial
from typing import Awaitable, Callable, Optional

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import JobQueueConfig
from database.store_base import BaseJobStore
from job_queue.errors import HandlerError, StorageError
from job_queue.handlers import HandlerRegistry, JobContext
from job_queue.retry import BackoffPolicy
from models.schemas import Job, JobResult, JobStatus, utcnow

logger = structlog.get_logger()

# zero-argument store call, re-invocable until it lands
StoreWrite = Callable[[], Awaitable[Optional[Job]]]


class JobDispatcher:
    """
    Claims eligible jobs and runs them on a bounded pool of asyncio tasks.

    Usage:
        dispatcher = JobDispatcher(store, registry, config)
        await dispatcher.start()     # recovers stale jobs, starts polling
        dispatcher.notify()          # poll now instead of waiting
        await dispatcher.stop()      # waits for in-flight jobs up to shutdown_timeout
    """

    def __init__(
        self,
        store: BaseJobStore,
        registry: HandlerRegistry,
        config: JobQueueConfig = None,
        backoff: BackoffPolicy = None,
    ):
        config = config or JobQueueConfig()
        self.store = store
        self.registry = registry
        self.poll_interval = config.poll_interval_seconds
        self.batch_size = config.batch_size
        self.worker_pool_size = config.worker_pool_size
        self.stale_timeout = timedelta(seconds=config.stale_timeout_seconds)
        self.shutdown_timeout = config.shutdown_timeout_seconds
        self.backoff = backoff or BackoffPolicy.from_config(config)
        self._in_flight: dict[asyncio.Task, str] = {}                 # task → job_id
        self._unrecorded: dict[str, tuple[str, StoreWrite]] = {}      # job_id → (outcome, write)
        self._wake = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def notify(self):
        """Wake the poller (new work was submitted)."""
        self._wake.set()

    # ── Lifecycle ─────────────────────────────────────────

    async def start(self) -> asyncio.Task:
        await self.recover_stale()
        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info("dispatcher_started",
                    poll_interval=self.poll_interval,
                    batch_size=self.batch_size,
                    workers=self.worker_pool_size)
        return self._task

    async def stop(self):
        """Stop polling, then give in-flight jobs shutdown_timeout to finish."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self._in_flight:
            done, pending = await asyncio.wait(set(self._in_flight), timeout=self.shutdown_timeout)
            for task in pending:
                task.cancel()
            if pending:
                # Interrupted jobs stay running and are picked up by recover_stale()
                await asyncio.gather(*pending, return_exceptions=True)
                logger.warning("dispatcher_jobs_interrupted", count=len(pending))
        if self._unrecorded:
            await self.flush_unrecorded()
        # Anything still parked stays running in the store until stale recovery
        logger.info("dispatcher_stopped", unrecorded=len(self._unrecorded))

    async def recover_stale(self) -> int:
        """Requeue jobs stuck in running, except ones this dispatcher still owns."""
        owned = set(self._in_flight.values()) | set(self._unrecorded)
        try:
            recovered = await self.store.requeue_stale(self.stale_timeout, exclude=owned)
        except StorageError as e:
            logger.error("stale_recovery_failed", error=str(e))
            return 0
        if recovered:
            logger.warning("stale_jobs_recovered", count=recovered)
        return recovered

    async def drain(self):
        """Wait until every in-flight job has finished."""
        while self._in_flight:
            await asyncio.gather(*set(self._in_flight), return_exceptions=True)

    async def _run(self):
        while self._running:
            try:
                await self.recover_stale()
                await self.poll_once()
            except StorageError as e:
                logger.warning("dispatcher_poll_storage_error", error=str(e))
            except Exception as e:
                logger.error("dispatcher_poll_error", error=str(e), exc_info=True)
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()

    # ── Store writes ──────────────────────────────────────

    @retry(
        retry=retry_if_exception_type(StorageError),
        stop=stop_after_attempt(4),
        wait=wait_exponential(multiplier=0.5, max=5),
        reraise=True,
    )
    async def _write(self, write: StoreWrite) -> Optional[Job]:
        return await write()

    async def _settle(self, job_id: str, outcome: str, write: StoreWrite) -> tuple[bool, Optional[Job]]:
        """
        Persist a job outcome. Returns (written, updated job); updated is None
        when the job's status moved on underneath us.

        A write that still hits StorageError after retries is parked and tried
        again at the start of every poll until the store accepts it.
        """
        try:
            return True, await self._write(write)
        except StorageError as e:
            self._unrecorded[job_id] = (outcome, write)
            logger.error("job_outcome_deferred", job_id=job_id, outcome=outcome, error=str(e))
            return False, None

    async def flush_unrecorded(self) -> int:
        """Retry parked outcome writes once each. Returns how many landed."""
        landed = 0
        for job_id, (outcome, write) in list(self._unrecorded.items()):
            try:
                updated = await write()
            except StorageError as e:
                logger.warning("job_outcome_still_deferred", job_id=job_id, outcome=outcome, error=str(e))
                continue
            del self._unrecorded[job_id]
            landed += 1
            logger.info("job_outcome_recorded",
                        job_id=job_id,
                        outcome=outcome,
                        applied=updated is not None)
        return landed

    # ── Polling / claiming ────────────────────────────────

    async def poll_once(self) -> list[Job]:
        """Claim up to min(batch_size, free worker slots) eligible jobs and start them."""
        if self._unrecorded:
            await self.flush_unrecorded()

        free = self.worker_pool_size - len(self._in_flight)
        if free <= 0:
            return []

        candidates = await self.store.list_eligible(min(self.batch_size, free))
        started: list[Job] = []
        for candidate in candidates:
            job = await self._claim(candidate.job_id)
            if job is None:
                continue
            task = asyncio.create_task(self._execute(job))
            self._in_flight[task] = job.job_id
            task.add_done_callback(self._on_done)
            started.append(job)
        return started

    async def _claim(self, job_id: str) -> Optional[Job]:
        if await self._write(partial(self.store.mark_running, job_id)) is None:
            logger.debug("job_claim_lost", job_id=job_id)
            return None
        try:
            job = await self._write(partial(self.store.increment_attempts, job_id))
        except StorageError as e:
            # Running without a counted attempt: hand it back to the queue
            release = partial(self.store.mark_retry, job_id, f"claim interrupted: {e}", utcnow())
            await self._settle(job_id, "released", release)
            return None
        if job is None:
            # Cancelled between the two steps
            logger.info("job_claim_abandoned", job_id=job_id)
            return None
        logger.info("job_claimed",
                    job_id=job.job_id,
                    job_type=job.type.value,
                    priority=job.priority,
                    attempt=job.attempts,
                    max_attempts=job.max_attempts)
        return job

    def _on_done(self, task: asyncio.Task):
        self._in_flight.pop(task, None)
        if self._running:
            self._wake.set()   # a slot freed up

    # ── Execution / outcome ───────────────────────────────

    async def _execute(self, job: Job):
        handler = self.registry.get(job.type)
        try:
            if handler is None:
                raise HandlerError(f"no handler registered for job type {job.type.value}", retryable=False)
            result = await handler.handle(JobContext(job=job, store=self.store))
        except HandlerError as e:
            await self._record_failure(job, str(e), e.retryable)
        except asyncio.CancelledError:
            logger.warning("job_interrupted", job_id=job.job_id, attempt=job.attempts)
            raise
        except Exception as e:
            logger.error("job_handler_crashed",
                         job_id=job.job_id,
                         error=str(e),
                         exc_info=True)
            await self._record_failure(job, f"{type(e).__name__}: {e}", retryable=True)
        else:
            await self._record_success(job, result)

    async def _record_success(self, job: Job, result: JobResult):
        write = partial(self.store.mark_terminal, job.job_id, JobStatus.COMPLETED, result=result)
        written, done = await self._settle(job.job_id, "completed", write)
        if not written:
            return
        if done is None:
            logger.info("job_outcome_discarded", job_id=job.job_id, outcome="completed",
                        reason="status changed while running")
            return
        logger.info("job_completed", job_id=job.job_id, attempt=job.attempts)

    async def _record_failure(self, job: Job, error: str, retryable: bool):
        exhausted = job.attempts >= job.max_attempts
        if retryable and not exhausted:
            next_attempt_at = self.backoff.next_attempt_at(job.attempts)
            write = partial(self.store.mark_retry, job.job_id, error, next_attempt_at)
            outcome = "retry"
        else:
            write = partial(self.store.mark_terminal, job.job_id, JobStatus.FAILED, error=error)
            outcome = "failed"
        written, updated = await self._settle(job.job_id, outcome, write)
        if not written:
            return

        if updated is None:
            logger.info("job_outcome_discarded", job_id=job.job_id, outcome=outcome,
                        reason="status changed while running")
        elif outcome == "retry":
            logger.warning("job_retry_scheduled",
                           job_id=job.job_id,
                           attempt=job.attempts,
                           max_attempts=job.max_attempts,
                           next_attempt_at=updated.next_attempt_at.isoformat(),
                           error=error)
        else:
            logger.error("job_failed",
                         job_id=job.job_id,
                         attempt=job.attempts,
                         retryable=retryable,
                         error=error)


# ──────────────────────────────────────────────────────────────
#  Retention Sweeper
# ──────────────────────────────────────────────────────────────

class RetentionSweeper:
    """
    Background task that periodically deletes terminal jobs whose
    completed_at is older than the retention period.
    """

    def __init__(self, store: BaseJobStore, retention_days: int = 7, interval_seconds: float = 3600):
        self.store = store
        self.retention = timedelta(days=retention_days)
        self.interval = interval_seconds
        self._task: Optional[asyncio.Task] = None

    async def sweep_once(self) -> int:
        removed = await self.store.delete_terminal_older_than(self.retention)
        if removed:
            logger.info("retention_sweep", removed=removed, retention_days=self.retention.days)
        return removed

    async def start_background(self) -> asyncio.Task:
        self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self):
        logger.info("retention_sweeper_started", interval=self.interval)
        while True:
            try:
                await self.sweep_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("retention_sweep_error", error=str(e))
            await asyncio.sleep(self.interval)
