"""
Tests for the job dispatcher.

Covers:
  - Claim → execute → completed / retry / failed transitions
  - Retry budget and backoff gate
  - Cooperative cancellation of a running campaign
  - Worker pool bound, notify wake-up and shutdown
  - Stale-run recovery and the retention sweeper
"""
import asyncio
from datetime import timedelta

import pytest
from tenacity import wait_none

from channels.base import ChannelError
from config.settings import JobQueueConfig
from database.store_memory import InMemoryJobStore
from job_queue.dispatcher import JobDispatcher, RetentionSweeper
from job_queue.errors import StorageError
from job_queue.handlers import HandlerRegistry
from job_queue.retry import BackoffPolicy
from models.schemas import BulkMessageResult, JobStatus, ScheduledMessageResult, SendResult, utcnow

from conftest import FakeSender


class FlakySender(FakeSender):
    """Returns a send error for the first `failures` calls, then succeeds."""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures
        self.calls = 0

    async def send(self, session_id, recipient, content, message_type="text", media_url=None):
        self.calls += 1
        if self.calls <= self.failures:
            return SendResult(error=f"session busy (call {self.calls})")
        return await super().send(session_id, recipient, content, message_type, media_url)


async def run_until_idle(dispatcher, rounds: int = 10):
    """Poll and drain until nothing new is claimed."""
    for _ in range(rounds):
        busy = dispatcher.in_flight > 0
        started = await dispatcher.poll_once()
        await dispatcher.drain()
        if not started and not busy:
            return


async def wait_for_status(store, job_id, status, timeout: float = 2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        job = await store.get(job_id)
        if job.status == status:
            return job
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError(f"job {job_id} stuck in {job.status}, expected {status}")
        await asyncio.sleep(0.01)


# ──────────────────────────────────────────────────────────────
#  Outcomes
# ──────────────────────────────────────────────────────────────

class TestDispatchOutcomes:
    @pytest.mark.asyncio
    async def test_pending_job_completes(self, store, dispatcher, sender, scheduled_request):
        job = await store.create(scheduled_request())

        started = await dispatcher.poll_once()
        assert [j.job_id for j in started] == [job.job_id]
        assert started[0].attempts == 1
        await dispatcher.drain()

        done = await store.get(job.job_id)
        assert done.status == JobStatus.COMPLETED
        assert done.attempts == 1
        assert isinstance(done.result, ScheduledMessageResult)
        assert done.completed_at is not None
        assert len(sender.sent) == 1

    @pytest.mark.asyncio
    async def test_bulk_job_result_recorded(self, store, dispatcher, bulk_request):
        job = await store.create(bulk_request(payload={"group_id": "g_dealers", "contact_ids": []}))

        await run_until_idle(dispatcher)

        done = await store.get(job.job_id)
        assert done.status == JobStatus.COMPLETED
        assert isinstance(done.result, BulkMessageResult)
        assert done.result.sent_count == 2

    @pytest.mark.asyncio
    async def test_success_on_later_attempt(self, store, directory, queue_config, scheduled_request):
        sender = FlakySender(failures=2)
        dispatcher = JobDispatcher(store, HandlerRegistry.default(sender, directory), queue_config)
        job = await store.create(scheduled_request(max_attempts=3))

        await run_until_idle(dispatcher)

        done = await store.get(job.job_id)
        assert done.status == JobStatus.COMPLETED
        assert done.attempts == 3
        assert sender.calls == 3

    @pytest.mark.asyncio
    async def test_fails_after_max_attempts(self, store, directory, queue_config, scheduled_request):
        sender = FlakySender(failures=10)
        dispatcher = JobDispatcher(store, HandlerRegistry.default(sender, directory), queue_config)
        job = await store.create(scheduled_request(max_attempts=3))

        await run_until_idle(dispatcher)

        failed = await store.get(job.job_id)
        assert failed.status == JobStatus.FAILED
        assert failed.attempts == 3
        assert failed.error == "session busy (call 3)"
        assert failed.result is None
        assert sender.calls == 3

    @pytest.mark.asyncio
    async def test_single_attempt_budget(self, store, directory, queue_config, scheduled_request):
        sender = FlakySender(failures=1)
        dispatcher = JobDispatcher(store, HandlerRegistry.default(sender, directory), queue_config)
        job = await store.create(scheduled_request(max_attempts=1))

        await run_until_idle(dispatcher)

        failed = await store.get(job.job_id)
        assert failed.status == JobStatus.FAILED
        assert failed.attempts == 1
        assert sender.calls == 1

    @pytest.mark.asyncio
    async def test_non_retryable_fails_immediately(self, store, dispatcher, sender, scheduled_request):
        sender.error = ChannelError("Gateway rejected credentials (401)", "whatsapp", retryable=False)
        job = await store.create(scheduled_request(max_attempts=5))

        await run_until_idle(dispatcher)

        failed = await store.get(job.job_id)
        assert failed.status == JobStatus.FAILED
        assert failed.attempts == 1
        assert "401" in failed.error

    @pytest.mark.asyncio
    async def test_handler_crash_is_retried(self, store, dispatcher, sender, scheduled_request):
        calls = []

        async def crash_once(recipient):
            calls.append(recipient.phone)
            if len(calls) == 1:
                raise RuntimeError("unexpected payload shape")
        sender.before_send = crash_once
        job = await store.create(scheduled_request())

        await run_until_idle(dispatcher)

        done = await store.get(job.job_id)
        assert done.status == JobStatus.COMPLETED
        assert done.attempts == 2

    @pytest.mark.asyncio
    async def test_unregistered_type_fails(self, store, queue_config, scheduled_request):
        dispatcher = JobDispatcher(store, HandlerRegistry(), queue_config)
        job = await store.create(scheduled_request())

        await run_until_idle(dispatcher)

        failed = await store.get(job.job_id)
        assert failed.status == JobStatus.FAILED
        assert "no handler registered" in failed.error
        assert failed.attempts == 1


# ──────────────────────────────────────────────────────────────
#  Backoff
# ──────────────────────────────────────────────────────────────

class TestBackoff:
    def test_exponential_capped(self):
        policy = BackoffPolicy(policy="exponential", base_seconds=30, max_seconds=100)
        assert [policy.delay(n) for n in (1, 2, 3, 4)] == [30, 60, 100, 100]

    def test_fixed(self):
        policy = BackoffPolicy(policy="fixed", base_seconds=45)
        assert policy.delay(1) == policy.delay(5) == 45

    def test_unknown_policy_rejected(self):
        with pytest.raises(ValueError):
            BackoffPolicy(policy="linear")

    def test_from_config(self):
        policy = BackoffPolicy.from_config(JobQueueConfig(backoff_policy="fixed", backoff_base_seconds=5))
        assert policy.policy == "fixed"
        assert policy.delay(3) == 5

    @pytest.mark.asyncio
    async def test_retry_waits_for_backoff(self, store, directory, queue_config, scheduled_request):
        sender = FlakySender(failures=1)
        dispatcher = JobDispatcher(
            store, HandlerRegistry.default(sender, directory), queue_config,
            backoff=BackoffPolicy(base_seconds=60),
        )
        job = await store.create(scheduled_request())

        await run_until_idle(dispatcher)

        retrying = await store.get(job.job_id)
        assert retrying.status == JobStatus.PENDING
        assert retrying.attempts == 1
        assert retrying.error == "session busy (call 1)"
        assert retrying.next_attempt_at > utcnow() + timedelta(seconds=50)
        assert await dispatcher.poll_once() == []

        due = await store.list_eligible(10, now=retrying.next_attempt_at)
        assert [j.job_id for j in due] == [job.job_id]


# ──────────────────────────────────────────────────────────────
#  Cancellation
# ──────────────────────────────────────────────────────────────

class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_running_bulk_job(self, store, dispatcher, sender, bulk_request):
        job = await store.create(bulk_request())

        async def cancel_after_first(recipient):
            if recipient.id == "c1":
                await store.mark_terminal(job.job_id, JobStatus.CANCELLED)
        sender.before_send = cancel_after_first

        await run_until_idle(dispatcher)

        cancelled = await store.get(job.job_id)
        assert cancelled.status == JobStatus.CANCELLED
        assert cancelled.result is None
        assert len(sender.sent) == 1

    @pytest.mark.asyncio
    async def test_cancelled_pending_job_never_runs(self, store, dispatcher, sender, scheduled_request):
        job = await store.create(scheduled_request())
        await store.mark_terminal(job.job_id, JobStatus.CANCELLED)

        assert await dispatcher.poll_once() == []
        assert sender.sent == []


# ──────────────────────────────────────────────────────────────
#  Pool / lifecycle
# ──────────────────────────────────────────────────────────────

class TestDispatcherLifecycle:
    @pytest.mark.asyncio
    async def test_worker_pool_bound(self, store, sender, directory, scheduled_request):
        gate = asyncio.Event()

        async def block(recipient):
            await gate.wait()
        sender.before_send = block
        config = JobQueueConfig(worker_pool_size=2, batch_size=10, backoff_base_seconds=0)
        dispatcher = JobDispatcher(store, HandlerRegistry.default(sender, directory), config)
        for _ in range(5):
            await store.create(scheduled_request())

        started = await dispatcher.poll_once()
        assert len(started) == 2
        assert dispatcher.in_flight == 2
        assert await dispatcher.poll_once() == []

        gate.set()
        await run_until_idle(dispatcher)
        stats = await store.statistics()
        assert stats.completed == 5
        assert dispatcher.in_flight == 0

    @pytest.mark.asyncio
    async def test_notify_wakes_poller(self, store, sender, directory, scheduled_request):
        config = JobQueueConfig(poll_interval_seconds=30, backoff_base_seconds=0, shutdown_timeout_seconds=1)
        dispatcher = JobDispatcher(store, HandlerRegistry.default(sender, directory), config)
        await dispatcher.start()
        try:
            await asyncio.sleep(0.05)   # first poll finds nothing
            job = await store.create(scheduled_request())
            dispatcher.notify()
            await wait_for_status(store, job.job_id, JobStatus.COMPLETED)
        finally:
            await dispatcher.stop()
        assert not dispatcher.running

    @pytest.mark.asyncio
    async def test_scheduled_job_runs_when_due(self, store, dispatcher, sender, scheduled_request):
        job = await store.create(scheduled_request(scheduled_at=utcnow() + timedelta(milliseconds=200)))
        assert job.status == JobStatus.SCHEDULED

        await dispatcher.start()
        try:
            assert (await store.get(job.job_id)).status == JobStatus.SCHEDULED
            await wait_for_status(store, job.job_id, JobStatus.COMPLETED)
        finally:
            await dispatcher.stop()

    @pytest.mark.asyncio
    async def test_stop_interrupts_after_timeout(self, store, sender, directory, scheduled_request):
        async def hang(recipient):
            await asyncio.sleep(60)
        sender.before_send = hang
        config = JobQueueConfig(shutdown_timeout_seconds=0.1)
        dispatcher = JobDispatcher(store, HandlerRegistry.default(sender, directory), config)
        job = await store.create(scheduled_request())

        await dispatcher.poll_once()
        await dispatcher.stop()

        # Left running for stale recovery on the next start
        interrupted = await store.get(job.job_id)
        assert interrupted.status == JobStatus.RUNNING
        assert dispatcher.in_flight == 0

    @pytest.mark.asyncio
    async def test_recover_stale(self, store, sender, directory, scheduled_request):
        job = await store.create(scheduled_request())
        await store.mark_running(job.job_id)
        await store.increment_attempts(job.job_id)

        config = JobQueueConfig(stale_timeout_seconds=0, backoff_base_seconds=0)
        dispatcher = JobDispatcher(store, HandlerRegistry.default(sender, directory), config)
        await asyncio.sleep(0.01)

        assert await dispatcher.recover_stale() == 1
        recovered = await store.get(job.job_id)
        assert recovered.status == JobStatus.PENDING
        assert recovered.attempts == 1


# ──────────────────────────────────────────────────────────────
#  Storage faults
# ──────────────────────────────────────────────────────────────

class FaultyStore(InMemoryJobStore):
    """Raises StorageError from the named operations a set number of times."""

    def __init__(self, **faults: int):
        super().__init__(default_max_attempts=3)
        self.faults = dict(faults)

    def _trip(self, operation: str):
        if self.faults.get(operation, 0) > 0:
            self.faults[operation] -= 1
            raise StorageError(f"{operation}: database is locked")

    async def increment_attempts(self, job_id):
        self._trip("increment_attempts")
        return await super().increment_attempts(job_id)

    async def mark_terminal(self, job_id, status, result=None, error=None, now=None):
        self._trip("mark_terminal")
        return await super().mark_terminal(job_id, status, result=result, error=error, now=now)

    async def mark_retry(self, job_id, error, next_attempt_at):
        self._trip("mark_retry")
        return await super().mark_retry(job_id, error, next_attempt_at)


class TestStorageFaults:
    @pytest.fixture(autouse=True)
    def no_write_wait(self, monkeypatch):
        monkeypatch.setattr(JobDispatcher._write.retry, "wait", wait_none())

    def _dispatcher(self, store, sender, directory, **overrides):
        config = JobQueueConfig(backoff_base_seconds=0, **overrides)
        return JobDispatcher(store, HandlerRegistry.default(sender, directory), config)

    @pytest.mark.asyncio
    async def test_completion_write_retried(self, sender, directory, scheduled_request):
        store = FaultyStore(mark_terminal=1)
        dispatcher = self._dispatcher(store, sender, directory)
        job = await store.create(scheduled_request())

        await run_until_idle(dispatcher)

        done = await store.get(job.job_id)
        assert done.status == JobStatus.COMPLETED
        assert done.attempts == 1
        assert len(sender.sent) == 1

    @pytest.mark.asyncio
    async def test_completion_parked_until_store_recovers(self, sender, directory, scheduled_request):
        store = FaultyStore(mark_terminal=4)
        dispatcher = self._dispatcher(store, sender, directory)
        job = await store.create(scheduled_request())

        await dispatcher.poll_once()
        await dispatcher.drain()
        assert (await store.get(job.job_id)).status == JobStatus.RUNNING
        assert dispatcher.in_flight == 0

        assert await dispatcher.poll_once() == []
        done = await store.get(job.job_id)
        assert done.status == JobStatus.COMPLETED
        assert done.attempts == 1
        assert len(sender.sent) == 1

    @pytest.mark.asyncio
    async def test_retry_parked_until_store_recovers(self, directory, scheduled_request):
        sender = FlakySender(failures=1)
        store = FaultyStore(mark_retry=5)
        dispatcher = self._dispatcher(store, sender, directory)
        job = await store.create(scheduled_request())

        await dispatcher.poll_once()
        await dispatcher.drain()
        await dispatcher.poll_once()    # parked write still fails once more
        assert (await store.get(job.job_id)).status == JobStatus.RUNNING

        await run_until_idle(dispatcher)
        done = await store.get(job.job_id)
        assert done.status == JobStatus.COMPLETED
        assert done.attempts == 2
        assert sender.calls == 2

    @pytest.mark.asyncio
    async def test_failed_attempt_count_releases_claim(self, sender, directory, scheduled_request):
        store = FaultyStore(increment_attempts=4)
        dispatcher = self._dispatcher(store, sender, directory)
        job = await store.create(scheduled_request())

        assert await dispatcher.poll_once() == []
        released = await store.get(job.job_id)
        assert released.status == JobStatus.PENDING
        assert released.attempts == 0
        assert released.error.startswith("claim interrupted")

        await run_until_idle(dispatcher)
        done = await store.get(job.job_id)
        assert done.status == JobStatus.COMPLETED
        assert done.attempts == 1

    @pytest.mark.asyncio
    async def test_stale_recovery_skips_in_flight_jobs(self, store, sender, directory, scheduled_request):
        gate = asyncio.Event()

        async def block(recipient):
            await gate.wait()
        sender.before_send = block
        dispatcher = self._dispatcher(store, sender, directory, stale_timeout_seconds=0)

        mine = await store.create(scheduled_request())
        await dispatcher.poll_once()
        orphan = await store.create(scheduled_request())
        await store.mark_running(orphan.job_id)
        await store.increment_attempts(orphan.job_id)
        await asyncio.sleep(0.01)

        assert await dispatcher.recover_stale() == 1
        assert (await store.get(mine.job_id)).status == JobStatus.RUNNING
        assert (await store.get(orphan.job_id)).status == JobStatus.PENDING

        gate.set()
        await run_until_idle(dispatcher)
        assert (await store.get(mine.job_id)).status == JobStatus.COMPLETED
        assert (await store.get(orphan.job_id)).status == JobStatus.COMPLETED


class TestRetentionSweeper:
    @pytest.mark.asyncio
    async def test_sweep_removes_old_terminal_jobs(self, store, scheduled_request):
        old = await store.create(scheduled_request())
        recent = await store.create(scheduled_request())
        await store.mark_terminal(old.job_id, JobStatus.CANCELLED, now=utcnow() - timedelta(days=8))
        await store.mark_terminal(recent.job_id, JobStatus.CANCELLED)

        sweeper = RetentionSweeper(store, retention_days=7)
        assert await sweeper.sweep_once() == 1
        assert await store.get(old.job_id) is None
        assert await store.get(recent.job_id) is not None

    @pytest.mark.asyncio
    async def test_background_start_stop(self, store):
        sweeper = RetentionSweeper(store, retention_days=7, interval_seconds=0.01)
        task = await sweeper.start_background()
        await asyncio.sleep(0.05)
        await sweeper.stop()
        assert task.done()
