"""
Job Handlers — Per-type execution of a claimed job.

Each handler takes a JobContext (the running job plus a cooperative
cancellation check) and returns the typed result for its job type, or raises
HandlerError. The dispatcher turns that into completed / retry / failed.

  bulk_message       resolve contacts → render template per contact → send,
                     pacing sends with delay_between (optionally jittered)
  scheduled_message  render → one send

Adding a job type = one payload/result model in models/schemas.py and one
handler registered here.
"""
from __future__ import annotations

import abc
import asyncio
import random
import structlog
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

from channels.base import ChannelError, ContactDirectory, MessageSender
from database.store_base import BaseJobStore
from job_queue.errors import HandlerError, StorageError
from models.schemas import (
    BulkMessagePayload, BulkMessageResult, Job, JobResult, JobStatus, JobType,
    MessageTemplate, Recipient, RecipientFailure, ScheduledMessagePayload,
    ScheduledMessageResult, utcnow,
)
from utils.templating import render_message

logger = structlog.get_logger()

T = TypeVar("T")

MAX_RECORDED_FAILURES = 100     # per-recipient errors kept in a bulk result
JITTER_RATIO = 0.3              # random_delay varies delay_between by ±30%
CANCEL_CHECK_INTERVAL = 1.0     # seconds between cancellation checks while pacing


@dataclass
class JobContext:
    """What a handler gets besides its payload."""
    job: Job
    store: BaseJobStore
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep)

    async def is_cancelled(self) -> bool:
        """Re-read the job's status. A storage blip counts as not cancelled."""
        try:
            current = await self.store.get(self.job.job_id)
        except StorageError as e:
            logger.warning("cancel_check_failed", job_id=self.job.job_id, error=str(e))
            return False
        return current is None or current.status == JobStatus.CANCELLED

    async def pause(self, seconds: float) -> bool:
        """Sleep for `seconds`, checking for cancellation along the way. True if cancelled."""
        remaining = seconds
        while remaining > 0:
            step = min(remaining, CANCEL_CHECK_INTERVAL)
            await self.sleep(step)
            remaining -= step
            if await self.is_cancelled():
                return True
        return False


class JobHandler(abc.ABC):
    job_type: JobType

    @abc.abstractmethod
    async def handle(self, ctx: JobContext) -> JobResult:
        ...


async def _collaborator(call: Awaitable[T]) -> T:
    """Await a directory/sender call, mapping ChannelError onto HandlerError."""
    try:
        return await call
    except ChannelError as e:
        raise HandlerError(str(e), retryable=e.retryable) from e


# ──────────────────────────────────────────────────────────────
#  Bulk message
# ──────────────────────────────────────────────────────────────

class BulkMessageHandler(JobHandler):
    job_type = JobType.BULK_MESSAGE

    def __init__(self, sender: MessageSender, directory: ContactDirectory,
                 rng: Optional[random.Random] = None):
        self.sender = sender
        self.directory = directory
        self._rng = rng or random.Random()

    async def handle(self, ctx: JobContext) -> BulkMessageResult:
        payload = ctx.job.payload
        if not isinstance(payload, BulkMessagePayload):
            raise HandlerError("payload is not a bulk_message payload", retryable=False)

        started_at = utcnow()
        template = await self._load_template(payload)
        body = template.content if template else payload.message
        recipients = await self._resolve_recipients(payload)
        if not recipients:
            raise HandlerError("no contacts to message", retryable=False)

        logger.info("bulk_message_started",
                    job_id=ctx.job.job_id,
                    session_id=payload.session_id,
                    contacts=len(recipients),
                    attempt=ctx.job.attempts)

        sent = 0
        failures: list[RecipientFailure] = []
        transport_errors: list[ChannelError] = []
        cancelled = False

        for index, recipient in enumerate(recipients):
            if await ctx.is_cancelled():
                cancelled = True
                break

            content = render_message(body, recipient, payload.variables, template)
            try:
                outcome = await self.sender.send(payload.session_id, recipient, content)
                error = None if outcome.ok else (outcome.error or "send failed")
            except ChannelError as e:
                error = str(e)
                transport_errors.append(e)
            except Exception as e:
                # A broken send for one contact is recorded, never raised
                logger.warning("bulk_message_send_crashed",
                               job_id=ctx.job.job_id,
                               contact_id=recipient.id,
                               error=str(e),
                               exc_info=True)
                error = f"{type(e).__name__}: {e}"

            if error is None:
                sent += 1
            else:
                failures.append(RecipientFailure(contact_id=recipient.id, phone=recipient.phone, error=error))
                logger.debug("bulk_message_recipient_failed",
                             job_id=ctx.job.job_id, contact_id=recipient.id, error=error)

            if index < len(recipients) - 1 and payload.delay_between > 0:
                if await ctx.pause(self._delay(payload)):
                    cancelled = True
                    break

        if sent == 0 and failures and len(transport_errors) == len(failures):
            # Nothing went out and every failure was the session/transport, not
            # a recipient: retrying the whole campaign cannot double-send.
            raise HandlerError(f"session {payload.session_id} unavailable: {failures[0].error}",
                               retryable=any(e.retryable for e in transport_errors))

        result = BulkMessageResult(
            total_contacts=len(recipients),
            sent_count=sent,
            failed_count=len(failures),
            failures=failures[:MAX_RECORDED_FAILURES],
            cancelled=cancelled,
            started_at=started_at,
            finished_at=utcnow(),
        )
        logger.info("bulk_message_finished",
                    job_id=ctx.job.job_id,
                    sent=sent,
                    failed=len(failures),
                    cancelled=cancelled)
        return result

    async def _load_template(self, payload: BulkMessagePayload) -> Optional[MessageTemplate]:
        if not payload.template_id:
            return None
        template = await _collaborator(self.directory.get_template(payload.template_id))
        if template is None:
            raise HandlerError(f"template {payload.template_id} not found", retryable=False)
        return template

    async def _resolve_recipients(self, payload: BulkMessagePayload) -> list[Recipient]:
        recipients: list[Recipient] = []
        if payload.contact_ids:
            recipients.extend(await _collaborator(self.directory.get_contacts(payload.contact_ids)))
        if payload.group_id:
            recipients.extend(await _collaborator(self.directory.resolve_group(payload.group_id)))

        # A contact listed explicitly and via the group gets one message
        seen: set[str] = set()
        unique = []
        for r in recipients:
            if r.id in seen:
                continue
            seen.add(r.id)
            unique.append(r)
        return unique

    def _delay(self, payload: BulkMessagePayload) -> float:
        base = payload.delay_between
        if not payload.random_delay:
            return base
        variation = base * JITTER_RATIO
        return max(0.0, base + self._rng.uniform(-variation, variation))


# ──────────────────────────────────────────────────────────────
#  Scheduled message
# ──────────────────────────────────────────────────────────────

class ScheduledMessageHandler(JobHandler):
    job_type = JobType.SCHEDULED_MESSAGE

    def __init__(self, sender: MessageSender):
        self.sender = sender

    async def handle(self, ctx: JobContext) -> ScheduledMessageResult:
        payload = ctx.job.payload
        if not isinstance(payload, ScheduledMessagePayload):
            raise HandlerError("payload is not a scheduled_message payload", retryable=False)

        recipient = Recipient(id=payload.phone, phone=payload.phone)
        # the number is the only contact field a scheduled send knows
        content = render_message(payload.message, variables={**payload.variables, "phone": payload.phone})
        outcome = await _collaborator(self.sender.send(
            payload.session_id, recipient, content,
            message_type=payload.message_type,
            media_url=payload.media_url,
        ))
        if not outcome.ok:
            raise HandlerError(outcome.error or "send failed")

        logger.info("scheduled_message_sent",
                    job_id=ctx.job.job_id,
                    session_id=payload.session_id,
                    message_id=outcome.message_id)
        return ScheduledMessageResult(
            message_id=outcome.message_id,
            phone=payload.phone,
            session_id=payload.session_id,
            sent_at=utcnow(),
        )


# ──────────────────────────────────────────────────────────────
#  Registry
# ──────────────────────────────────────────────────────────────

class HandlerRegistry:
    def __init__(self):
        self._handlers: dict[JobType, JobHandler] = {}

    def register(self, handler: JobHandler):
        self._handlers[handler.job_type] = handler

    def get(self, job_type: JobType) -> Optional[JobHandler]:
        return self._handlers.get(job_type)

    @property
    def job_types(self) -> list[JobType]:
        return list(self._handlers)

    @classmethod
    def default(cls, sender: MessageSender, directory: ContactDirectory) -> "HandlerRegistry":
        registry = cls()
        registry.register(BulkMessageHandler(sender, directory))
        registry.register(ScheduledMessageHandler(sender))
        return registry
