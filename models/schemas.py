"""
Core data models for the dispatch system.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class JobType(str, Enum):
    BULK_MESSAGE = "bulk_message"
    SCHEDULED_MESSAGE = "scheduled_message"


class JobStatus(str, Enum):
    SCHEDULED = "scheduled"
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
CLAIMABLE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.SCHEDULED})


# ──────────────────────────────────────────────────────────────
#  Payloads: one variant per job type, tagged by `type`
# ──────────────────────────────────────────────────────────────

class BulkMessagePayload(BaseModel):
    """A campaign: one rendered message per contact, paced by delay_between."""
    type: Literal["bulk_message"] = "bulk_message"
    session_id: str = Field(min_length=1)
    template_id: Optional[str] = None
    message: str = ""                         # inline body when no template is used
    contact_ids: list[str] = []
    group_id: Optional[str] = None
    delay_between: float = Field(default=0, ge=0)   # seconds between sends
    random_delay: bool = False                # ±30% jitter on delay_between
    variables: dict[str, str] = {}

    @model_validator(mode="after")
    def _check_targets(self) -> "BulkMessagePayload":
        if not self.contact_ids and not self.group_id:
            raise ValueError("either contact_ids or group_id is required")
        if not self.template_id and not self.message:
            raise ValueError("either template_id or message is required")
        return self


class ScheduledMessagePayload(BaseModel):
    """A single message to one phone number."""
    type: Literal["scheduled_message"] = "scheduled_message"
    session_id: str = Field(min_length=1)
    phone: str = Field(min_length=1)
    message: str = ""
    message_type: str = "text"                # text | image | document | ...
    media_url: Optional[str] = None
    variables: dict[str, str] = {}

    @model_validator(mode="after")
    def _check_body(self) -> "ScheduledMessagePayload":
        if not self.message and not self.media_url:
            raise ValueError("either message or media_url is required")
        return self


JobPayload = Annotated[
    Union[BulkMessagePayload, ScheduledMessagePayload],
    Field(discriminator="type"),
]


# ──────────────────────────────────────────────────────────────
#  Results: set once, on terminal success
# ──────────────────────────────────────────────────────────────

class RecipientFailure(BaseModel):
    contact_id: str
    phone: str = ""
    error: str


class BulkMessageResult(BaseModel):
    type: Literal["bulk_message"] = "bulk_message"
    total_contacts: int = 0
    sent_count: int = 0
    failed_count: int = 0
    failures: list[RecipientFailure] = []     # capped, see handlers.MAX_RECORDED_FAILURES
    cancelled: bool = False                   # stopped early by an explicit cancel
    started_at: datetime
    finished_at: datetime


class ScheduledMessageResult(BaseModel):
    type: Literal["scheduled_message"] = "scheduled_message"
    message_id: str
    phone: str
    session_id: str
    sent_at: datetime


JobResult = Annotated[
    Union[BulkMessageResult, ScheduledMessageResult],
    Field(discriminator="type"),
]


# ──────────────────────────────────────────────────────────────
#  Job: the persisted unit of work
# ──────────────────────────────────────────────────────────────

class JobRequest(BaseModel):
    """What a producer submits. Defaults for priority/max_attempts are applied by the store."""
    type: JobType
    payload: JobPayload
    priority: Optional[int] = Field(default=None, ge=1, le=10)
    max_attempts: Optional[int] = Field(default=None, ge=1)
    scheduled_at: Optional[datetime] = None

    @model_validator(mode="before")
    @classmethod
    def _tag_payload(cls, data: Any) -> Any:
        # Callers send the payload without its tag; the job type supplies it.
        if isinstance(data, dict):
            payload = data.get("payload")
            job_type = data.get("type")
            if isinstance(payload, dict) and job_type is not None and "type" not in payload:
                tag = job_type.value if isinstance(job_type, JobType) else job_type
                data = {**data, "payload": {**payload, "type": tag}}
        return data

    @model_validator(mode="after")
    def _payload_matches_type(self) -> "JobRequest":
        if self.payload.type != self.type.value:
            raise ValueError(f"payload of type {self.payload.type!r} does not match job type {self.type.value!r}")
        if self.scheduled_at is not None:
            self.scheduled_at = as_utc(self.scheduled_at)
        return self


class Job(BaseModel):
    job_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: JobType
    status: JobStatus = JobStatus.PENDING
    priority: int = 5
    payload: JobPayload
    result: Optional[JobResult] = None
    error: Optional[str] = None
    attempts: int = 0
    max_attempts: int = 3
    scheduled_at: Optional[datetime] = None
    next_attempt_at: Optional[datetime] = None   # retry backoff gate
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_eligible(self, now: datetime) -> bool:
        """True when the status and both time gates allow a claim at `now`."""
        if self.status not in CLAIMABLE_STATUSES:
            return False
        if self.attempts >= self.max_attempts:
            return False
        if self.scheduled_at is not None and as_utc(self.scheduled_at) > now:
            return False
        if self.next_attempt_at is not None and as_utc(self.next_attempt_at) > now:
            return False
        return True


class JobPage(BaseModel):
    jobs: list[Job]
    total: int
    page: int
    limit: int
    pages: int


class JobStatistics(BaseModel):
    total: int = 0
    pending: int = 0
    scheduled: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0


class JobSubmitResponse(BaseModel):
    job_id: str
    status: JobStatus
    message: str = ""


# ──────────────────────────────────────────────────────────────
#  Collaborator types: contacts, templates, delivery
# ──────────────────────────────────────────────────────────────

class Recipient(BaseModel):
    """A contact resolved for a send."""
    id: str
    phone: str
    name: str = ""
    email: str = ""
    company: str = ""
    position: str = ""


class MessageTemplate(BaseModel):
    id: str
    name: str = ""
    content: str
    variables: dict[str, str] = {}           # default values for {{placeholders}}


class SendResult(BaseModel):
    message_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and bool(self.message_id)
