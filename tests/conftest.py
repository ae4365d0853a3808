"""Shared test fixtures for the dispatch service."""
import pytest
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from channels.base import ChannelError, ContactDirectory, MessageSender
from config.settings import JobQueueConfig
from database.store_memory import InMemoryJobStore
from job_queue.dispatcher import JobDispatcher
from job_queue.handlers import HandlerRegistry
from job_queue.service import JobQueueService
from models.schemas import (
    JobRequest, JobType, MessageTemplate, Recipient, SendResult,
)


# ──────────────────────────────────────────────────────────────
#  Fake collaborators
# ──────────────────────────────────────────────────────────────

class FakeSender(MessageSender):
    """Records sends; can fail specific phones or raise on every call."""

    def __init__(self, fail_phones: tuple = ()):
        self.sent: list[dict[str, Any]] = []
        self.fail_phones = set(fail_phones)
        self.error: Optional[ChannelError] = None
        self.before_send: Optional[Callable[[Recipient], Awaitable[None]]] = None

    async def send(self, session_id, recipient, content, message_type="text", media_url=None):
        if self.before_send:
            await self.before_send(recipient)
        if self.error:
            raise self.error
        if recipient.phone in self.fail_phones:
            return SendResult(error="number is not on WhatsApp")
        self.sent.append({
            "session_id": session_id,
            "phone": recipient.phone,
            "content": content,
            "message_type": message_type,
            "media_url": media_url,
        })
        return SendResult(message_id=f"wamid.{len(self.sent)}")


class FakeDirectory(ContactDirectory):
    def __init__(self, contacts: list[Recipient] = None, groups: dict[str, list[str]] = None,
                 templates: list[MessageTemplate] = None):
        self.contacts = {c.id: c for c in (contacts or [])}
        self.groups = groups or {}
        self.templates = {t.id: t for t in (templates or [])}

    async def get_contacts(self, contact_ids):
        return [self.contacts[cid] for cid in contact_ids if cid in self.contacts]

    async def resolve_group(self, group_id):
        return [self.contacts[cid] for cid in self.groups.get(group_id, []) if cid in self.contacts]

    async def get_template(self, template_id):
        return self.templates.get(template_id)


# ──────────────────────────────────────────────────────────────
#  Fixtures
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def recipients() -> list[Recipient]:
    return [
        Recipient(id="c1", name="Asha Rao", phone="+919800000001", email="asha@example.com",
                  company="Rao Textiles", position="Owner"),
        Recipient(id="c2", name="Vikram Shah", phone="+919800000002", company="Shah & Sons"),
        Recipient(id="c3", name="Meera Iyer", phone="+919800000003", position="Buyer"),
    ]


@pytest.fixture
def welcome_template() -> MessageTemplate:
    return MessageTemplate(
        id="t_welcome",
        name="welcome",
        content="Hi {{name}} from {{company}}, {{offer}}",
        variables={"offer": "10% off this week", "company": "your company"},
    )


@pytest.fixture
def directory(recipients, welcome_template) -> FakeDirectory:
    return FakeDirectory(
        contacts=recipients,
        groups={"g_dealers": ["c2", "c3"]},
        templates=[welcome_template],
    )


@pytest.fixture
def sender() -> FakeSender:
    return FakeSender()


@pytest.fixture
def queue_config() -> JobQueueConfig:
    return JobQueueConfig(
        poll_interval_seconds=0.05,
        batch_size=10,
        worker_pool_size=5,
        backoff_base_seconds=0,
        shutdown_timeout_seconds=1,
    )


@pytest.fixture
def store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture
def registry(sender, directory) -> HandlerRegistry:
    return HandlerRegistry.default(sender, directory)


@pytest.fixture
def dispatcher(store, registry, queue_config) -> JobDispatcher:
    return JobDispatcher(store, registry, queue_config)


@pytest.fixture
def service(store, dispatcher, queue_config) -> JobQueueService:
    return JobQueueService(store, dispatcher, queue_config)


@pytest.fixture
def now() -> datetime:
    return datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def bulk_request():
    """Factory for bulk_message requests."""
    def _make(**overrides) -> JobRequest:
        payload = {
            "session_id": "sess_main",
            "contact_ids": ["c1", "c2", "c3"],
            "message": "Hello {{name}}",
        }
        payload.update(overrides.pop("payload", {}))
        return JobRequest(type=JobType.BULK_MESSAGE, payload=payload, **overrides)
    return _make


@pytest.fixture
def scheduled_request():
    """Factory for scheduled_message requests."""
    def _make(**overrides) -> JobRequest:
        payload = {
            "session_id": "sess_main",
            "phone": "+919811111111",
            "message": "Your order {{order_id}} ships today",
            "variables": {"order_id": "A-1001"},
        }
        payload.update(overrides.pop("payload", {}))
        return JobRequest(type=JobType.SCHEDULED_MESSAGE, payload=payload, **overrides)
    return _make