"""
Messaging collaborators — the narrow interfaces job handlers depend on.

  MessageSender     delivers one message through a platform session
  ContactDirectory  resolves contacts, groups and templates
  ChannelError      transport/session fault, with a retryable flag
  CircuitBreaker    trips after repeated transport faults so a dead session
                    stops being hammered by every queued campaign

Concrete REST implementations live in channels/whatsapp_gateway.py; tests
use in-process fakes.
"""
from __future__ import annotations

import abc
import time
import structlog
from typing import Callable, Optional

from models.schemas import MessageTemplate, Recipient, SendResult

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Session or transport failure. Per-recipient problems are SendResult.error instead."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


class CircuitOpenError(ChannelError):
    def __init__(self, channel: str = "", retry_in: float = 0.0):
        self.retry_in = retry_in
        super().__init__(f"{channel or 'channel'} sends paused for {retry_in:.0f}s after repeated failures",
                         channel, retryable=True)


# ══════════════════════════════════════════════════════════════
#  CIRCUIT BREAKER
# ══════════════════════════════════════════════════════════════

CLOSED, OPEN, HALF_OPEN = "closed", "open", "half_open"


class CircuitBreaker:
    """
    Consecutive-failure breaker.

    After `failure_threshold` failures in a row, check() raises
    CircuitOpenError for `recovery_timeout` seconds. The first call after that
    is a probe: success closes the breaker, failure re-opens it.
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0,
                 name: str = "", clock: Callable[[], float] = time.monotonic):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.name = name
        self._clock = clock
        self._consecutive_failures = 0
        self._opened_at: Optional[float] = None

    @property
    def state(self) -> str:
        if self._opened_at is None:
            return CLOSED
        if self._clock() - self._opened_at >= self.recovery_timeout:
            return HALF_OPEN
        return OPEN

    def check(self) -> None:
        """Raise CircuitOpenError while open; half-open lets a probe through."""
        if self.state == OPEN:
            retry_in = self.recovery_timeout - (self._clock() - self._opened_at)
            raise CircuitOpenError(self.name, retry_in)

    def record_failure(self) -> None:
        self._consecutive_failures += 1
        probing = self.state == HALF_OPEN
        if probing or self._consecutive_failures >= self.failure_threshold:
            self._opened_at = self._clock()
            logger.warning("circuit_opened",
                           channel=self.name,
                           failures=self._consecutive_failures,
                           after_probe=probing)

    def record_success(self) -> None:
        if self._opened_at is not None:
            logger.info("circuit_closed", channel=self.name)
        self._consecutive_failures = 0
        self._opened_at = None


# ══════════════════════════════════════════════════════════════
#  COLLABORATOR INTERFACES
# ══════════════════════════════════════════════════════════════

class MessageSender(abc.ABC):

    @abc.abstractmethod
    async def send(
        self,
        session_id: str,
        recipient: Recipient,
        content: str,
        message_type: str = "text",
        media_url: Optional[str] = None,
    ) -> SendResult:
        """
        Send one message. Delivery problems for this recipient come back as
        SendResult.error; problems with the session or transport raise
        ChannelError.
        """
        ...


class ContactDirectory(abc.ABC):
    """Read access to the dashboard's contacts, groups and templates."""

    @abc.abstractmethod
    async def get_contacts(self, contact_ids: list[str]) -> list[Recipient]:
        """Unknown ids are skipped, not errors."""
        ...

    @abc.abstractmethod
    async def resolve_group(self, group_id: str) -> list[Recipient]:
        ...

    @abc.abstractmethod
    async def get_template(self, template_id: str) -> Optional[MessageTemplate]:
        ...
