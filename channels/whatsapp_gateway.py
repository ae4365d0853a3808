"""
WhatsApp gateway client — REST implementations of MessageSender and
ContactDirectory.

The session manager (which owns the live WhatsApp sessions) and the
dashboard CRUD backend are reached over HTTP. Endpoint paths come from
settings.yaml (gateway.endpoints) and accept {placeholders}:

    gateway:
      base_url: http://localhost:3000
      api_key: ${GATEWAY_API_KEY}
      endpoints:
        send_message: /api/sessions/{session_id}/messages
        get_contacts: /api/contacts
        get_group_contacts: /api/groups/{group_id}/contacts
        get_template: /api/templates/{template_id}

Transient faults (connection errors, 5xx, 429) are retried with tenacity;
whatever is still failing surfaces as ChannelError(retryable=True) so the
job's own retry policy takes over.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

import httpx
from tenacity import (
    retry, retry_if_exception, stop_after_attempt, wait_exponential,
)

from channels.base import ChannelError, CircuitBreaker, ContactDirectory, MessageSender
from config.settings import GatewayConfig, get_settings
from models.schemas import MessageTemplate, Recipient, SendResult

logger = structlog.get_logger()

CHANNEL = "whatsapp"

DEFAULT_ENDPOINTS = {
    "send_message": "/api/sessions/{session_id}/messages",
    "get_contacts": "/api/contacts",
    "get_group_contacts": "/api/groups/{group_id}/contacts",
    "get_template": "/api/templates/{template_id}",
}


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        code = exc.response.status_code
        return code == 429 or code >= 500
    return False


def _unwrap(data: Any) -> Any:
    """Accept both bare payloads and {"data": ...} envelopes."""
    if isinstance(data, dict) and "data" in data:
        return data["data"]
    return data


def normalize_recipient(raw: dict[str, Any]) -> Optional[Recipient]:
    """Map a backend contact record onto a Recipient. Records without a phone are dropped."""
    phone = ""
    for field in ("phone", "phone_number", "whatsapp", "mobile"):
        if raw.get(field):
            phone = str(raw[field])
            break
    if not phone:
        return None
    return Recipient(
        id=str(raw.get("id", raw.get("contact_id", phone))),
        phone=phone,
        name=raw.get("name", raw.get("full_name", "")) or "",
        email=raw.get("email", "") or "",
        company=raw.get("company", raw.get("organization", "")) or "",
        position=raw.get("position", raw.get("role", "")) or "",
    )


class _GatewayClient:
    """Shared httpx client setup and retrying request helper."""

    def __init__(self, config: GatewayConfig = None, transport: httpx.AsyncBaseTransport = None):
        self.config = config or get_settings().gateway
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {}
            if self.config.api_key:
                headers["Authorization"] = f"Bearer {self.config.api_key}"
            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=headers,
                timeout=self.config.timeout,
                transport=self._transport,
            )
        return self.client

    def _url(self, endpoint: str, **path_params: Any) -> str:
        url = self.config.endpoints.get(endpoint) or DEFAULT_ENDPOINTS.get(endpoint, endpoint)
        for k, v in path_params.items():
            url = url.replace(f"{{{k}}}", str(v))
        return url

    @retry(
        retry=retry_if_exception(_is_transient),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, max=5),
        reraise=True,
    )
    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        client = await self._get_client()
        response = await client.request(method, url, **kwargs)
        if response.status_code == 429 or response.status_code >= 500:
            response.raise_for_status()
        return response

    async def close(self):
        if self.client and not self.client.is_closed:
            await self.client.aclose()


class GatewaySender(_GatewayClient, MessageSender):
    """Sends through the session manager's REST API."""

    def __init__(self, config: GatewayConfig = None, transport: httpx.AsyncBaseTransport = None,
                 breaker: CircuitBreaker = None):
        super().__init__(config, transport)
        self.breaker = breaker or CircuitBreaker(name=CHANNEL)

    async def send(
        self,
        session_id: str,
        recipient: Recipient,
        content: str,
        message_type: str = "text",
        media_url: Optional[str] = None,
    ) -> SendResult:
        self.breaker.check()

        body: dict[str, Any] = {"phone": recipient.phone, "message": content, "type": message_type}
        if media_url:
            body["media_url"] = media_url

        try:
            response = await self._request(
                "POST", self._url("send_message", session_id=session_id), json=body,
            )
        except (httpx.TransportError, httpx.HTTPStatusError) as e:
            self.breaker.record_failure()
            logger.error("gateway_send_failed", session_id=session_id, error=str(e))
            raise ChannelError(f"Gateway unavailable: {e}", CHANNEL, retryable=True) from e

        self.breaker.record_success()

        if response.status_code in (401, 403):
            raise ChannelError(f"Gateway rejected credentials ({response.status_code})", CHANNEL)
        if response.is_error:
            return SendResult(error=self._error_text(response))

        try:
            data = _unwrap(response.json())
        except ValueError:
            logger.warning("gateway_send_unreadable_response",
                           session_id=session_id, status=response.status_code)
            return SendResult(error=f"unreadable gateway response (HTTP {response.status_code})")
        message_id = None
        if isinstance(data, dict):
            message_id = data.get("message_id") or data.get("id")
        if not message_id:
            return SendResult(error="gateway response missing message id")
        return SendResult(message_id=str(message_id))

    @staticmethod
    def _error_text(response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return f"HTTP {response.status_code}"
        if isinstance(data, dict):
            return str(data.get("error") or data.get("message") or f"HTTP {response.status_code}")
        return f"HTTP {response.status_code}"


class GatewayDirectory(_GatewayClient, ContactDirectory):
    """Reads contacts, groups and templates from the dashboard backend."""

    async def _fetch(self, url: str, **kwargs) -> httpx.Response:
        try:
            return await self._request("GET", url, **kwargs)
        except (httpx.TransportError, httpx.HTTPStatusError) as e:
            logger.error("gateway_fetch_failed", url=url, error=str(e))
            raise ChannelError(f"Directory unavailable: {e}", CHANNEL, retryable=True) from e

    @staticmethod
    def _json(response: httpx.Response, what: str):
        try:
            return _unwrap(response.json())
        except ValueError as e:
            raise ChannelError(f"Directory sent unreadable JSON for {what}: {e}", CHANNEL) from e

    async def _fetch_recipients(self, url: str, **kwargs) -> list[Recipient]:
        response = await self._fetch(url, **kwargs)
        if response.status_code == 404:
            return []
        if response.is_error:
            raise ChannelError(f"Directory returned {response.status_code} for {url}", CHANNEL)
        rows = self._json(response, url) or []
        if not isinstance(rows, list):
            raise ChannelError(f"Directory returned {type(rows).__name__} instead of a contact list for {url}",
                               CHANNEL)
        recipients = []
        for raw in rows:
            recipient = normalize_recipient(raw) if isinstance(raw, dict) else None
            if recipient is None:
                logger.debug("contact_skipped", contact=raw.get("id") if isinstance(raw, dict) else raw)
                continue
            recipients.append(recipient)
        return recipients

    async def get_contacts(self, contact_ids: list[str]) -> list[Recipient]:
        if not contact_ids:
            return []
        return await self._fetch_recipients(
            self._url("get_contacts"), params={"ids": ",".join(contact_ids)},
        )

    async def resolve_group(self, group_id: str) -> list[Recipient]:
        return await self._fetch_recipients(self._url("get_group_contacts", group_id=group_id))

    async def get_template(self, template_id: str) -> Optional[MessageTemplate]:
        response = await self._fetch(self._url("get_template", template_id=template_id))
        if response.status_code == 404:
            return None
        if response.is_error:
            raise ChannelError(f"Directory returned {response.status_code} for template {template_id}", CHANNEL)
        raw = self._json(response, template_id)
        if not isinstance(raw, dict):
            raise ChannelError(f"Directory returned malformed template {template_id}", CHANNEL)
        defaults = raw.get("variables") or {}
        if not isinstance(defaults, dict):
            defaults = {}
        return MessageTemplate(
            id=str(raw.get("id", template_id)),
            name=raw.get("name", ""),
            content=raw.get("content", ""),
            variables={str(k): str(v) for k, v in defaults.items()},
        )
