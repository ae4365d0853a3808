"""Messaging collaborators: send interface, contact directory, REST gateway."""
from channels.base import (
    ChannelError,
    CircuitOpenError,
    CircuitBreaker,
    MessageSender,
    ContactDirectory,
)
from channels.whatsapp_gateway import GatewaySender, GatewayDirectory

__all__ = [
    "ChannelError", "CircuitOpenError", "CircuitBreaker",
    "MessageSender", "ContactDirectory",
    "GatewaySender", "GatewayDirectory",
]
