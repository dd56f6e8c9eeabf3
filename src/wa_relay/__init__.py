"""
wa-relay — WhatsApp session relay.

Keeps one linked-device session alive through a Socket.IO protocol bridge,
relays inbound messages to webhook and storage sinks, and sends outbound
messages on request.
"""

__version__ = "0.1.0"

from wa_relay.client import WaRelay
from wa_relay.config import RelaySettings, get_settings
from wa_relay.errors import (
    CredentialIOError,
    InvalidPayload,
    InvalidTarget,
    NotConnected,
    SendError,
    SessionLockedError,
    SinkDeliveryError,
    TransportError,
    TransportFailure,
    WaRelayError,
)
from wa_relay.models.message import InboundMessage, MediaPayload, MessageKind, SendResult
from wa_relay.models.state import ConnectionPhase, ConnectionState

__all__ = [
    "WaRelay",
    "RelaySettings",
    "get_settings",
    "WaRelayError",
    "CredentialIOError",
    "SessionLockedError",
    "TransportError",
    "SinkDeliveryError",
    "SendError",
    "NotConnected",
    "TransportFailure",
    "InvalidTarget",
    "InvalidPayload",
    "InboundMessage",
    "MediaPayload",
    "MessageKind",
    "SendResult",
    "ConnectionPhase",
    "ConnectionState",
]
