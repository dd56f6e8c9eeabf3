"""In-memory transport, recording sinks and raw message builders used across the tests."""

import asyncio
from typing import Any, Optional

from wa_relay.errors import SinkDeliveryError
from wa_relay.models.message import InboundMessage, MediaRef
from wa_relay.session_store import SessionCredential
from wa_relay.sinks.base import Sink
from wa_relay.supervisor import ConnectionSupervisor
from wa_relay.transport.base import Transport
from wa_relay.transport.events import (
    ConnectionPhaseChanged,
    CredentialsUpdated,
    MessagesReceived,
    TransportPhase,
)

DEVICE_JID = "5511999990000:7@s.whatsapp.net"


class FakeTransport(Transport):
    """Scriptable transport. Tests drive it through the emit_* helpers."""

    def __init__(self, connect_error: Optional[Exception] = None):
        super().__init__()
        self.connect_error = connect_error
        self.send_errors: list[Optional[Exception]] = []
        self.send_delay = 0.0
        self.connect_delay = 0.0
        self.close_delay = 0.0
        self.sent: list[tuple[str, dict[str, Any]]] = []
        self.credentials: list[SessionCredential] = []
        self.media: dict[str, bytes] = {}
        self.logged_out = False
        self.closed = False
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self, credential: SessionCredential) -> None:
        self.credentials.append(credential)
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        if self.connect_error is not None:
            raise self.connect_error
        self._connected = True

    async def send_message(self, jid: str, content: dict[str, Any]) -> str:
        self.sent.append((jid, content))
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        if self.send_errors:
            error = self.send_errors.pop(0)
            if error is not None:
                raise error
        return f"MSG{len(self.sent)}"

    async def download_media(self, ref: MediaRef) -> bytes:
        return self.media[ref.message_id]

    async def logout(self) -> None:
        self.logged_out = True

    async def close(self) -> None:
        if self.close_delay:
            await asyncio.sleep(self.close_delay)
        self.closed = True
        self._connected = False

    def emit_pairing(self, code: str) -> None:
        self._emit(ConnectionPhaseChanged(TransportPhase.PAIRING, pairing_code=code))

    def emit_open(self, jid: Optional[str] = DEVICE_JID) -> None:
        number = jid.split("@")[0].split(":")[0] if jid else None
        self._emit(ConnectionPhaseChanged(TransportPhase.OPEN, device_number=number))

    def emit_close(self, reason: str) -> None:
        self._emit(ConnectionPhaseChanged(TransportPhase.CLOSE, close_reason=reason))

    def emit_creds(self, delta: dict[str, Any]) -> None:
        self._emit(CredentialsUpdated(delta))

    def emit_messages(self, batch: list[dict[str, Any]]) -> None:
        self._emit(MessagesReceived(batch))


class TransportFactory:
    """Creates FakeTransports; queued connect errors and connect_delay apply to the next ones created."""

    def __init__(self) -> None:
        self.created: list[FakeTransport] = []
        self.connect_errors: list[Optional[Exception]] = []
        self.connect_delay = 0.0

    def __call__(self) -> FakeTransport:
        error = self.connect_errors.pop(0) if self.connect_errors else None
        transport = FakeTransport(connect_error=error)
        transport.connect_delay = self.connect_delay
        self.created.append(transport)
        return transport

    @property
    def latest(self) -> FakeTransport:
        return self.created[-1]


class RecordingSink(Sink):
    def __init__(self, name: str = "recorder", failures: int = 0, retryable: bool = True,
                 delay: float = 0.0):
        self.name = name
        self.failures = failures
        self.retryable = retryable
        self.delay = delay
        self.attempts = 0
        self.received: list[InboundMessage] = []
        self.closed = False

    async def deliver(self, message: InboundMessage) -> None:
        self.attempts += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures:
            self.failures -= 1
            raise SinkDeliveryError(self.name, "sink unavailable", retryable=self.retryable)
        self.received.append(message)

    async def close(self) -> None:
        self.closed = True


def text_message(message_id: str, text: str = "hello", remote: str = "5511888887777@s.whatsapp.net",
                 from_me: bool = False, **extra: Any) -> dict[str, Any]:
    raw = {
        "key": {"id": message_id, "remoteJid": remote, "fromMe": from_me},
        "message": {"conversation": text},
        "messageTimestamp": 1700000000,
        "pushName": "Maria",
    }
    raw.update(extra)
    return raw


async def open_session(supervisor: ConnectionSupervisor, factory: TransportFactory) -> FakeTransport:
    """Start the supervisor and drive it to Open."""
    await supervisor.start()
    transport = factory.latest
    transport.emit_open()
    await supervisor.drain()
    return transport
