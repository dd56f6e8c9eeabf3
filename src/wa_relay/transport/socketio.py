"""
Socket.IO transport to the WhatsApp multi-device bridge.

The bridge process hosts the protocol library and relays its events over
Socket.IO. Stored credentials travel in the connect auth payload; outbound
operations are acknowledged calls. The link never reconnects on its own:
reconnection belongs to the supervisor.
"""

import base64
import logging
from typing import Any, Optional

import socketio

from wa_relay.errors import TransportError
from wa_relay.models.message import MediaRef
from wa_relay.session_store import SessionCredential
from wa_relay.transport.base import Transport
from wa_relay.transport.events import (
    CONNECTION_LOST,
    ConnectionPhaseChanged,
    TransportPhase,
    parse_connection_update,
    parse_credentials_update,
    parse_keys_update,
    parse_messages_upsert,
)

logger = logging.getLogger(__name__)

SOCKETIO_PATH = "/socket.io/"


def encode_content(content: dict[str, Any]) -> dict[str, Any]:
    """Binary fields are sent as {"base64": ...} so the payload stays JSON."""
    encoded: dict[str, Any] = {}
    for key, value in content.items():
        if isinstance(value, (bytes, bytearray)):
            encoded[key] = {"base64": base64.b64encode(bytes(value)).decode("ascii")}
        else:
            encoded[key] = value
    return encoded


class BridgeTransport(Transport):
    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        device_id: str = "default",
        socketio_path: str = SOCKETIO_PATH,
        transports: Optional[list[str]] = None,
        connect_timeout: float = 20.0,
        call_timeout: float = 30.0,
    ):
        super().__init__()
        self._base_url = base_url
        self._token = token
        self._device_id = device_id
        self._socketio_path = socketio_path
        self._transports = transports or ["websocket"]
        self._connect_timeout = connect_timeout
        self._call_timeout = call_timeout
        self._sio: Optional[socketio.AsyncClient] = None
        self._closing = False

    @property
    def connected(self) -> bool:
        return self._sio is not None and self._sio.connected

    async def connect(self, credential: SessionCredential) -> None:
        if self._sio and self._sio.connected:
            return
        self._closing = False
        self._sio = socketio.AsyncClient(reconnection=False)

        @self._sio.on("connection.update")
        async def on_connection_update(data: Any) -> None:
            self._emit(parse_connection_update(data))

        @self._sio.on("creds.update")
        async def on_creds_update(data: Any) -> None:
            self._emit(parse_credentials_update(data))

        @self._sio.on("keys.update")
        async def on_keys_update(data: Any) -> None:
            self._emit(parse_keys_update(data))

        @self._sio.on("messages.upsert")
        async def on_messages_upsert(data: Any) -> None:
            self._emit(parse_messages_upsert(data))

        @self._sio.event
        async def disconnect(_reason: str = "") -> None:
            if not self._closing:
                logger.warning(f"Bridge link dropped for device {self._device_id}")
                self._emit(ConnectionPhaseChanged(TransportPhase.CLOSE, close_reason=CONNECTION_LOST))

        auth: dict[str, Any] = {"device": self._device_id, "creds": credential.data}
        if self._token:
            auth["token"] = self._token
        try:
            await self._sio.connect(
                self._base_url,
                auth=auth,
                transports=self._transports,
                socketio_path=self._socketio_path,
                wait_timeout=self._connect_timeout,
            )
        except socketio.exceptions.ConnectionError as e:
            self._sio = None
            raise TransportError(f"Cannot connect to WhatsApp bridge at {self._base_url}: {e}",
                                 code="link_down") from e
        logger.info(f"Connected to WhatsApp bridge at {self._base_url} as device {self._device_id}")

    async def _call(self, event: str, data: Any, timeout: Optional[float] = None) -> dict[str, Any]:
        if not self._sio or not self._sio.connected:
            raise TransportError("Bridge not connected", code="link_down")
        try:
            ack = await self._sio.call(event, data, timeout=timeout or self._call_timeout)
        except socketio.exceptions.TimeoutError as e:
            raise TransportError(f"Bridge did not acknowledge {event}", code="timeout") from e
        except (socketio.exceptions.BadNamespaceError, socketio.exceptions.ConnectionError) as e:
            raise TransportError(f"Bridge link unavailable for {event}: {e}", code="link_down") from e
        if not isinstance(ack, dict):
            raise TransportError(f"Malformed {event} acknowledgement: {ack!r}", code="protocol")
        if not ack.get("ok", False):
            raise TransportError(str(ack.get("error") or f"{event} rejected"), code="rejected",
                                 details={"ack": ack})
        return ack

    async def send_message(self, jid: str, content: dict[str, Any]) -> str:
        ack = await self._call("send_message", {"jid": jid, "content": encode_content(content)})
        message_id = ack.get("id")
        if not message_id:
            raise TransportError("send_message acknowledgement carried no message id", code="protocol")
        return str(message_id)

    async def download_media(self, ref: MediaRef) -> bytes:
        ack = await self._call("download_media", {"message": ref.raw})
        try:
            return base64.b64decode(ack.get("data") or "", validate=True)
        except (ValueError, TypeError) as e:
            raise TransportError(f"Invalid media payload for {ref.message_id}", code="protocol") from e

    async def logout(self) -> None:
        await self._call("logout", {})

    async def close(self) -> None:
        self._closing = True
        if self._sio:
            sio, self._sio = self._sio, None
            await sio.disconnect()
