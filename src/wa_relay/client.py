"""
WaRelay — the relay runtime for one device identity.

Wires the Session Store, Connection Supervisor, Message Relay Pipeline and
its sinks, the Outbound Dispatcher and the Status Facade from RelaySettings.
"""

import logging
from typing import Any, Callable, Optional, Union

from wa_relay import qr
from wa_relay.config import RelaySettings, get_settings
from wa_relay.dispatcher import OutboundDispatcher
from wa_relay.errors import TransportError
from wa_relay.models.message import MediaPayload, MediaRef, MessageKind, SendResult
from wa_relay.models.state import ConnectionState
from wa_relay.relay import MessageRelayPipeline
from wa_relay.session_store import SessionStore
from wa_relay.sinks.base import Sink
from wa_relay.sinks.storage import StorageSink
from wa_relay.sinks.webhook import WebhookSink
from wa_relay.status import StatusFacade
from wa_relay.supervisor import ConnectionSupervisor
from wa_relay.transport.base import Transport
from wa_relay.transport.socketio import BridgeTransport

logger = logging.getLogger(__name__)


class WaRelay:
    def __init__(
        self,
        settings: Optional[RelaySettings] = None,
        *,
        transport_factory: Optional[Callable[[], Transport]] = None,
        sinks: Optional[list[Sink]] = None,
        store: Optional[SessionStore] = None,
    ):
        self.settings = settings or get_settings()
        s = self.settings
        self.store = store or SessionStore(s.auth_dir, s.device_id)
        self.pipeline = MessageRelayPipeline(
            sinks if sinks is not None else self._default_sinks(),
            dedup_capacity=s.dedup_capacity,
            sink_timeout=s.sink_timeout_seconds,
            max_attempts=s.sink_max_attempts,
            retry_base_delay=s.sink_retry_base_delay_seconds,
            queue_size=s.sink_queue_size,
            ignore_status_broadcast=s.ignore_status_broadcast,
            ignore_groups=s.ignore_groups,
        )
        self.supervisor = ConnectionSupervisor(
            self.store,
            transport_factory or self._default_transport,
            on_messages=self.pipeline.process_batch,
            base_delay=s.reconnect_base_delay_seconds,
            max_delay=s.reconnect_max_delay_seconds,
            jitter=s.reconnect_jitter,
            connect_timeout=s.connect_timeout_seconds,
            pairing_timeout=s.pairing_timeout_seconds,
        )
        self.dispatcher = OutboundDispatcher(self.supervisor, send_timeout=s.send_timeout_seconds)
        self.status_facade = StatusFacade(self.supervisor, self.pipeline.stats)
        if s.print_qr_in_terminal:
            self.supervisor.add_listener(self._print_pairing_code)

    def _default_transport(self) -> Transport:
        s = self.settings
        return BridgeTransport(
            base_url=s.bridge_url,
            token=s.bridge_token,
            device_id=s.device_id,
            socketio_path=s.bridge_socketio_path,
            connect_timeout=s.connect_timeout_seconds,
            call_timeout=s.send_timeout_seconds,
        )

    def _default_sinks(self) -> list[Sink]:
        s = self.settings
        sinks: list[Sink] = []
        if s.webhook_url:
            sinks.append(WebhookSink(
                s.webhook_url,
                secret=s.webhook_secret,
                secret_header=s.webhook_secret_header,
                media_resolver=self._resolve_media if s.webhook_include_media else None,
                timeout=s.sink_timeout_seconds,
            ))
        if s.storage_url and s.storage_key:
            sinks.append(StorageSink(s.storage_url, s.storage_key, table=s.storage_table,
                                     timeout=s.sink_timeout_seconds))
        if not sinks:
            logger.warning("No sinks configured; inbound messages will only be logged")
        return sinks

    async def _resolve_media(self, ref: MediaRef) -> bytes:
        transport = self.supervisor.transport
        if transport is None:
            raise TransportError("No live session to download media from", code="link_down")
        return await transport.download_media(ref)

    @staticmethod
    def _print_pairing_code(old: ConnectionState, new: ConnectionState) -> None:
        if new.pairing_code and new.pairing_code != old.pairing_code:
            qr.print_terminal(new.pairing_code)

    async def __aenter__(self) -> "WaRelay":
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.stop()

    async def start(self) -> None:
        self.pipeline.start()
        await self.supervisor.start()

    async def stop(self) -> None:
        await self.supervisor.stop()
        await self.pipeline.close(grace=self.settings.shutdown_grace_seconds)

    async def logout(self) -> bool:
        return await self.supervisor.logout()

    async def reinitialize(self) -> None:
        await self.supervisor.reinitialize()

    async def send(self, target: str, kind: Union[MessageKind, str],
                   payload: Union[str, MediaPayload]) -> SendResult:
        return await self.dispatcher.send(target, kind, payload)

    def status(self) -> dict[str, Any]:
        return self.status_facade.snapshot()
