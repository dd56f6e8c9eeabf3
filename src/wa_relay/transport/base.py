"""Transport abstraction for the WhatsApp multi-device session."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable

from wa_relay.models.message import MediaRef
from wa_relay.session_store import SessionCredential
from wa_relay.transport.events import TransportEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[TransportEvent], None]


class Transport(ABC):
    """One live session with the remote messaging service.

    Implementations report everything through event handlers: credential
    deltas, phase changes (pairing code, open, close with reason) and
    inbound message batches. Handlers are plain callables and must not block.
    """

    def __init__(self) -> None:
        self._event_handlers: list[EventHandler] = []

    def add_event_handler(self, handler: EventHandler) -> Callable[[], None]:
        """Add an event handler. Returns a cleanup function."""
        self._event_handlers.append(handler)

        def remove() -> None:
            try:
                self._event_handlers.remove(handler)
            except ValueError:
                pass
        return remove

    def _emit(self, event: TransportEvent | None) -> None:
        if event is None:
            return
        for handler in list(self._event_handlers):
            try:
                handler(event)
            except Exception:
                logger.exception(f"Transport event handler failed for {event!r}")

    @property
    @abstractmethod
    def connected(self) -> bool:
        ...

    @abstractmethod
    async def connect(self, credential: SessionCredential) -> None:
        """Open the session using stored credentials (empty credentials start pairing)."""

    @abstractmethod
    async def send_message(self, jid: str, content: dict[str, Any]) -> str:
        """Submit one message. Returns the transport-assigned message id."""

    @abstractmethod
    async def download_media(self, ref: MediaRef) -> bytes:
        ...

    @abstractmethod
    async def logout(self) -> None:
        """Unlink this device from the account."""

    @abstractmethod
    async def close(self) -> None:
        ...
