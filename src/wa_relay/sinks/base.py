"""Sink contract for inbound messages."""

from abc import ABC, abstractmethod

from wa_relay.models.message import InboundMessage


class Sink(ABC):
    name: str = "sink"

    @abstractmethod
    async def deliver(self, message: InboundMessage) -> None:
        """Deliver one message. Raise SinkDeliveryError (retryable or not) on failure."""

    async def close(self) -> None:
        pass
