"""
Webhook sink — POSTs each inbound message as JSON to a configured URL.

Body: {from, message, name, type, media?, fromMe: false, timestamp, messageId}
with the shared secret in a configurable header.
"""

import base64
import logging
from typing import Any, Awaitable, Callable, Optional

import httpx

from wa_relay import __version__
from wa_relay.errors import SinkDeliveryError
from wa_relay.models.message import InboundMessage, MediaRef
from wa_relay.sinks.base import Sink

logger = logging.getLogger(__name__)

MediaResolver = Callable[[MediaRef], Awaitable[bytes]]


def build_webhook_payload(message: InboundMessage, media: Optional[bytes] = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "from": message.sender_number,
        "message": message.body,
        "name": message.sender_name or "",
        "type": message.kind.value,
        "fromMe": False,
        "timestamp": int(message.timestamp.timestamp()),
        "messageId": message.message_id,
    }
    if media is not None and message.media_ref is not None:
        payload["media"] = {
            "mimetype": message.media_ref.mimetype,
            "filename": message.media_ref.filename,
            "voiceNote": message.media_ref.voice_note,
            "data": base64.b64encode(media).decode("ascii"),
        }
    return payload


class WebhookSink(Sink):
    name = "webhook"

    def __init__(
        self,
        url: str,
        secret: Optional[str] = None,
        secret_header: str = "x-webhook-secret",
        media_resolver: Optional[MediaResolver] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._url = url
        self._secret = secret
        self._secret_header = secret_header
        self._media_resolver = media_resolver
        self._client = httpx.AsyncClient(
            headers={"User-Agent": f"wa-relay/{__version__}", "Accept": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._secret:
            headers[self._secret_header] = self._secret
        return headers

    async def _resolve_media(self, message: InboundMessage) -> Optional[bytes]:
        if self._media_resolver is None or message.media_ref is None:
            return None
        try:
            return await self._media_resolver(message.media_ref)
        except Exception as e:
            logger.warning(f"Could not download media for {message.message_id}, sending without it: {e}")
            return None

    async def deliver(self, message: InboundMessage) -> None:
        media = await self._resolve_media(message)
        body = build_webhook_payload(message, media)
        try:
            resp = await self._client.post(self._url, json=body, headers=self._headers())
        except httpx.HTTPError as e:
            raise SinkDeliveryError(self.name, f"POST {self._url} failed: {e}") from e
        if resp.status_code >= 300:
            retryable = resp.status_code >= 500 or resp.status_code == 429
            raise SinkDeliveryError(
                self.name, f"HTTP {resp.status_code}: {resp.text[:200]}", retryable=retryable,
                details={"status_code": resp.status_code},
            )

    async def close(self) -> None:
        await self._client.aclose()
