"""
Storage sink — appends inbound messages to a Supabase table via its REST API.

Rows are keyed by message_id; a conflict on a unique message_id column is
treated as already stored.
"""

from typing import Any, Optional

import httpx

from wa_relay import __version__
from wa_relay.errors import SinkDeliveryError
from wa_relay.models.message import InboundMessage
from wa_relay.sinks.base import Sink


def build_row(message: InboundMessage) -> dict[str, Any]:
    ref = message.media_ref
    return {
        "message_id": message.message_id,
        "remote_jid": message.remote_identity,
        "sender": message.sender_number,
        "name": message.sender_name,
        "kind": message.kind.value,
        "body": message.body,
        "media_mimetype": ref.mimetype if ref else None,
        "media_filename": ref.filename if ref else None,
        "is_group": message.is_group,
        "received_at": message.timestamp.isoformat(),
    }


class StorageSink(Sink):
    name = "storage"

    def __init__(self, url: str, key: str, table: str = "messages", timeout: float = 10.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self._table = table
        self._client = httpx.AsyncClient(
            base_url=f"{url.rstrip('/')}/rest/v1",
            headers={
                "User-Agent": f"wa-relay/{__version__}",
                "apikey": key,
                "Authorization": f"Bearer {key}",
                "Content-Type": "application/json",
                "Prefer": "return=minimal",
            },
            timeout=timeout,
            transport=transport,
        )

    async def deliver(self, message: InboundMessage) -> None:
        try:
            resp = await self._client.post(f"/{self._table}", json=build_row(message))
        except httpx.HTTPError as e:
            raise SinkDeliveryError(self.name, f"Insert into {self._table} failed: {e}") from e
        if resp.status_code == 409:
            return
        if resp.status_code >= 300:
            retryable = resp.status_code >= 500 or resp.status_code == 429
            raise SinkDeliveryError(
                self.name, f"HTTP {resp.status_code}: {resp.text[:200]}", retryable=retryable,
                details={"status_code": resp.status_code},
            )

    async def close(self) -> None:
        await self._client.aclose()
