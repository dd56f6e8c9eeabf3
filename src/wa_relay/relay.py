"""
Message Relay Pipeline — inbound events to sinks.

Per raw message:
- Skip ids already seen (bounded LRU set); every id is recorded, including
  echoes and filtered messages.
- Drop echoes (messages authored by this identity).
- Classify the content node against an ordered marker list; unrecognized
  content becomes MessageKind.UNKNOWN with a placeholder body.
- Hand the immutable InboundMessage to one worker per sink.

Each sink worker has its own bounded queue, per-attempt timeout and retry
budget, so a slow or failing sink never delays the others or the event
consumer. Retries reuse the constructed message, never the raw event.
"""

import asyncio
import contextlib
import logging
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Optional

from wa_relay.errors import SinkDeliveryError
from wa_relay.models.message import Direction, InboundMessage, MediaRef, MessageKind
from wa_relay.sinks.base import Sink

logger = logging.getLogger(__name__)

STATUS_BROADCAST = "status@broadcast"

# Wrappers whose inner `message` node carries the real content.
WRAPPER_MARKERS = ("ephemeralMessage", "viewOnceMessage", "viewOnceMessageV2", "documentWithCaptionMessage")

# Checked in order; the first marker present decides the kind.
CONTENT_MARKERS: tuple[tuple[str, MessageKind], ...] = (
    ("conversation", MessageKind.TEXT),
    ("extendedTextMessage", MessageKind.TEXT),
    ("imageMessage", MessageKind.IMAGE),
    ("audioMessage", MessageKind.AUDIO),
    ("videoMessage", MessageKind.VIDEO),
    ("documentMessage", MessageKind.DOCUMENT),
)


class DedupCache:
    """Recently seen message ids, oldest evicted first."""

    def __init__(self, capacity: int = 5000):
        self._capacity = max(1, capacity)
        self._ids: OrderedDict[str, None] = OrderedDict()

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def add(self, message_id: str) -> bool:
        """Record an id. Returns False if it was already present."""
        if message_id in self._ids:
            self._ids.move_to_end(message_id)
            return False
        self._ids[message_id] = None
        while len(self._ids) > self._capacity:
            self._ids.popitem(last=False)
        return True


def unwrap_content(node: Any) -> dict[str, Any]:
    while isinstance(node, dict):
        for wrapper in WRAPPER_MARKERS:
            inner = node.get(wrapper)
            if isinstance(inner, dict) and isinstance(inner.get("message"), dict):
                node = inner["message"]
                break
        else:
            return node
    return {}


def classify(raw: dict[str, Any]) -> tuple[MessageKind, str, Optional[dict[str, Any]]]:
    """Return (kind, body, media node) for a raw message."""
    content = unwrap_content(raw.get("message"))
    for marker, kind in CONTENT_MARKERS:
        if marker not in content:
            continue
        node = content[marker]
        if marker == "conversation":
            return kind, str(node or ""), None
        node = node if isinstance(node, dict) else {}
        if marker == "extendedTextMessage":
            return kind, str(node.get("text") or ""), None
        return kind, str(node.get("caption") or ""), node
    present = next((k for k in content if k != "messageContextInfo"), None)
    return MessageKind.UNKNOWN, f"[unsupported message type: {present or 'empty'}]", None


def parse_timestamp(value: Any) -> datetime:
    """Accepts epoch seconds as int/str or a {low, high} long."""
    try:
        if isinstance(value, dict):
            value = (int(value.get("high") or 0) << 32) + (int(value.get("low") or 0) & 0xFFFFFFFF)
        seconds = int(value)
    except (TypeError, ValueError):
        return datetime.now(tz=timezone.utc)
    if seconds <= 0:
        return datetime.now(tz=timezone.utc)
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        # out of range for the platform clock, e.g. milliseconds instead of seconds
        return datetime.now(tz=timezone.utc)


def _int_or_none(value: Any) -> Optional[int]:
    if isinstance(value, dict):
        value = value.get("low")
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def build_message(raw: dict[str, Any]) -> InboundMessage:
    key = raw.get("key") or {}
    message_id = str(key["id"])
    remote = str(key.get("remoteJid") or "")
    kind, body, media_node = classify(raw)
    media_ref = None
    if media_node is not None:
        media_ref = MediaRef(
            message_id=message_id,
            mimetype=media_node.get("mimetype"),
            filename=media_node.get("fileName"),
            file_length=_int_or_none(media_node.get("fileLength")),
            voice_note=bool(media_node.get("ptt", False)),
            raw=raw,
        )
    return InboundMessage(
        message_id=message_id,
        remote_identity=remote,
        direction=Direction.ECHO if key.get("fromMe") else Direction.INBOUND,
        kind=kind,
        body=body,
        media_ref=media_ref,
        timestamp=parse_timestamp(raw.get("messageTimestamp")),
        sender_name=raw.get("pushName") or None,
        is_group=remote.endswith("@g.us"),
    )


class SinkStats:
    __slots__ = ("delivered", "failed", "dropped")

    def __init__(self) -> None:
        self.delivered = 0
        self.failed = 0
        self.dropped = 0

    def as_dict(self) -> dict[str, int]:
        return {"delivered": self.delivered, "failed": self.failed, "dropped": self.dropped}


class SinkWorker:
    """Sequential, retrying delivery to one sink."""

    def __init__(self, sink: Sink, *, timeout: float, max_attempts: int, retry_base_delay: float,
                 queue_size: int):
        self.sink = sink
        self.stats = SinkStats()
        self._timeout = timeout
        self._max_attempts = max(1, max_attempts)
        self._retry_base_delay = retry_base_delay
        self._queue: asyncio.Queue[InboundMessage] = asyncio.Queue(maxsize=queue_size)
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._task = asyncio.create_task(self._run(), name=f"wa-sink-{self.sink.name}")

    def submit(self, message: InboundMessage) -> bool:
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            self.stats.dropped += 1
            logger.warning(f"Sink {self.sink.name} backlog full, dropping message {message.message_id}")
            return False
        return True

    async def join(self) -> None:
        await self._queue.join()

    async def close(self, grace: float) -> None:
        if self._task is None:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout=grace)
        except asyncio.TimeoutError:
            logger.warning(f"Abandoning {self._queue.qsize()} pending deliveries to sink {self.sink.name}")
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def _run(self) -> None:
        while True:
            message = await self._queue.get()
            try:
                await self._deliver(message)
            finally:
                self._queue.task_done()

    async def _deliver(self, message: InboundMessage) -> None:
        last_error: Optional[Exception] = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                await asyncio.wait_for(self.sink.deliver(message), timeout=self._timeout)
                self.stats.delivered += 1
                return
            except asyncio.CancelledError:
                raise
            except asyncio.TimeoutError:
                last_error = SinkDeliveryError(self.sink.name, f"timed out after {self._timeout:.1f}s")
            except SinkDeliveryError as e:
                last_error = e
                if not e.retryable:
                    break
            except Exception as e:
                last_error = e
            if attempt < self._max_attempts:
                delay = self._retry_base_delay * (2 ** (attempt - 1))
                logger.warning(f"Sink {self.sink.name} failed for {message.message_id} "
                               f"(attempt {attempt}/{self._max_attempts}): {last_error}; retrying in {delay:.2f}s")
                await asyncio.sleep(delay)
        self.stats.failed += 1
        error = SinkDeliveryError(self.sink.name, f"Delivery of {message.message_id} failed: {last_error}",
                                  retryable=False, details={"message_id": message.message_id})
        logger.error(str(error))


class MessageRelayPipeline:
    def __init__(
        self,
        sinks: Optional[list[Sink]] = None,
        *,
        dedup_capacity: int = 5000,
        sink_timeout: float = 10.0,
        max_attempts: int = 3,
        retry_base_delay: float = 0.5,
        queue_size: int = 1000,
        ignore_status_broadcast: bool = True,
        ignore_groups: bool = False,
    ):
        self._dedup = DedupCache(dedup_capacity)
        self._ignore_status_broadcast = ignore_status_broadcast
        self._ignore_groups = ignore_groups
        self._workers = [
            SinkWorker(sink, timeout=sink_timeout, max_attempts=max_attempts,
                       retry_base_delay=retry_base_delay, queue_size=queue_size)
            for sink in (sinks or [])
        ]

    @property
    def sinks(self) -> list[Sink]:
        return [w.sink for w in self._workers]

    @property
    def dedup(self) -> DedupCache:
        return self._dedup

    def start(self) -> None:
        for worker in self._workers:
            worker.start()

    async def process_batch(self, batch: list[dict[str, Any]]) -> list[InboundMessage]:
        """Classify a batch in order and queue each new inbound message for every sink."""
        forwarded: list[InboundMessage] = []
        for raw in batch:
            try:
                message = self._accept(raw)
            except Exception:
                logger.exception("Skipping malformed inbound event")
                continue
            if message is None:
                continue
            for worker in self._workers:
                worker.submit(message)
            forwarded.append(message)
        return forwarded

    def _accept(self, raw: dict[str, Any]) -> Optional[InboundMessage]:
        key = raw.get("key")
        if not isinstance(key, dict) or not key.get("id"):
            logger.warning("Dropping inbound event without a message id")
            return None
        message_id = str(key["id"])
        if not self._dedup.add(message_id):
            logger.debug(f"Duplicate message {message_id} ignored")
            return None
        if key.get("fromMe"):
            return None
        remote = str(key.get("remoteJid") or "")
        if self._ignore_status_broadcast and remote == STATUS_BROADCAST:
            return None
        if self._ignore_groups and remote.endswith("@g.us"):
            return None
        try:
            return build_message(raw)
        except (KeyError, ValueError) as e:
            logger.warning(f"Could not build inbound message {message_id}: {e}")
            return None

    async def join(self) -> None:
        """Wait until every queued delivery has finished (delivered or failed)."""
        for worker in self._workers:
            await worker.join()

    async def close(self, grace: float = 5.0) -> None:
        """Flush every sink concurrently within one shared grace period, then close the sinks."""
        await asyncio.gather(*(worker.close(grace) for worker in self._workers))
        for worker in self._workers:
            try:
                await worker.sink.close()
            except Exception:
                logger.debug(f"Suppress sink close error for {worker.sink.name}", exc_info=True)

    def stats(self) -> dict[str, dict[str, int]]:
        return {w.sink.name: {**w.stats.as_dict(), "pending": w.pending} for w in self._workers}
