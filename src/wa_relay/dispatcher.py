"""
Outbound Dispatcher — validates send requests and submits them to the live transport.

Sends fail fast with NotConnected unless the session is Open; nothing is
queued for later. A send is retried at most once, and only when the bridge
link was down before the request could leave (a timeout or remote
rejection may already have reached the recipient).
"""

import asyncio
import logging
import re
from typing import Any, Optional, Union

from wa_relay.errors import InvalidPayload, InvalidTarget, NotConnected, SendError, TransportError, TransportFailure
from wa_relay.models.message import MEDIA_KINDS, MediaPayload, MessageKind, OutboundRequest, SendResult
from wa_relay.models.state import ConnectionPhase
from wa_relay.supervisor import ConnectionSupervisor

logger = logging.getLogger(__name__)

USER_SUFFIX = "@s.whatsapp.net"
TRANSIENT_CODES = frozenset({"link_down"})

_NON_DIGITS = re.compile(r"\D+")


def normalize_target(target: str) -> str:
    """'+55 (11) 99999-0000' -> '5511999990000@s.whatsapp.net'. Full addresses pass through."""
    value = (target or "").strip()
    if "@" in value:
        user, _, server = value.partition("@")
        if not user or not server:
            raise InvalidTarget(target)
        return value
    digits = _NON_DIGITS.sub("", value)
    if not digits:
        raise InvalidTarget(target)
    return f"{digits}{USER_SUFFIX}"


def build_content(kind: MessageKind, payload: Union[str, MediaPayload]) -> dict[str, Any]:
    """Content descriptor understood by the bridge's send_message."""
    if kind == MessageKind.TEXT:
        if not isinstance(payload, str) or not payload.strip():
            raise InvalidPayload("Text message must not be empty")
        return {"text": payload}
    if kind not in MEDIA_KINDS:
        raise InvalidPayload(f"Unsupported outbound kind: {kind.value}")
    if not isinstance(payload, MediaPayload):
        raise InvalidPayload(f"{kind.value} message requires a media payload")
    if len(payload.data) == 0:
        raise InvalidPayload(f"{kind.value} payload is empty")
    content: dict[str, Any] = {kind.value: payload.data}
    if payload.mimetype:
        content["mimetype"] = payload.mimetype
    if payload.caption and kind != MessageKind.AUDIO:
        content["caption"] = payload.caption
    if kind == MessageKind.DOCUMENT:
        content["fileName"] = payload.filename or "document"
    if kind == MessageKind.AUDIO:
        content["ptt"] = payload.voice_note
    return content


class OutboundDispatcher:
    def __init__(self, supervisor: ConnectionSupervisor, send_timeout: float = 30.0):
        self._supervisor = supervisor
        self._send_timeout = send_timeout
        self._lock = asyncio.Lock()

    async def send(self, target_identity: str, kind: Union[MessageKind, str],
                   payload: Union[str, MediaPayload]) -> SendResult:
        """Send one message. Errors come back in the result; nothing is raised."""
        state = self._supervisor.current_state()
        if state.phase != ConnectionPhase.OPEN:
            return SendResult(error=NotConnected(state.phase.value))
        try:
            kind = MessageKind(kind)
            request = OutboundRequest(target_identity=normalize_target(target_identity), kind=kind,
                                      payload=payload)
            content = build_content(request.kind, request.payload)
        except SendError as e:
            return SendResult(error=e)
        except ValueError as e:
            return SendResult(error=InvalidPayload(str(e)))

        async with self._lock:
            return await self._submit(request, content)

    async def send_text(self, target_identity: str, text: str) -> SendResult:
        return await self.send(target_identity, MessageKind.TEXT, text)

    async def _submit(self, request: OutboundRequest, content: dict[str, Any]) -> SendResult:
        last: Optional[TransportError] = None
        for attempt in (1, 2):
            state = self._supervisor.current_state()
            transport = self._supervisor.transport
            if state.phase != ConnectionPhase.OPEN or transport is None:
                return SendResult(error=NotConnected(state.phase.value), target=request.target_identity)
            try:
                message_id = await asyncio.wait_for(
                    transport.send_message(request.target_identity, content), timeout=self._send_timeout,
                )
            except asyncio.TimeoutError:
                logger.warning(f"Send to {request.target_identity} timed out after {self._send_timeout:.0f}s")
                return SendResult(error=TransportFailure("send timed out"), target=request.target_identity)
            except TransportError as e:
                last = e
                if e.code in TRANSIENT_CODES and attempt == 1:
                    logger.warning(f"Send to {request.target_identity} hit a transient error, retrying once: {e}")
                    continue
                break
            except Exception as e:
                logger.exception(f"Unexpected transport error sending to {request.target_identity}")
                return SendResult(error=TransportFailure(str(e)), target=request.target_identity)
            logger.info(f"Sent {request.kind.value} message {message_id} to {request.target_identity}")
            return SendResult(message_id=message_id, target=request.target_identity)
        reason = str(last) if last else "send failed"
        transient = bool(last and last.code in TRANSIENT_CODES)
        logger.warning(f"Send to {request.target_identity} failed: {reason}")
        return SendResult(error=TransportFailure(reason, transient=transient), target=request.target_identity)
