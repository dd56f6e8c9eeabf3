"""
Transport events and bridge payload parsing.

The bridge forwards the multi-device library's events as plain JSON:
  connection.update  {connection?, qr?, lastDisconnect?, me?}
  creds.update       partial credential document
  keys.update        {category: {key_id: value | null}}
  messages.upsert    {messages: [...], type}
"""

from typing import Any, Optional, Union

# Multi-device protocol disconnect status codes.
DISCONNECT_REASONS: dict[int, str] = {
    401: "loggedOut",
    403: "forbidden",
    408: "timedOut",
    411: "multideviceMismatch",
    428: "connectionClosed",
    440: "connectionReplaced",
    500: "badSession",
    503: "unavailableService",
    515: "restartRequired",
}

LOGGED_OUT = "loggedOut"
RESTART_REQUIRED = "restartRequired"
CONNECTION_LOST = "connectionLost"


class TransportPhase:
    CONNECTING = "connecting"
    PAIRING = "pairing"
    OPEN = "open"
    CLOSE = "close"


class CredentialsUpdated:
    __slots__ = ("delta",)

    def __init__(self, delta: dict[str, Any]):
        self.delta = delta

    def __repr__(self) -> str:
        return f"CredentialsUpdated(keys={sorted(self.delta)!r})"


class ConnectionPhaseChanged:
    __slots__ = ("phase", "close_reason", "pairing_code", "device_number", "status_code")

    def __init__(self, phase: str, close_reason: Optional[str] = None, pairing_code: Optional[str] = None,
                 device_number: Optional[str] = None, status_code: Optional[int] = None):
        self.phase = phase
        self.close_reason = close_reason
        self.pairing_code = pairing_code
        self.device_number = device_number
        self.status_code = status_code

    def __repr__(self) -> str:
        return f"ConnectionPhaseChanged(phase={self.phase!r}, close_reason={self.close_reason!r})"


class MessagesReceived:
    __slots__ = ("batch", "upsert_type")

    def __init__(self, batch: list[dict[str, Any]], upsert_type: str = "notify"):
        self.batch = batch
        self.upsert_type = upsert_type

    def __repr__(self) -> str:
        return f"MessagesReceived(size={len(self.batch)}, type={self.upsert_type!r})"


TransportEvent = Union[CredentialsUpdated, ConnectionPhaseChanged, MessagesReceived]


def device_number_from_jid(jid: Optional[str]) -> Optional[str]:
    """'5511999990000:12@s.whatsapp.net' -> '5511999990000'"""
    if not jid:
        return None
    user = jid.split("@", 1)[0].split(":", 1)[0]
    return user or None


def _status_code(last_disconnect: Any) -> Optional[int]:
    if not isinstance(last_disconnect, dict):
        return None
    code = last_disconnect.get("statusCode")
    if code is None:
        error = last_disconnect.get("error")
        if isinstance(error, dict):
            code = (error.get("output") or {}).get("statusCode")
    if code is None:
        return None
    try:
        return int(code)
    except (TypeError, ValueError):
        return None


def close_reason_for(last_disconnect: Any) -> tuple[str, Optional[int]]:
    code = _status_code(last_disconnect)
    if isinstance(last_disconnect, dict) and isinstance(last_disconnect.get("reason"), str):
        return last_disconnect["reason"], code
    if code is None:
        return "unknown", None
    return DISCONNECT_REASONS.get(code, "unknown"), code


def parse_connection_update(raw: Any) -> Optional[ConnectionPhaseChanged]:
    """Map a connection.update payload to a phase event. Returns None for no-op updates."""
    if not isinstance(raw, dict):
        return None
    qr = raw.get("qr")
    connection = raw.get("connection")
    if connection == "close":
        reason, code = close_reason_for(raw.get("lastDisconnect"))
        return ConnectionPhaseChanged(TransportPhase.CLOSE, close_reason=reason, status_code=code)
    if connection == "open":
        me = raw.get("me") or {}
        number = device_number_from_jid(me.get("id") if isinstance(me, dict) else None)
        return ConnectionPhaseChanged(TransportPhase.OPEN, device_number=number)
    if isinstance(qr, str) and qr:
        return ConnectionPhaseChanged(TransportPhase.PAIRING, pairing_code=qr)
    if connection == "connecting":
        return ConnectionPhaseChanged(TransportPhase.CONNECTING)
    return None


def parse_credentials_update(raw: Any) -> Optional[CredentialsUpdated]:
    if not isinstance(raw, dict) or not raw:
        return None
    return CredentialsUpdated({"creds": raw})


def parse_keys_update(raw: Any) -> Optional[CredentialsUpdated]:
    if not isinstance(raw, dict) or not raw:
        return None
    return CredentialsUpdated({"keys": raw})


def parse_messages_upsert(raw: Any) -> Optional[MessagesReceived]:
    if isinstance(raw, list):
        messages, upsert_type = raw, "notify"
    elif isinstance(raw, dict):
        messages, upsert_type = raw.get("messages") or [], raw.get("type", "notify")
    else:
        return None
    batch = [m for m in messages if isinstance(m, dict)]
    if not batch:
        return None
    return MessagesReceived(batch, upsert_type)
