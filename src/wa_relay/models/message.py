"""
Inbound and outbound message models.
"""

import enum
from datetime import datetime, timezone
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from wa_relay.errors import SendError


class Direction(str, enum.Enum):
    INBOUND = "inbound"
    ECHO = "echo"  # sent by this identity, looped back by the transport


class MessageKind(str, enum.Enum):
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"
    DOCUMENT = "document"
    UNKNOWN = "unknown"


MEDIA_KINDS = frozenset({MessageKind.IMAGE, MessageKind.AUDIO, MessageKind.VIDEO, MessageKind.DOCUMENT})


class MediaRef(BaseModel):
    """Handle to a media payload. Bytes are fetched on demand through the transport."""
    model_config = ConfigDict(frozen=True)

    message_id: str
    mimetype: Optional[str] = None
    filename: Optional[str] = None
    file_length: Optional[int] = None
    voice_note: bool = False
    raw: dict[str, Any] = Field(default_factory=dict, repr=False)  # full message node for the bridge


class InboundMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    message_id: str
    remote_identity: str
    direction: Direction
    kind: MessageKind
    body: str = ""
    media_ref: Optional[MediaRef] = None
    timestamp: datetime
    sender_name: Optional[str] = None
    is_group: bool = False

    @property
    def sender_number(self) -> str:
        """Address without the server suffix ("5511...@s.whatsapp.net" -> "5511...")."""
        return self.remote_identity.split("@", 1)[0].split(":", 1)[0]


class MediaPayload(BaseModel):
    data: bytes
    mimetype: Optional[str] = None
    filename: Optional[str] = None
    caption: Optional[str] = None
    voice_note: bool = False


class OutboundRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    target_identity: str
    kind: MessageKind
    payload: Union[str, MediaPayload]
    requested_at: datetime = Field(default_factory=lambda: datetime.now(tz=timezone.utc))


class SendResult:
    __slots__ = ("message_id", "error", "target")

    def __init__(self, message_id: Optional[str] = None, error: Optional[SendError] = None,
                 target: Optional[str] = None):
        self.message_id = message_id
        self.error = error
        self.target = target

    @property
    def ok(self) -> bool:
        return self.error is None

    def __repr__(self) -> str:
        if self.ok:
            return f"SendResult(ok, message_id={self.message_id!r})"
        return f"SendResult(error={self.error.code!r})"  # type: ignore[union-attr]
