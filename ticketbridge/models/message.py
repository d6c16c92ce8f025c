"""Message and connection event models."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class ConnectionEventType(str, Enum):
    """Events a connection adapter emits."""

    QR = "qr"
    AUTHENTICATED = "authenticated"
    READY = "ready"
    AUTH_FAILURE = "auth_failure"
    DISCONNECTED = "disconnected"
    MESSAGE = "message"


class MediaReference(BaseModel):
    """Pointer to media attached to an inbound message."""

    message_id: str
    kind: str = Field(..., description="image, video, audio, document or sticker")
    mime_type: str = "application/octet-stream"
    filename: str | None = None
    caption: str | None = None


class InboundMessage(BaseModel):
    """A message received from the messaging network."""

    message_id: str
    remote_jid: str
    from_me: bool = False
    push_name: str | None = None
    text: str = ""
    media: MediaReference | None = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_group(self) -> bool:
        return self.remote_jid.endswith("@g.us")

    @property
    def is_broadcast(self) -> bool:
        return self.remote_jid.endswith("@broadcast")


@dataclass
class QrPayload:
    """QR code data carried by a ``qr`` event."""

    code: str
    image: str | None = None


@dataclass
class ConnectionEvent:
    """A lifecycle or message event from a connection adapter."""

    type: ConnectionEventType
    qr: QrPayload | None = None
    reason: str | None = None
    status_code: int | None = None
    message: InboundMessage | None = None

    @classmethod
    def disconnected(cls, reason: str, status_code: int | None = None) -> "ConnectionEvent":
        return cls(ConnectionEventType.DISCONNECTED, reason=reason, status_code=status_code)

    @classmethod
    def auth_failure(cls, reason: str, status_code: int | None = None) -> "ConnectionEvent":
        return cls(ConnectionEventType.AUTH_FAILURE, reason=reason, status_code=status_code)


@dataclass
class MediaAttachment:
    """Binary media relayed between the two networks."""

    filename: str
    content_type: str
    data: bytes


class ChannelMessage(BaseModel):
    """A message read back from a collaboration platform channel."""

    id: str
    author_id: str
    author_name: str
    content: str = ""
    timestamp: datetime
    attachment_urls: list[str] = Field(default_factory=list)
    is_bot: bool = False


class PermissionOverwrite(BaseModel):
    """Channel permission overwrite for a role (type 0) or member (type 1)."""

    id: str
    type: int
    allow: int = 0
    deny: int = 0

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "allow": str(self.allow),
            "deny": str(self.deny),
        }
