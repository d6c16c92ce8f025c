"""Connection session models."""

from datetime import datetime, timedelta
from enum import Enum

from pydantic import BaseModel, Field


class ConnectionState(str, Enum):
    """Lifecycle state of one tenant's messaging connection."""

    DISCONNECTED = "disconnected"
    INITIALIZING = "initializing"
    QR_PENDING = "qr_pending"
    AUTHENTICATED = "authenticated"
    READY = "ready"
    RECONNECTING = "reconnecting"
    LOGGED_OUT = "logged_out"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Terminal states need an operator action to leave."""
        return self in (ConnectionState.LOGGED_OUT, ConnectionState.FAILED)


class QrChallenge(BaseModel):
    """A time-limited credential bootstrap payload."""

    code: str
    image: str | None = Field(default=None, description="Base64 PNG rendering, when provided")
    issued_at: datetime
    expires_at: datetime

    @classmethod
    def issue(cls, code: str, ttl_seconds: float, image: str | None = None) -> "QrChallenge":
        now = datetime.utcnow()
        return cls(
            code=code,
            image=image,
            issued_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or datetime.utcnow()) >= self.expires_at


class ReconnectState(BaseModel):
    """Retry bookkeeping owned by the reconnection controller."""

    attempts: int = 0
    max_attempts: int = 5
    in_flight: bool = False


class SessionStatus(BaseModel):
    """Operator-visible snapshot of a tenant session."""

    tenant_id: str
    state: ConnectionState
    qr: QrChallenge | None = None
    reconnect: ReconnectState
    last_error: str | None = None
    open_tickets: int = 0
