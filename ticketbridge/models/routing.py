"""Routing and ticket models."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class TicketState(str, Enum):
    """Lifecycle of a conversation channel."""

    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class RoutingEntry(BaseModel):
    """One conversation mapped to one channel."""

    conversation_id: str
    channel_id: str
    display_name: str | None = None
    last_activity_at: datetime = Field(default_factory=datetime.utcnow)


class Contact(BaseModel):
    """A messaging-network contact card."""

    name: str
    phone_number: str
    first_seen_at: datetime = Field(default_factory=datetime.utcnow)


@dataclass
class ChannelHandle:
    """Result of opening (or reusing) a ticket channel."""

    conversation_id: str
    channel_id: str
    created: bool = False
    reopened: bool = False
