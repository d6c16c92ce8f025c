"""Data models for the application."""

from ticketbridge.models.message import (
    ChannelMessage,
    ConnectionEvent,
    ConnectionEventType,
    InboundMessage,
    MediaAttachment,
    MediaReference,
    PermissionOverwrite,
    QrPayload,
)
from ticketbridge.models.routing import ChannelHandle, Contact, RoutingEntry, TicketState
from ticketbridge.models.session import (
    ConnectionState,
    QrChallenge,
    ReconnectState,
    SessionStatus,
)
from ticketbridge.models.tenant import Tenant, TenantSettings

__all__ = [
    # Tenant
    "Tenant",
    "TenantSettings",
    # Session
    "ConnectionState",
    "QrChallenge",
    "ReconnectState",
    "SessionStatus",
    # Routing
    "ChannelHandle",
    "Contact",
    "RoutingEntry",
    "TicketState",
    # Messages and events
    "ChannelMessage",
    "ConnectionEvent",
    "ConnectionEventType",
    "InboundMessage",
    "MediaAttachment",
    "MediaReference",
    "PermissionOverwrite",
    "QrPayload",
]
