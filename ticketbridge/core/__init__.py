"""Core module - configuration and utilities."""

from ticketbridge.core.config import settings
from ticketbridge.core.exceptions import (
    AppException,
    CloseError,
    ConfigurationError,
    ConnectError,
    DisconnectError,
    NotConnected,
    RoutingConflict,
    TenantNotFound,
    TicketNotFound,
)

__all__ = [
    "settings",
    "AppException",
    "CloseError",
    "ConfigurationError",
    "ConnectError",
    "DisconnectError",
    "NotConnected",
    "RoutingConflict",
    "TenantNotFound",
    "TicketNotFound",
]
