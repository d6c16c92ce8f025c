"""Tenant messaging sessions."""

from ticketbridge.services.session.manager import SessionManager, Subscription
from ticketbridge.services.session.reconnection import ReconnectionController, ReconnectPolicy

__all__ = ["ReconnectionController", "ReconnectPolicy", "SessionManager", "Subscription"]
