"""Conversation routing."""

from ticketbridge.services.routing.contacts import ContactDirectory
from ticketbridge.services.routing.table import RoutingTable, normalize_conversation_id

__all__ = ["ContactDirectory", "RoutingTable", "normalize_conversation_id"]
