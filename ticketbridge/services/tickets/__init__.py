"""Ticket lifecycle."""

from ticketbridge.services.tickets.lifecycle import TicketLifecycle, ticket_channel_name

__all__ = ["TicketLifecycle", "ticket_channel_name"]
