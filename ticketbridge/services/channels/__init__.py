"""Messaging network connection adapters."""

from ticketbridge.services.channels.base import ConnectionAdapter
from ticketbridge.services.channels.evolution import EvolutionConnectionAdapter

__all__ = ["ConnectionAdapter", "EvolutionConnectionAdapter"]
