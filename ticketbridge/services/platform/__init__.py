"""Collaboration platform clients."""

from ticketbridge.services.platform.base import CollaborationClient, TranscriptService
from ticketbridge.services.platform.discord import DiscordClient
from ticketbridge.services.platform.transcripts import PlainTextTranscriptService

__all__ = [
    "CollaborationClient",
    "DiscordClient",
    "PlainTextTranscriptService",
    "TranscriptService",
]
