"""Collaboration platform interfaces."""

from abc import ABC, abstractmethod

from ticketbridge.models import ChannelMessage, MediaAttachment, PermissionOverwrite


class CollaborationClient(ABC):
    """Channel operations on one collaboration workspace."""

    @abstractmethod
    async def create_channel(
        self,
        category_id: str,
        name: str,
        permissions: list[PermissionOverwrite],
        topic: str | None = None,
    ) -> str:
        """Create a text channel under a category.

        Args:
            category_id: Parent category id
            name: Channel name
            permissions: Permission overwrites applied to the channel
            topic: Optional channel topic

        Returns:
            The new channel id
        """
        ...

    @abstractmethod
    async def delete_channel(self, channel_id: str, reason: str) -> None:
        """Delete a channel.

        Raises:
            ChannelNotFound: If the channel no longer exists
            PlatformError: On any other failure
        """
        ...

    @abstractmethod
    async def rename_channel(self, channel_id: str, name: str, reason: str) -> None:
        """Rename a channel.

        Raises:
            ChannelNotFound: If the channel no longer exists
            PlatformError: On any other failure
        """
        ...

    @abstractmethod
    async def send_message(
        self,
        channel_id: str,
        content: str,
        files: list[MediaAttachment] | None = None,
    ) -> str:
        """Post a message, returning its id."""
        ...

    @abstractmethod
    async def fetch_channel(self, channel_id: str) -> bool:
        """Check whether a channel still exists."""
        ...

    @abstractmethod
    async def fetch_messages(self, channel_id: str, limit: int = 500) -> list[ChannelMessage]:
        """Read channel history, oldest first."""
        ...

    @abstractmethod
    async def download_attachment(self, url: str) -> bytes:
        """Fetch the bytes of a message attachment."""
        ...

    async def close(self) -> None:
        """Release client resources."""
        return None


class TranscriptService(ABC):
    """Archives a ticket channel before it is deleted."""

    @abstractmethod
    async def generate(self, channel_id: str, closed_by: str) -> None:
        """Produce a transcript. Failures are logged, never raised."""
        ...
