"""Abstract base class for messaging connection adapters."""

from abc import ABC, abstractmethod
from typing import Any, Callable

import structlog

from ticketbridge.models import ConnectionEvent, MediaReference

logger = structlog.get_logger()

EventListener = Callable[[ConnectionEvent], None]


class ConnectionAdapter(ABC):
    """Wraps one messaging-network client session.

    An adapter instance serves exactly one connection attempt and has at most
    one listener. The session manager builds a fresh adapter for every
    (re)connect and subscribes to it once.
    """

    def __init__(self) -> None:
        self._listener: EventListener | None = None

    @property
    @abstractmethod
    def channel_name(self) -> str:
        """Get the channel name identifier."""
        ...

    # ==================== Subscription ====================

    def subscribe(self, listener: EventListener) -> None:
        """Attach the single event listener, replacing any previous one."""
        self._listener = listener

    def unsubscribe(self) -> None:
        self._listener = None

    def emit(self, event: ConnectionEvent) -> None:
        """Deliver an event synchronously, in emission order."""
        if self._listener is None:
            logger.debug("Dropping event without listener", channel=self.channel_name, event=event.type.value)
            return
        self._listener(event)

    # ==================== Lifecycle ====================

    @abstractmethod
    async def initialize(self, bootstrap_credentials: bool) -> bool:
        """Start the client session.

        Args:
            bootstrap_credentials: Request a QR challenge instead of resuming
                stored credentials

        Returns:
            True if the client started; readiness arrives later as events
        """
        ...

    @abstractmethod
    async def disconnect(self, log_out: bool) -> None:
        """Stop the session, logging out of the network when ``log_out``."""
        ...

    async def handle_webhook(self, payload: dict[str, Any]) -> None:
        """Feed a server-pushed event payload; push-less adapters ignore it."""
        logger.debug("Adapter ignores webhooks", channel=self.channel_name)

    async def close(self) -> None:
        """Release client resources."""
        return None

    # ==================== Messaging ====================

    @abstractmethod
    async def send_text(self, conversation_id: str, text: str) -> str | None:
        """Send a text message.

        Args:
            conversation_id: Normalized recipient address
            text: Message body

        Returns:
            Network message id, when the server reports one
        """
        ...

    @abstractmethod
    async def send_media(
        self,
        conversation_id: str,
        data: bytes,
        mime_type: str,
        caption: str | None = None,
        filename: str | None = None,
    ) -> str | None:
        """Send a media message."""
        ...

    @abstractmethod
    async def download_media(self, media: MediaReference) -> bytes:
        """Fetch the bytes of inbound media."""
        ...
