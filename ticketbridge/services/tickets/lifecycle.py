"""Ticket channel lifecycle: create, reopen and close."""

import asyncio
import re

import structlog

from ticketbridge.core.exceptions import (
    AppException,
    ChannelNotFound,
    CloseError,
    PlatformError,
    RoutingConflict,
    TicketNotFound,
)
from ticketbridge.models import ChannelHandle, PermissionOverwrite, Tenant, TicketState
from ticketbridge.services.platform.base import CollaborationClient, TranscriptService
from ticketbridge.services.routing.table import RoutingTable, normalize_conversation_id
from ticketbridge.services.session.manager import SessionManager

logger = structlog.get_logger()

# Discord permission bits
VIEW_CHANNEL = 1 << 10
SEND_MESSAGES = 1 << 11
MANAGE_CHANNELS = 1 << 4
EMBED_LINKS = 1 << 14
ATTACH_FILES = 1 << 15
READ_MESSAGE_HISTORY = 1 << 16

BOT_PERMISSIONS = (
    VIEW_CHANNEL | SEND_MESSAGES | MANAGE_CHANNELS | EMBED_LINKS | ATTACH_FILES | READ_MESSAGE_HISTORY
)

CHANNEL_PREFIX = "📋-"
MAX_SLUG_LENGTH = 25


def ticket_channel_name(display_name: str | None, conversation_id: str) -> str:
    """Channel name for a ticket, e.g. ``📋-maria-silva``."""
    slug = re.sub(r"[^a-z0-9]+", "-", (display_name or "").lower()).strip("-")[:MAX_SLUG_LENGTH]
    return CHANNEL_PREFIX + (slug.strip("-") or conversation_id)


class TicketLifecycle:
    """Opens and closes ticket channels for one tenant.

    A conversation has at most one live channel. Concurrent opens for the same
    conversation share one creation, and an open during a close waits for the
    close to finish.
    """

    def __init__(
        self,
        tenant: Tenant,
        routing: RoutingTable,
        platform: CollaborationClient,
        transcripts: TranscriptService,
        session: SessionManager,
        bot_user_id: str | None = None,
        transcript_timeout_seconds: float = 30.0,
    ) -> None:
        self.tenant = tenant
        self.routing = routing
        self.platform = platform
        self.transcripts = transcripts
        self.session = session
        self.bot_user_id = bot_user_id
        self.transcript_timeout_seconds = transcript_timeout_seconds

        self._opening: dict[str, asyncio.Task] = {}
        self._closing: dict[str, asyncio.Future] = {}

    @property
    def tenant_id(self) -> str:
        return self.tenant.tenant_id

    def state(self, conversation_id: str) -> TicketState:
        key = normalize_conversation_id(conversation_id)
        if key in self._closing:
            return TicketState.CLOSING
        if self.routing.get(key) is not None:
            return TicketState.OPEN
        return TicketState.CLOSED

    # ==================== Open ====================

    async def create_or_reopen(self, conversation_id: str, display_name: str | None = None) -> ChannelHandle:
        """Return the conversation's live channel, creating one if needed.

        Args:
            conversation_id: Raw or normalized conversation address
            display_name: Contact name used for the channel name and intro

        Returns:
            Handle with ``created`` set when a new channel was made and
            ``reopened`` set when it replaced an externally deleted one
        """
        key = normalize_conversation_id(conversation_id)

        closing = self._closing.get(key)
        if closing is not None:
            await asyncio.wait([closing])

        opening = self._opening.get(key)
        if opening is None:
            opening = asyncio.ensure_future(self._open(key, display_name))
            self._opening[key] = opening
            opening.add_done_callback(lambda _: self._opening.pop(key, None))
        return await asyncio.shield(opening)

    async def _open(self, conversation_id: str, display_name: str | None) -> ChannelHandle:
        existing = self.routing.entry(conversation_id)
        stale = False
        if existing is not None:
            if await self.platform.fetch_channel(existing.channel_id):
                self.routing.touch(conversation_id)
                return ChannelHandle(conversation_id=conversation_id, channel_id=existing.channel_id)
            logger.warning(
                "Ticket channel deleted externally",
                tenant_id=self.tenant_id,
                conversation_id=conversation_id,
                channel_id=existing.channel_id,
            )
            stale = True
            display_name = display_name or existing.display_name

        channel_id = await self.platform.create_channel(
            self.tenant.ticket_category_id,
            ticket_channel_name(display_name, conversation_id),
            self._permissions(),
            topic=f"WhatsApp: {conversation_id}",
        )

        owner = self.routing.reverse_lookup(channel_id)
        if owner is not None and owner != conversation_id:
            raise RoutingConflict(channel_id, owner=owner, conversation_id=conversation_id)
        await self.routing.set(conversation_id, channel_id, display_name)

        intro = self.tenant.settings.render("new_ticket_message", display_name, conversation_id)
        try:
            await self.platform.send_message(channel_id, intro)
        except PlatformError as e:
            logger.warning("Failed to post ticket intro", tenant_id=self.tenant_id, channel_id=channel_id, error=e.message)

        logger.info(
            "Opened ticket",
            tenant_id=self.tenant_id,
            conversation_id=conversation_id,
            channel_id=channel_id,
            reopened=stale,
        )
        return ChannelHandle(
            conversation_id=conversation_id,
            channel_id=channel_id,
            created=True,
            reopened=stale,
        )

    # ==================== Rename ====================

    async def rename(self, conversation_id: str, display_name: str) -> ChannelHandle | None:
        """Rename the conversation's live ticket channel after its contact.

        Returns:
            Handle of the renamed channel, or None when no ticket is open
        """
        key = normalize_conversation_id(conversation_id)
        pending = [f for f in (self._closing.get(key), self._opening.get(key)) if f is not None]
        if pending:
            await asyncio.wait(pending)

        entry = self.routing.entry(key)
        if entry is None:
            return None

        name = ticket_channel_name(display_name, key)
        try:
            await self.platform.rename_channel(entry.channel_id, name, reason=f"Contact renamed to {display_name}")
        except ChannelNotFound:
            # Recreated with the new name on the next message
            logger.warning(
                "Ticket channel deleted externally",
                tenant_id=self.tenant_id,
                conversation_id=key,
                channel_id=entry.channel_id,
            )
        await self.routing.set(key, entry.channel_id, display_name)

        logger.info("Renamed ticket", tenant_id=self.tenant_id, conversation_id=key, channel_id=entry.channel_id)
        return ChannelHandle(conversation_id=key, channel_id=entry.channel_id)

    def _permissions(self) -> list[PermissionOverwrite]:
        # The @everyone role id equals the guild id
        overwrites = [PermissionOverwrite(id=self.tenant.workspace_id, type=0, deny=VIEW_CHANNEL)]
        if self.bot_user_id:
            overwrites.append(PermissionOverwrite(id=self.bot_user_id, type=1, allow=BOT_PERMISSIONS))
        return overwrites

    # ==================== Close ====================

    async def close(self, conversation_id: str, closed_by: str, send_notification: bool = True) -> None:
        """Close a ticket.

        Notifies the contact, saves a transcript, deletes the channel and
        finally drops the routing entry. The entry is kept when deletion
        fails so the close can be retried.

        Args:
            conversation_id: Raw or normalized conversation address
            closed_by: Name of the agent or system closing the ticket
            send_notification: Send the closing message to the contact

        Raises:
            TicketNotFound: If the conversation has no open ticket
            CloseError: If a close is already running or deletion failed
        """
        key = normalize_conversation_id(conversation_id)
        if key in self._closing:
            raise CloseError("Ticket is already closing", key)
        entry = self.routing.entry(key)
        if entry is None:
            raise TicketNotFound(key)

        done = asyncio.get_running_loop().create_future()
        self._closing[key] = done
        try:
            await self._close(key, entry.channel_id, entry.display_name, closed_by, send_notification)
        finally:
            del self._closing[key]
            done.set_result(None)

    async def close_channel(self, channel_id: str, closed_by: str, send_notification: bool = True) -> str:
        """Close the ticket routed to a channel, returning its conversation id."""
        conversation_id = self.routing.reverse_lookup(channel_id)
        if conversation_id is None:
            raise TicketNotFound(channel_id)
        await self.close(conversation_id, closed_by, send_notification)
        return conversation_id

    async def _close(
        self,
        conversation_id: str,
        channel_id: str,
        display_name: str | None,
        closed_by: str,
        send_notification: bool,
    ) -> None:
        settings = self.tenant.settings
        log = logger.bind(tenant_id=self.tenant_id, conversation_id=conversation_id, channel_id=channel_id)

        if send_notification and settings.send_closing_message:
            await self._notify_contact(conversation_id, settings.render("close_message", display_name, conversation_id))

        if settings.transcripts_enabled:
            try:
                await asyncio.wait_for(
                    self.transcripts.generate(channel_id, closed_by),
                    self.transcript_timeout_seconds,
                )
            except asyncio.TimeoutError:
                log.warning("Transcript generation timed out")
            except Exception:
                log.exception("Transcript generation failed")

        try:
            await self.platform.delete_channel(channel_id, reason=f"Ticket closed by {closed_by}")
        except ChannelNotFound:
            log.info("Ticket channel already deleted")
        except PlatformError as e:
            log.error("Failed to delete ticket channel", error=e.message)
            raise CloseError(
                f"Failed to delete channel {channel_id}: {e.message}",
                conversation_id,
                {"channel_id": channel_id},
            ) from e

        await self.routing.remove(conversation_id)
        log.info("Closed ticket", closed_by=closed_by)

        if settings.feedback_enabled:
            await self._notify_contact(
                conversation_id,
                settings.render("feedback_message", display_name, conversation_id),
            )

    async def _notify_contact(self, conversation_id: str, text: str) -> None:
        try:
            await self.session.send_text(conversation_id, text)
        except AppException as e:
            logger.warning(
                "Failed to notify contact",
                tenant_id=self.tenant_id,
                conversation_id=conversation_id,
                error=e.message,
            )
