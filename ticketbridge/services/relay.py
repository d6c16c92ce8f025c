"""Message relay between the messaging network and ticket channels."""

import mimetypes
import re
from collections import OrderedDict

import structlog

from ticketbridge.core.exceptions import AppException, InvalidConversationId
from ticketbridge.models import InboundMessage, MediaAttachment
from ticketbridge.services.platform.base import CollaborationClient
from ticketbridge.services.routing.contacts import ContactDirectory
from ticketbridge.services.routing.table import RoutingTable, normalize_conversation_id
from ticketbridge.services.session.manager import SessionManager
from ticketbridge.services.tickets.lifecycle import TicketLifecycle

logger = structlog.get_logger()

SEEN_LIMIT = 1000
SEEN_PRUNE = 200
MAX_NAME_LENGTH = 80

USER_MENTION = re.compile(r"<@!?(\d+)>")
CHANNEL_MENTION = re.compile(r"<#(\d+)>")
ROLE_MENTION = re.compile(r"<@&(\d+)>")
CUSTOM_EMOJI = re.compile(r"<a?:(\w+):\d+>")


def convert_mentions(
    text: str,
    users: dict[str, str] | None = None,
    channels: dict[str, str] | None = None,
) -> str:
    """Replace Discord mention markup with readable text.

    ``<@123>`` becomes ``@name`` and ``<#456>`` becomes ``#name``, falling
    back to a generic label when the id is not in the lookup.
    """
    users = users or {}
    channels = channels or {}
    text = ROLE_MENTION.sub("@role", text)
    text = USER_MENTION.sub(lambda m: "@" + users.get(m.group(1), "user"), text)
    text = CHANNEL_MENTION.sub(lambda m: "#" + channels.get(m.group(1), "channel"), text)
    return CUSTOM_EMOJI.sub(r":\1:", text)


class MessageRelay:
    """Routes messages in both directions for one tenant.

    Inbound flow:
    - First contact: send the welcome message and hold the message
    - Next message: store it as the contact's name, send the intro, open a
      ticket and forward the held message
    - Known contact: reuse or reopen the ticket and forward

    Outbound messages from a ticket channel go back to its conversation.
    """

    def __init__(
        self,
        session: SessionManager,
        tickets: TicketLifecycle,
        routing: RoutingTable,
        contacts: ContactDirectory,
        platform: CollaborationClient,
        bot_user_id: str | None = None,
    ) -> None:
        self.session = session
        self.tickets = tickets
        self.routing = routing
        self.contacts = contacts
        self.platform = platform
        self.bot_user_id = bot_user_id

        self._seen: OrderedDict[str, None] = OrderedDict()
        self._awaiting_name: dict[str, InboundMessage] = {}

    @property
    def tenant_id(self) -> str:
        return self.session.tenant_id

    def _is_duplicate(self, message_id: str) -> bool:
        if message_id in self._seen:
            return True
        self._seen[message_id] = None
        if len(self._seen) > SEEN_LIMIT:
            for _ in range(SEEN_PRUNE):
                self._seen.popitem(last=False)
        return False

    # ==================== Inbound ====================

    async def handle_inbound(self, message: InboundMessage) -> None:
        """Route one message from the messaging network."""
        if message.from_me or message.is_group or message.is_broadcast:
            return
        if self._is_duplicate(message.message_id):
            logger.debug("Skipping duplicate message", tenant_id=self.tenant_id, message_id=message.message_id)
            return

        try:
            conversation_id = normalize_conversation_id(message.remote_jid)
        except InvalidConversationId:
            logger.warning("Unroutable sender", tenant_id=self.tenant_id, remote_jid=message.remote_jid)
            return

        settings = self.session.settings
        name = self.contacts.name_for(conversation_id)

        if name is None:
            held = self._awaiting_name.pop(conversation_id, None)
            if held is None:
                self._awaiting_name[conversation_id] = message
                await self.session.send_text(conversation_id, settings.render("welcome_message", None, conversation_id))
                logger.info("Started intro flow", tenant_id=self.tenant_id, conversation_id=conversation_id)
                return

            name = (message.text.strip() or message.push_name or conversation_id)[:MAX_NAME_LENGTH]
            await self.contacts.set_name(conversation_id, name)
            await self.session.send_text(conversation_id, settings.render("intro_message", name, conversation_id))
            handle = await self.tickets.create_or_reopen(conversation_id, name)
            await self._forward(handle.channel_id, name, held)
            return

        handle = await self.tickets.create_or_reopen(conversation_id, name)
        if handle.created:
            await self.session.send_text(conversation_id, settings.render("reopen_message", name, conversation_id))
        await self._forward(handle.channel_id, name, message)
        self.routing.touch(conversation_id)

    async def _forward(self, channel_id: str, name: str, message: InboundMessage) -> None:
        content = f"**{name}:** {message.text}".rstrip()
        files: list[MediaAttachment] = []

        if message.media is not None:
            media = message.media
            try:
                data = await self.session.download_media(media)
            except AppException as e:
                logger.warning(
                    "Failed to download media",
                    tenant_id=self.tenant_id,
                    message_id=message.message_id,
                    error=e.message,
                )
                content += "\n*(attachment could not be downloaded)*"
            else:
                extension = mimetypes.guess_extension(media.mime_type.split(";")[0].strip()) or ""
                files.append(
                    MediaAttachment(
                        filename=media.filename or f"{media.kind}-{media.message_id}{extension}",
                        content_type=media.mime_type,
                        data=data,
                    )
                )

        await self.platform.send_message(channel_id, content, files or None)

    # ==================== Outbound ====================

    def accepts_outbound(self, channel_id: str, author_id: str | None = None) -> str | None:
        """Return the conversation an agent message should go to.

        None when the channel is not a ticket or the author is the bot.
        """
        if author_id and author_id == self.bot_user_id:
            return None
        return self.routing.reverse_lookup(channel_id)

    async def handle_outbound(
        self,
        channel_id: str,
        author_name: str,
        content: str,
        attachments: list[MediaAttachment] | None = None,
        author_id: str | None = None,
        mentions: dict[str, str] | None = None,
        channel_mentions: dict[str, str] | None = None,
    ) -> bool:
        """Send an agent message from a ticket channel to its conversation.

        Args:
            mentions: Display names of mentioned users, by user id
            channel_mentions: Names of mentioned channels, by channel id

        Returns:
            False if the channel is not a ticket or the author is the bot
        """
        conversation_id = self.accepts_outbound(channel_id, author_id)
        if conversation_id is None:
            return False

        if content:
            text = convert_mentions(content, mentions, channel_mentions)
            await self.session.send_text(conversation_id, f"*{author_name}*: {text}")
        for attachment in attachments or []:
            await self.session.send_media(
                conversation_id,
                attachment.data,
                attachment.content_type,
                filename=attachment.filename,
            )

        self.routing.touch(conversation_id)
        logger.info(
            "Relayed agent message",
            tenant_id=self.tenant_id,
            channel_id=channel_id,
            conversation_id=conversation_id,
            attachments=len(attachments or []),
        )
        return True
