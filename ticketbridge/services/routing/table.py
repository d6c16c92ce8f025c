"""Persistent conversation <-> channel routing table."""

import re
from datetime import datetime

import structlog

from ticketbridge.core.exceptions import InvalidConversationId, RoutingConflict, StorageError
from ticketbridge.models import RoutingEntry
from ticketbridge.storage.base import DocumentStore, tenant_document

logger = structlog.get_logger()

_DEVICE_SUFFIX = re.compile(r":\d+$")
_NON_DIGITS = re.compile(r"\D")


def normalize_conversation_id(raw: str) -> str:
    """Reduce a messaging address to its digits.

    ``15551234567@s.whatsapp.net``, ``15551234567:3@s.whatsapp.net`` and
    ``+1 (555) 123-4567`` all normalize to ``15551234567``.

    Raises:
        InvalidConversationId: If the address contains no digits
    """
    local = raw.split("@", 1)[0].strip()
    local = _DEVICE_SUFFIX.sub("", local)
    digits = _NON_DIGITS.sub("", local)
    if not digits:
        raise InvalidConversationId(raw)
    return digits


class RoutingTable:
    """Bijective map between conversations and channels for one tenant.

    A conversation maps to at most one channel because ``set`` overwrites by
    key. The reverse direction is enforced by ``set`` rejecting a channel
    already owned by another conversation.

    Every mutation rewrites the routing document. A failed write is logged
    and the in-memory table stays authoritative until restart.
    """

    DOCUMENT = "routing"

    def __init__(self, tenant_id: str, store: DocumentStore) -> None:
        self.tenant_id = tenant_id
        self._store = store
        self._entries: dict[str, RoutingEntry] = {}

    @property
    def document(self) -> str:
        return tenant_document(self.tenant_id, self.DOCUMENT)

    def __len__(self) -> int:
        return len(self._entries)

    async def load(self) -> None:
        """Load persisted routes, skipping malformed keys."""
        data = await self._store.load(self.document) or {}
        self._entries.clear()
        for raw_id, channel_id in data.items():
            try:
                conversation_id = normalize_conversation_id(raw_id)
            except InvalidConversationId:
                logger.warning("Skipping invalid routing key", tenant_id=self.tenant_id, key=raw_id)
                continue
            self._entries[conversation_id] = RoutingEntry(
                conversation_id=conversation_id,
                channel_id=str(channel_id),
            )
        logger.info("Loaded routing table", tenant_id=self.tenant_id, entries=len(self._entries))

    # ==================== Lookups ====================

    def get(self, conversation_id: str) -> str | None:
        """Channel id routed to a conversation."""
        entry = self._entries.get(normalize_conversation_id(conversation_id))
        return entry.channel_id if entry else None

    def entry(self, conversation_id: str) -> RoutingEntry | None:
        return self._entries.get(normalize_conversation_id(conversation_id))

    def reverse_lookup(self, channel_id: str) -> str | None:
        """Conversation id routed to a channel.

        This is a linear O(n) scan over the open conversations of the tenant.
        """
        for entry in self._entries.values():
            if entry.channel_id == channel_id:
                return entry.conversation_id
        return None

    def entries(self) -> list[RoutingEntry]:
        return list(self._entries.values())

    # ==================== Mutations ====================

    async def set(
        self,
        conversation_id: str,
        channel_id: str,
        display_name: str | None = None,
    ) -> RoutingEntry:
        """Route a conversation to a channel, replacing its previous channel.

        Args:
            conversation_id: Raw or normalized conversation address
            channel_id: Collaboration platform channel id
            display_name: Contact name shown on the ticket

        Returns:
            The stored entry

        Raises:
            RoutingConflict: If the channel already belongs to another conversation
        """
        key = normalize_conversation_id(conversation_id)
        owner = self.reverse_lookup(channel_id)
        if owner is not None and owner != key:
            raise RoutingConflict(channel_id, owner=owner, conversation_id=key)

        previous = self._entries.get(key)
        entry = RoutingEntry(
            conversation_id=key,
            channel_id=channel_id,
            display_name=display_name or (previous.display_name if previous else None),
        )
        self._entries[key] = entry
        await self._persist()

        logger.info(
            "Routed conversation",
            tenant_id=self.tenant_id,
            conversation_id=key,
            channel_id=channel_id,
            replaced=previous.channel_id if previous and previous.channel_id != channel_id else None,
        )
        return entry

    async def remove(self, conversation_id: str) -> bool:
        """Drop a route. Only used when a ticket is permanently closed."""
        key = normalize_conversation_id(conversation_id)
        if self._entries.pop(key, None) is None:
            return False
        await self._persist()
        logger.info("Removed route", tenant_id=self.tenant_id, conversation_id=key)
        return True

    def touch(self, conversation_id: str) -> None:
        """Record activity on a conversation."""
        entry = self._entries.get(normalize_conversation_id(conversation_id))
        if entry is not None:
            entry.last_activity_at = datetime.utcnow()

    async def clear(self) -> None:
        self._entries.clear()
        await self._persist()

    async def _persist(self) -> None:
        data = {key: entry.channel_id for key, entry in self._entries.items()}
        try:
            await self._store.save(self.document, data)
        except StorageError as e:
            logger.error(
                "Failed to persist routing table",
                tenant_id=self.tenant_id,
                error=e.message,
            )
