"""Contact cards for messaging-network counterparts."""

import structlog

from ticketbridge.core.exceptions import StorageError
from ticketbridge.models import Contact
from ticketbridge.services.routing.table import normalize_conversation_id
from ticketbridge.storage.base import DocumentStore, tenant_document

logger = structlog.get_logger()


class ContactDirectory:
    """Display names collected during the intro flow, persisted per tenant."""

    DOCUMENT = "contacts"

    def __init__(self, tenant_id: str, store: DocumentStore) -> None:
        self.tenant_id = tenant_id
        self._store = store
        self._contacts: dict[str, Contact] = {}

    @property
    def document(self) -> str:
        return tenant_document(self.tenant_id, self.DOCUMENT)

    async def load(self) -> None:
        data = await self._store.load(self.document) or {}
        self._contacts = {key: Contact.model_validate(value) for key, value in data.items()}

    def get(self, conversation_id: str) -> Contact | None:
        return self._contacts.get(normalize_conversation_id(conversation_id))

    def name_for(self, conversation_id: str) -> str | None:
        contact = self.get(conversation_id)
        return contact.name if contact else None

    async def set_name(self, conversation_id: str, name: str) -> Contact:
        """Create or rename a contact."""
        key = normalize_conversation_id(conversation_id)
        contact = self._contacts.get(key)
        if contact is None:
            contact = Contact(name=name, phone_number=key)
        else:
            contact.name = name
        self._contacts[key] = contact
        try:
            await self._store.save(
                self.document,
                {k: v.model_dump(mode="json") for k, v in self._contacts.items()},
            )
        except StorageError as e:
            logger.error("Failed to persist contacts", tenant_id=self.tenant_id, error=e.message)
        return contact
