"""In-memory document store for development and testing."""

import copy
from typing import Any

from ticketbridge.storage.base import DocumentStore


class InMemoryDocumentStore(DocumentStore):
    """In-memory storage implementation for development."""

    def __init__(self) -> None:
        self._documents: dict[str, dict[str, Any]] = {}

    async def load(self, name: str) -> dict[str, Any] | None:
        document = self._documents.get(name)
        return copy.deepcopy(document) if document is not None else None

    async def save(self, name: str, data: dict[str, Any]) -> None:
        self._documents[name] = copy.deepcopy(data)

    async def delete(self, name: str) -> bool:
        return self._documents.pop(name, None) is not None

    async def delete_prefix(self, prefix: str) -> int:
        names = [name for name in self._documents if name.startswith(prefix)]
        for name in names:
            del self._documents[name]
        return len(names)

    async def health_check(self) -> bool:
        return True

    # ==================== Utility Methods ====================

    def clear_all(self) -> None:
        """Clear all stored documents (useful for testing)."""
        self._documents.clear()
