"""Abstract base class for document storage backends."""

from abc import ABC, abstractmethod
from typing import Any

REGISTRY_DOCUMENT = "tenants"


def tenant_document(tenant_id: str, name: str) -> str:
    """Name of a per-tenant document, e.g. ``tenants/<id>/routing``."""
    return f"tenants/{tenant_id}/{name}"


class DocumentStore(ABC):
    """Stores whole JSON documents addressed by name.

    Each save replaces the full document. Writers within one process are
    serialized per document; concurrent processes sharing a store are not
    supported.
    """

    # ==================== Document Operations ====================

    @abstractmethod
    async def load(self, name: str) -> dict[str, Any] | None:
        """Load a document, or None if it was never saved."""
        ...

    @abstractmethod
    async def save(self, name: str, data: dict[str, Any]) -> None:
        """Replace a document with ``data``."""
        ...

    @abstractmethod
    async def delete(self, name: str) -> bool:
        """Delete a document."""
        ...

    @abstractmethod
    async def delete_prefix(self, prefix: str) -> int:
        """Delete every document whose name starts with ``prefix``."""
        ...

    # ==================== Health Check ====================

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if storage is healthy."""
        ...
