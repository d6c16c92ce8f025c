"""Storage layer - JSON file and in-memory implementations."""

from ticketbridge.storage.base import REGISTRY_DOCUMENT, DocumentStore, tenant_document
from ticketbridge.storage.credentials import CredentialStore
from ticketbridge.storage.json_file import JsonFileStore
from ticketbridge.storage.memory import InMemoryDocumentStore

__all__ = [
    "REGISTRY_DOCUMENT",
    "CredentialStore",
    "DocumentStore",
    "InMemoryDocumentStore",
    "JsonFileStore",
    "tenant_document",
]
