"""
Persistence contract

DESIGN DECISION: The engine talks to a document store through two small
ABCs and nothing else; the Sheets backend and the in-memory fake used
in tests are interchangeable behind them.

The document side offers create/read/update/delete-by-id and an
equality query, scoped under an opaque per-user namespace. Documents are
plain dicts in wire shape; normalization happens in models/wire.py, never here.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional
from uuid import UUID

from envelope_budget.models.audit import AuditEvent


class DocumentStorageInterface(ABC):
    """Namespaced collections of JSON-shaped documents."""

    def __init__(self, namespace: str = "default"):
        self.namespace = namespace

    @abstractmethod
    async def create(self, collection: str, doc: dict[str, Any]) -> str:
        """
        Store a new document.

        Args:
            collection: Collection name (e.g., 'transactions')
            doc: Document body; any 'id' key is ignored

        Returns:
            The canonical id assigned by the store

        Raises:
            StorageError: If the write fails
        """
        pass

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        """
        Retrieve a document by id.

        Returns:
            The document (including 'id') if found, None otherwise
        """
        pass

    @abstractmethod
    async def update(self, collection: str, doc_id: str, patch: dict[str, Any]) -> None:
        """
        Merge a patch into an existing document.

        Raises:
            DocumentNotFoundError: If the document doesn't exist
            StorageError: If the write fails
        """
        pass

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> bool:
        """
        Delete a document by id.

        Returns:
            True if a document was deleted, False if it did not exist
        """
        pass

    @abstractmethod
    async def query_by_equality(
        self,
        collection: str,
        field: str,
        value: Any,
    ) -> list[dict[str, Any]]:
        """
        Find documents whose field equals value.

        Returns:
            Matching documents (each including 'id')
        """
        pass

    @abstractmethod
    async def list_all(self, collection: str) -> list[dict[str, Any]]:
        """Every document in a collection, in storage order."""
        pass


class AuditStorageInterface(ABC):
    """Append-only sink for audit events; events are never edited or removed."""

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """Persist one event. Returns False instead of raising when the write fails."""
        pass

    @abstractmethod
    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """Every event recorded for one engine command, oldest first."""
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Up to limit events, newest first."""
        pass


# How the sync coordinator reads these:
#   StorageUnavailableError -> offline, the command is retained
#   anything else            -> rejected, unless the probe says we are offline

class StorageError(Exception):
    """Base exception for storage operations."""


class DocumentNotFoundError(StorageError):
    """The id does not name a document in the collection."""


class StorageUnavailableError(StorageError):
    """The backend could not be reached, or asked us to back off."""


class PermissionDeniedError(StorageError):
    """Credentials or sharing rules forbid the operation."""
