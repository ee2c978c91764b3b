"""
Services package.

Storage is re-exported here. The engine-level services (rollover,
piggybank, backup) are imported from their modules directly, since they
depend on the audit logger, which itself depends on storage.
"""

from envelope_budget.services.storage import (
    AuditStorageInterface,
    DocumentNotFoundError,
    DocumentStorageInterface,
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    GoogleSheetsDocumentStorage,
    InMemoryAuditStorage,
    InMemoryDocumentStorage,
    PermissionDeniedError,
    StorageError,
    StorageUnavailableError,
)

__all__ = [
    # Storage services
    "AuditStorageInterface",
    "DocumentNotFoundError",
    "DocumentStorageInterface",
    "GoogleSheetsAuditStorage",
    "GoogleSheetsClient",
    "GoogleSheetsDocumentStorage",
    "InMemoryAuditStorage",
    "InMemoryDocumentStorage",
    "PermissionDeniedError",
    "StorageError",
    "StorageUnavailableError",
]
