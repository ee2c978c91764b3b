"""
Storage Services Package

Provides the abstract persistence contract and its implementations.
The in-memory store backs tests and local use; Google Sheets is the
remote backend, designed to be swappable.
"""

from envelope_budget.services.storage.interface import (
    AuditStorageInterface,
    DocumentNotFoundError,
    DocumentStorageInterface,
    PermissionDeniedError,
    StorageError,
    StorageUnavailableError,
)
from envelope_budget.services.storage.memory import (
    InMemoryAuditStorage,
    InMemoryDocumentStorage,
)
from envelope_budget.services.storage.google_sheets import (
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    GoogleSheetsDocumentStorage,
)

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "DocumentStorageInterface",
    # Exceptions
    "DocumentNotFoundError",
    "PermissionDeniedError",
    "StorageError",
    "StorageUnavailableError",
    # In-memory implementation
    "InMemoryAuditStorage",
    "InMemoryDocumentStorage",
    # Google Sheets implementation
    "GoogleSheetsAuditStorage",
    "GoogleSheetsClient",
    "GoogleSheetsDocumentStorage",
]
