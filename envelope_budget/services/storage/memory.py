"""
In-Memory Storage Implementation

Used for local development and for every test in the suite. It behaves
like a remote document store (ids assigned by the store, documents copied
on the way in and out) and can be told to misbehave:

    storage.offline = True                       # every call -> StorageUnavailableError
    storage.latency = 0.5                        # every call sleeps first
    storage.fail_next(PermissionDeniedError("no"), operation="create")
    storage.stall_next(10.0, operation="create") # commit, then hang past any timeout
"""

import asyncio
import copy
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Optional
from uuid import UUID, uuid4

from envelope_budget.models.audit import AuditEvent
from envelope_budget.services.storage.interface import (
    AuditStorageInterface,
    DocumentNotFoundError,
    DocumentStorageInterface,
    StorageUnavailableError,
)


@dataclass
class _Fault:
    operation: Optional[str]
    collection: Optional[str]
    error: Optional[Exception] = None
    stall_seconds: float = 0.0

    def matches(self, operation: str, collection: str) -> bool:
        if self.operation is not None and self.operation != operation:
            return False
        if self.collection is not None and self.collection != collection:
            return False
        return True


class InMemoryDocumentStorage(DocumentStorageInterface):
    """
    Dict-backed document store with fault injection.

    Documents live under data[namespace][collection][id].
    """

    def __init__(self, namespace: str = "default", latency: float = 0.0):
        super().__init__(namespace)
        self.data: dict[str, dict[str, dict[str, dict]]] = defaultdict(lambda: defaultdict(dict))
        self.offline = False
        self.latency = latency
        self.calls: list[tuple[str, str]] = []
        self._faults: list[_Fault] = []

    # -------------------------------------------------------------------------
    # Fault injection
    # -------------------------------------------------------------------------

    def fail_next(
        self,
        error: Exception,
        operation: Optional[str] = None,
        collection: Optional[str] = None,
    ) -> None:
        """Make the next matching call raise error without touching data."""
        self._faults.append(_Fault(operation, collection, error=error))

    def stall_next(
        self,
        seconds: float,
        operation: Optional[str] = None,
        collection: Optional[str] = None,
    ) -> None:
        """Make the next matching call commit its write, then sleep."""
        self._faults.append(_Fault(operation, collection, stall_seconds=seconds))

    def _take_fault(self, operation: str, collection: str) -> Optional[_Fault]:
        for index, fault in enumerate(self._faults):
            if fault.matches(operation, collection):
                return self._faults.pop(index)
        return None

    async def _enter(self, operation: str, collection: str) -> Optional[_Fault]:
        self.calls.append((operation, collection))
        if self.latency:
            await asyncio.sleep(self.latency)
        if self.offline:
            raise StorageUnavailableError("Storage backend is unreachable")
        fault = self._take_fault(operation, collection)
        if fault is not None and fault.error is not None:
            raise fault.error
        return fault

    @staticmethod
    async def _leave(fault: Optional[_Fault]) -> None:
        if fault is not None and fault.stall_seconds:
            await asyncio.sleep(fault.stall_seconds)

    def _collection(self, collection: str) -> dict[str, dict]:
        return self.data[self.namespace][collection]

    def count(self, collection: str) -> int:
        return len(self._collection(collection))

    # -------------------------------------------------------------------------
    # DocumentStorageInterface
    # -------------------------------------------------------------------------

    async def create(self, collection: str, doc: dict[str, Any]) -> str:
        fault = await self._enter("create", collection)
        doc_id = uuid4().hex
        body = copy.deepcopy({k: v for k, v in doc.items() if k != "id"})
        self._collection(collection)[doc_id] = body
        await self._leave(fault)
        return doc_id

    async def get(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        await self._enter("get", collection)
        body = self._collection(collection).get(doc_id)
        if body is None:
            return None
        return {"id": doc_id, **copy.deepcopy(body)}

    async def update(self, collection: str, doc_id: str, patch: dict[str, Any]) -> None:
        fault = await self._enter("update", collection)
        documents = self._collection(collection)
        if doc_id not in documents:
            raise DocumentNotFoundError(f"{collection}/{doc_id} not found")
        documents[doc_id].update(copy.deepcopy({k: v for k, v in patch.items() if k != "id"}))
        await self._leave(fault)

    async def delete(self, collection: str, doc_id: str) -> bool:
        fault = await self._enter("delete", collection)
        removed = self._collection(collection).pop(doc_id, None) is not None
        await self._leave(fault)
        return removed

    async def query_by_equality(
        self,
        collection: str,
        field: str,
        value: Any,
    ) -> list[dict[str, Any]]:
        await self._enter("query", collection)
        return [
            {"id": doc_id, **copy.deepcopy(body)}
            for doc_id, body in self._collection(collection).items()
            if body.get(field) == value
        ]

    async def list_all(self, collection: str) -> list[dict[str, Any]]:
        await self._enter("list", collection)
        return [
            {"id": doc_id, **copy.deepcopy(body)}
            for doc_id, body in self._collection(collection).items()
        ]


class InMemoryAuditStorage(AuditStorageInterface):
    """Append-only list of audit events."""

    def __init__(self):
        self.events: list[AuditEvent] = []

    async def append_event(self, event: AuditEvent) -> bool:
        self.events.append(event)
        return True

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        events = [e for e in self.events if e.correlation_id == correlation_id]
        events.sort(key=lambda e: e.timestamp)
        return events

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        events = sorted(self.events, key=lambda e: e.timestamp, reverse=True)
        return events[:limit]
