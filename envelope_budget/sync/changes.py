"""
Change Sets

Every engine command records the local mutations it makes into one
ChangeSet. The same record drives both halves of reconciliation:
- the remote operations sent to storage (create/update/delete per record)
- the exact undo applied when storage rejects the command

Mutations of one record within a command are coalesced, so a record that
is created and then updated is sent as one create of its final state, and
a record created then deleted is never sent at all.
"""

from dataclasses import dataclass
from typing import Any, Optional

from envelope_budget.models.sync import Collection, OperationKind
from envelope_budget.models.wire import collection_of


@dataclass
class Change:
    """One record's net mutation within a command."""

    collection: Collection
    kind: OperationKind
    record: Any
    previous: Optional[Any] = None

    @property
    def local_id(self) -> str:
        return self.record.id


class ChangeSet:
    def __init__(self):
        self._changes: list[Change] = []

    def __iter__(self):
        return iter(list(self._changes))

    def __len__(self) -> int:
        return len(self._changes)

    def __bool__(self) -> bool:
        return bool(self._changes)

    def _find(self, collection: Collection, local_id: str) -> Optional[Change]:
        for change in self._changes:
            if change.collection == collection and change.local_id == local_id:
                return change
        return None

    def created(self, record: Any) -> None:
        self._changes.append(Change(collection_of(record), OperationKind.CREATE, record))

    def updated(self, previous: Any, record: Any) -> None:
        collection = collection_of(record)
        existing = self._find(collection, record.id)
        if existing is None:
            self._changes.append(Change(collection, OperationKind.UPDATE, record, previous))
        else:
            # Keep the first "previous" so undo restores the pre-command state
            existing.record = record

    def deleted(self, record: Any) -> None:
        collection = collection_of(record)
        existing = self._find(collection, record.id)
        if existing is None:
            self._changes.append(Change(collection, OperationKind.DELETE, record))
        elif existing.kind == OperationKind.CREATE:
            self._changes.remove(existing)
        else:
            existing.kind = OperationKind.DELETE
            existing.record = existing.previous
            existing.previous = None

    def deleted_all(self, records) -> None:
        for record in records:
            self.deleted(record)

    def of_kind(self, kind: OperationKind) -> list[Change]:
        return [c for c in self._changes if c.kind == kind]

    def entity_ids(self) -> list[str]:
        return [c.local_id for c in self._changes]

    def counts(self) -> dict[str, int]:
        """Number of changed records per collection."""
        counts: dict[str, int] = {}
        for change in self._changes:
            counts[change.collection.value] = counts.get(change.collection.value, 0) + 1
        return counts
