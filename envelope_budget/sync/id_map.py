"""
Temporary-Id Promotion Table

Records created locally get a temporary id ("temp-<hex>") that stays
their key in memory for their whole life. When storage confirms the
create, exactly one entry temp -> canonical is written here. Collections
are never rewritten, so every in-flight command that captured the temp id
still resolves to the right record whatever order confirmations arrive in.
"""

from typing import Iterable, Optional
from uuid import uuid4


class TempIdMap:
    def __init__(self, prefix: str = "temp-"):
        self.prefix = prefix
        self._canonical: dict[str, str] = {}

    def new_id(self) -> str:
        return f"{self.prefix}{uuid4().hex}"

    def is_temporary(self, local_id: Optional[str]) -> bool:
        return bool(local_id) and local_id.startswith(self.prefix)

    def promote(self, temp_id: str, canonical_id: str) -> None:
        self._canonical[temp_id] = canonical_id

    def forget(self, temp_id: str) -> None:
        self._canonical.pop(temp_id, None)

    def is_confirmed(self, local_id: str) -> bool:
        return not self.is_temporary(local_id) or local_id in self._canonical

    def resolve(self, local_id: str) -> str:
        """Id the store knows this record by (the local id until promoted)."""
        return self._canonical.get(local_id, local_id)

    def unconfirmed(self, local_ids: Iterable[Optional[str]]) -> list[str]:
        """The temporary ids among local_ids that storage has not confirmed."""
        return [i for i in local_ids if i and not self.is_confirmed(i)]

    def items(self) -> list[tuple[str, str]]:
        return list(self._canonical.items())

    def clear(self) -> None:
        self._canonical.clear()

    def __len__(self) -> int:
        return len(self._canonical)
