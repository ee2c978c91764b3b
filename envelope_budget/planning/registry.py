"""
Envelope Registry

The live set of envelopes and categories. Everything that references an
envelope (allocations, transactions, rollover) asks this registry whether
the reference is still valid at the moment it is used.
"""

from typing import Iterable, Optional

from envelope_budget.errors import NotFoundError
from envelope_budget.models.budget import Category, Envelope


class EnvelopeRegistry:
    """Envelopes and categories keyed by local id."""

    def __init__(
        self,
        envelopes: Iterable[Envelope] = (),
        categories: Iterable[Category] = (),
    ):
        self._envelopes: dict[str, Envelope] = {e.id: e for e in envelopes}
        self._categories: dict[str, Category] = {c.id: c for c in categories}

    # -------------------------------------------------------------------------
    # Envelopes
    # -------------------------------------------------------------------------

    def get(self, envelope_id: str) -> Optional[Envelope]:
        return self._envelopes.get(envelope_id)

    def exists(self, envelope_id: str) -> bool:
        return envelope_id in self._envelopes

    def is_usable(self, envelope_id: str) -> bool:
        """
        True when new records may reference this envelope.

        Piggybanks stay usable while deactivated; ordinary envelopes must
        be active.
        """
        envelope = self._envelopes.get(envelope_id)
        if envelope is None:
            return False
        return envelope.is_piggybank or envelope.is_active

    def envelopes(self, active_only: bool = False) -> list[Envelope]:
        result = [e for e in self._envelopes.values() if e.is_active or not active_only]
        return sorted(result, key=lambda e: e.order_index)

    def piggybanks(self, active_only: bool = True) -> list[Envelope]:
        return [e for e in self.envelopes(active_only) if e.is_piggybank]

    def next_order_index(self) -> int:
        if not self._envelopes:
            return 0
        return max(e.order_index for e in self._envelopes.values()) + 1

    def add(self, envelope: Envelope) -> Envelope:
        self._envelopes[envelope.id] = envelope
        return envelope

    def update(self, envelope: Envelope) -> Envelope:
        """
        Replace an envelope.

        Returns:
            The record that was replaced

        Raises:
            NotFoundError: If the envelope is unknown
        """
        previous = self._envelopes.get(envelope.id)
        if previous is None:
            raise NotFoundError("envelope", envelope.id)
        self._envelopes[envelope.id] = envelope
        return previous

    def remove(self, envelope_id: str) -> Envelope:
        envelope = self._envelopes.pop(envelope_id, None)
        if envelope is None:
            raise NotFoundError("envelope", envelope_id)
        return envelope

    def restore(self, envelopes: Iterable[Envelope]) -> None:
        for envelope in envelopes:
            self._envelopes[envelope.id] = envelope

    def discard(self, envelope_ids: Iterable[str]) -> None:
        for envelope_id in envelope_ids:
            self._envelopes.pop(envelope_id, None)

    # -------------------------------------------------------------------------
    # Categories
    # -------------------------------------------------------------------------

    def get_category(self, category_id: str) -> Optional[Category]:
        return self._categories.get(category_id)

    def categories(self, include_archived: bool = False) -> list[Category]:
        result = [c for c in self._categories.values() if include_archived or not c.is_archived]
        return sorted(result, key=lambda c: c.order_index)

    def add_category(self, category: Category) -> Category:
        self._categories[category.id] = category
        return category

    def update_category(self, category: Category) -> Category:
        previous = self._categories.get(category.id)
        if previous is None:
            raise NotFoundError("category", category.id)
        self._categories[category.id] = category
        return previous

    def remove_category(self, category_id: str) -> tuple[Category, list[Envelope]]:
        """
        Remove a category and clear it from every envelope in it.

        Returns:
            The removed category and the envelopes as they were before
            their category_id was cleared
        """
        category = self._categories.pop(category_id, None)
        if category is None:
            raise NotFoundError("category", category_id)

        previous = [e for e in self._envelopes.values() if e.category_id == category_id]
        for envelope in previous:
            self._envelopes[envelope.id] = envelope.model_copy(update={"category_id": None})
        return category, previous

    def restore_categories(self, categories: Iterable[Category]) -> None:
        for category in categories:
            self._categories[category.id] = category

    def discard_categories(self, category_ids: Iterable[str]) -> None:
        for category_id in category_ids:
            self._categories.pop(category_id, None)

    def clear(self) -> None:
        self._envelopes.clear()
        self._categories.clear()
