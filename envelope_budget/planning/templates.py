"""
Distribution Templates

Saved splits of funds across envelopes. A template only stores envelope
ids and amounts; applying it goes through the monthly plan, so an entry
whose envelope has since been deleted or deactivated is dropped at that
point like any other allocation.

Deleting an envelope removes it from every template. A template left
with no envelopes is deleted with it.
"""

from typing import Iterable, Optional

import structlog

from envelope_budget.errors import NotFoundError
from envelope_budget.models.budget import DistributionTemplate
from envelope_budget.sync.changes import ChangeSet


logger = structlog.get_logger(__name__)


class TemplateBook:
    """Distribution templates keyed by local id."""

    def __init__(self, templates: Iterable[DistributionTemplate] = ()):
        self._templates: dict[str, DistributionTemplate] = {t.id: t for t in templates}

    def get(self, template_id: str) -> Optional[DistributionTemplate]:
        return self._templates.get(template_id)

    def templates(self) -> list[DistributionTemplate]:
        """Most recently used first."""
        return sorted(self._templates.values(), key=lambda t: t.last_used, reverse=True)

    def add(self, template: DistributionTemplate, changes: ChangeSet) -> DistributionTemplate:
        self._templates[template.id] = template
        changes.created(template)
        return template

    def update(self, template: DistributionTemplate, changes: ChangeSet) -> DistributionTemplate:
        previous = self._templates.get(template.id)
        if previous is None:
            raise NotFoundError("template", template.id)
        self._templates[template.id] = template
        changes.updated(previous, template)
        return template

    def remove(self, template_id: str, changes: ChangeSet) -> DistributionTemplate:
        template = self._templates.pop(template_id, None)
        if template is None:
            raise NotFoundError("template", template_id)
        changes.deleted(template)
        return template

    def remove_envelope(self, envelope_id: str, changes: ChangeSet) -> list[str]:
        """
        Drop envelope_id from every template that lists it.

        Returns:
            Ids of the templates that were deleted because they became empty
        """
        deleted = []
        for template in list(self._templates.values()):
            if envelope_id not in template.distributions:
                continue
            remaining = template.without_envelope(envelope_id)
            if remaining is None:
                self.remove(template.id, changes)
                deleted.append(template.id)
            else:
                self.update(template.model_copy(update={"distributions": remaining}), changes)
        if deleted:
            logger.info("templates_emptied", envelope_id=envelope_id, template_ids=deleted)
        return deleted

    # -------------------------------------------------------------------------
    # Rollback and hydration
    # -------------------------------------------------------------------------

    def restore(self, templates: Iterable[DistributionTemplate]) -> None:
        for template in templates:
            self._templates[template.id] = template

    def discard(self, template_ids: Iterable[str]) -> None:
        for template_id in template_ids:
            self._templates.pop(template_id, None)

    def clear(self) -> None:
        self._templates.clear()
