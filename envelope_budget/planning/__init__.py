"""Monthly budget plan, envelope registry and distribution templates."""

from envelope_budget.planning.registry import EnvelopeRegistry
from envelope_budget.planning.plan import MonthlyBudgetPlan
from envelope_budget.planning.templates import TemplateBook

__all__ = ["EnvelopeRegistry", "MonthlyBudgetPlan", "TemplateBook"]
