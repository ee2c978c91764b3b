"""Reference validation package."""

from envelope_budget.validation.validator import ReferenceValidator

__all__ = ["ReferenceValidator"]
