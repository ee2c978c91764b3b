"""
Envelope Budget - Source Package

A zero-based envelope budgeting engine that keeps every balance
derivable while changes are applied optimistically and the remote store
comes and goes.

DESIGN PRINCIPLES:
1. Apply locally → Confirm remotely → Keep or roll back
2. Balances are derived, never stored
3. No record may point at an envelope that does not exist
4. Every command must be auditable
5. Storage layer is swappable
"""

__version__ = "1.0.0"
__author__ = "Envelope Budget Team"
