"""Domain models and types for the crypto audit engine.

This package contains in-memory (Pydantic) models describing canonical
transactions, cost basis lots, disposals and the audit lifecycle. They are
independent from persistence models so that business logic and testing can
evolve without DB coupling.
"""

__all__ = [
    "audit",
    "balance_tracker",
    "disposals",
    "errors",
    "issues",
    "ledger",
    "lots",
]
