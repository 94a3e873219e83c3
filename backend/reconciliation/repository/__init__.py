"""
Reconciliation persistence backends.
"""

from reconciliation.repository.base import ReconciliationRepository
from reconciliation.repository.memory import InMemoryReconciliationRepository
from reconciliation.repository.sql import SqlReconciliationRepository

__all__ = [
    "ReconciliationRepository",
    "InMemoryReconciliationRepository",
    "SqlReconciliationRepository",
]
