"""
Reconciliation Services
"""

from reconciliation.services.reconciliation_service import ReconciliationService

__all__ = ["ReconciliationService"]
