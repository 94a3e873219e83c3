"""
Reconciliation API Routers
"""

from reconciliation.endpoints.reconciliation_api import (
    router as reconciliation_router,
    transactions_router,
    invoices_router,
)

__all__ = ["reconciliation_router", "transactions_router", "invoices_router"]
