from .connection import init_engine, init_db, dispose_engine, Base

# Import reconciliation models to ensure they are registered with Base
from .reconciliation_models import (
    InvoiceDB, BankTransactionDB, ReconciliationBatchDB, MatchAuditLogDB
)

__all__ = [
    'init_engine', 'init_db', 'dispose_engine', 'Base',
    'InvoiceDB', 'BankTransactionDB', 'ReconciliationBatchDB', 'MatchAuditLogDB',
]
