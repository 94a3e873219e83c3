"""
Invoice Reconciliation Engine

Matches bank statement transactions against outstanding invoices:
- Amount-indexed invoice lookup
- Weighted name/date/ambiguity scoring with configurable thresholds
- Background batch ingestion with progress and stats tracking
- Operator review actions with a full audit trail
"""

from reconciliation.matching_rules import (
    InvoiceMatchingRules,
    MatchCandidate,
    MatchResult,
    invoice_rules
)
from reconciliation.invoice_index import InvoiceIndex
from reconciliation.progress_tracker import BatchProgress, BatchProgressTracker
from reconciliation.services.reconciliation_service import ReconciliationService

__all__ = [
    # Matching Rules
    'InvoiceMatchingRules',
    'MatchCandidate',
    'MatchResult',
    'invoice_rules',
    # Index / Tracking
    'InvoiceIndex',
    'BatchProgress',
    'BatchProgressTracker',
    # Service
    'ReconciliationService',
]
