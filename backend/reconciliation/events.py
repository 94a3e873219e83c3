"""
Reconciliation audit events.

Operational log events for batch ingestion and operator actions. The
structured match audit trail itself is persisted through the repository;
these are the log-side counterpart picked up by the JSON log pipeline.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict

logger = logging.getLogger(__name__)


class ReconciliationAuditEvent:
    """Audit event types for reconciliation operations."""
    BATCH_STARTED = "reconciliation.batch_started"
    BATCH_COMPLETED = "reconciliation.batch_completed"
    TRANSACTION_MATCHED = "reconciliation.transaction_matched"
    TRANSACTION_CONFIRMED = "reconciliation.transaction_confirmed"
    TRANSACTION_REJECTED = "reconciliation.transaction_rejected"
    TRANSACTION_MANUAL_MATCH = "reconciliation.transaction_manual_match"
    TRANSACTION_EXTERNAL = "reconciliation.transaction_external"
    BULK_CONFIRMED = "reconciliation.bulk_confirmed"
    INVOICE_INDEX_REBUILT = "reconciliation.invoice_index_rebuilt"
    ROW_SKIPPED = "reconciliation.row_skipped"


def log_reconciliation_event(
    event_type: str,
    details: Dict[str, Any],
    actor: str = "system",
    level: int = logging.INFO
):
    """Log reconciliation event for audit trail."""
    log_entry = {
        "event": event_type,
        "details": details,
        "actor": actor,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }
    logger.log(level, f"Reconciliation event: {event_type}", extra=log_entry)
