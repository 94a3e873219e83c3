"""
Transaction State Machine

The only place where a bank transaction's status, matched invoice and
confidence score change. Every transition mutates the transaction in
place and returns the MatchAuditEntry describing it.

    pending --automatic match--> auto_matched | needs_review | unmatched
    any     --confirm----------> confirmed     (score 100, invoice kept)
    any     --reject-----------> unmatched     (invoice cleared, score 0)
    any     --manual match-----> confirmed     (new invoice, score 100)
    any     --mark external----> external      (invoice cleared, score 0)

Operator actions are allowed from every state so corrections can be made
at any time, including reversing a confirmation.
"""

import logging
from typing import Optional

from reconciliation.errors import InvalidTransitionError
from reconciliation.matching_rules import MatchResult
from reconciliation.models import (
    AuditAction,
    BankTransaction,
    MatchAuditEntry,
    TransactionStatus,
)

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"
FULL_CONFIDENCE = 100.0


def _transition(
    tx: BankTransaction,
    action: AuditAction,
    new_status: TransactionStatus,
    new_invoice_id: Optional[str],
    new_score: float,
    actor: str,
    reason: Optional[str] = None
) -> MatchAuditEntry:
    entry = MatchAuditEntry(
        transaction_id=tx.id,
        action=action,
        previous_invoice_id=tx.matched_invoice_id,
        new_invoice_id=new_invoice_id,
        previous_status=tx.status,
        new_status=new_status,
        performed_by=actor,
        reason=reason,
    )

    tx.status = new_status
    tx.matched_invoice_id = new_invoice_id
    tx.confidence_score = new_score

    logger.debug(
        f"Transaction {tx.id}: {entry.previous_status.value} -> {new_status.value} ({action.value})"
    )
    return entry


def apply_match_result(tx: BankTransaction, result: MatchResult) -> MatchAuditEntry:
    """Record the automatic matching outcome on a pending transaction."""
    if tx.status != TransactionStatus.PENDING:
        raise InvalidTransitionError(
            tx.id, tx.status.value, AuditAction.AUTO_MATCH.value,
            "automatic matching only applies to pending transactions"
        )

    tx.match_details = result.explanation
    return _transition(
        tx,
        AuditAction.AUTO_MATCH,
        result.status,
        result.invoice_id,
        result.confidence_score,
        SYSTEM_ACTOR,
    )


def confirm(tx: BankTransaction, actor: str = SYSTEM_ACTOR) -> MatchAuditEntry:
    """
    Operator accepts the current match. Confirming an already confirmed
    transaction is a no-op apart from the audit entry.
    """
    if tx.matched_invoice_id is None:
        raise InvalidTransitionError(
            tx.id, tx.status.value, AuditAction.CONFIRM.value,
            "transaction has no matched invoice; use a manual match instead"
        )

    return _transition(
        tx, AuditAction.CONFIRM, TransactionStatus.CONFIRMED,
        tx.matched_invoice_id, FULL_CONFIDENCE, actor
    )


def reject(tx: BankTransaction, actor: str = SYSTEM_ACTOR, reason: Optional[str] = None) -> MatchAuditEntry:
    """Operator rejects the current match; the transaction becomes unmatched."""
    return _transition(
        tx, AuditAction.REJECT, TransactionStatus.UNMATCHED,
        None, 0.0, actor, reason
    )


def manual_match(
    tx: BankTransaction,
    invoice_id: str,
    actor: str = SYSTEM_ACTOR,
    reason: Optional[str] = None
) -> MatchAuditEntry:
    """Operator assigns an invoice directly, bypassing scoring."""
    return _transition(
        tx, AuditAction.MANUAL_MATCH, TransactionStatus.CONFIRMED,
        invoice_id, FULL_CONFIDENCE, actor, reason
    )


def mark_external(tx: BankTransaction, actor: str = SYSTEM_ACTOR, reason: Optional[str] = None) -> MatchAuditEntry:
    """Operator declares the transaction out of scope for invoice matching."""
    return _transition(
        tx, AuditAction.MARK_EXTERNAL, TransactionStatus.EXTERNAL,
        None, 0.0, actor, reason
    )
