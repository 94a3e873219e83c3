"""
Reconciliation Domain Models

Plain dataclasses shared by the matching rules, the state machine, the
ingestion worker and every persistence backend. Amounts are Decimal,
dates are datetime.date, identifiers are UUID strings.
"""

import uuid
from enum import Enum
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Dict, Any, List, Optional
from dataclasses import dataclass, field


def generate_uuid() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class InvoiceStatus(str, Enum):
    """Invoice lifecycle status."""
    DRAFT = "draft"
    SENT = "sent"
    OVERDUE = "overdue"
    PAID = "paid"


class TransactionStatus(str, Enum):
    """
    Bank transaction status.

    pending is set at row creation; auto_matched, needs_review and
    unmatched are the outcomes of automatic matching; confirmed and
    external are only reached through operator actions.
    """
    PENDING = "pending"
    AUTO_MATCHED = "auto_matched"
    NEEDS_REVIEW = "needs_review"
    UNMATCHED = "unmatched"
    CONFIRMED = "confirmed"
    EXTERNAL = "external"


# Statuses that must reference an invoice
MATCHED_STATUSES = frozenset({
    TransactionStatus.AUTO_MATCHED,
    TransactionStatus.NEEDS_REVIEW,
    TransactionStatus.CONFIRMED,
})


class BatchStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"


class AuditAction(str, Enum):
    """Transitions recorded in the match audit trail."""
    AUTO_MATCH = "auto_match"
    CONFIRM = "confirm"
    REJECT = "reject"
    MANUAL_MATCH = "manual_match"
    MARK_EXTERNAL = "mark_external"


@dataclass
class Invoice:
    id: str
    invoice_number: str
    customer_name: str
    amount: Decimal
    due_date: date
    status: InvoiceStatus = InvoiceStatus.SENT
    customer_email: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "invoice_number": self.invoice_number,
            "customer_name": self.customer_name,
            "customer_email": self.customer_email,
            "amount": str(self.amount),
            "status": self.status.value,
            "due_date": self.due_date.isoformat(),
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class BankTransaction:
    id: str
    batch_id: str
    transaction_date: date
    description: str
    amount: Decimal
    reference_number: Optional[str] = None
    status: TransactionStatus = TransactionStatus.PENDING
    matched_invoice_id: Optional[str] = None
    confidence_score: float = 0.0
    match_details: Optional[Dict[str, Any]] = None
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "batch_id": self.batch_id,
            "transaction_date": self.transaction_date.isoformat(),
            "description": self.description,
            "amount": str(self.amount),
            "reference_number": self.reference_number,
            "status": self.status.value,
            "matched_invoice_id": self.matched_invoice_id,
            "confidence_score": self.confidence_score,
            "match_details": self.match_details,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class ReconciliationBatch:
    id: str
    filename: str
    status: BatchStatus = BatchStatus.PROCESSING
    total_transactions: int = 0
    processed_count: int = 0
    auto_matched_count: int = 0
    needs_review_count: int = 0
    unmatched_count: int = 0
    started_at: datetime = field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "filename": self.filename,
            "status": self.status.value,
            "total_transactions": self.total_transactions,
            "processed_count": self.processed_count,
            "auto_matched_count": self.auto_matched_count,
            "needs_review_count": self.needs_review_count,
            "unmatched_count": self.unmatched_count,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


@dataclass
class MatchAuditEntry:
    """
    One transition of a transaction's match.

    Handed to the persistence layer's audit sink; the engine keeps no
    audit storage of its own.
    """
    transaction_id: str
    action: AuditAction
    previous_invoice_id: Optional[str]
    new_invoice_id: Optional[str]
    previous_status: TransactionStatus
    new_status: TransactionStatus
    performed_by: str = "system"
    reason: Optional[str] = None
    id: str = field(default_factory=generate_uuid)
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "action": self.action.value,
            "previous_invoice_id": self.previous_invoice_id,
            "new_invoice_id": self.new_invoice_id,
            "previous_status": self.previous_status.value,
            "new_status": self.new_status.value,
            "performed_by": self.performed_by,
            "reason": self.reason,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class StatusTotals:
    count: int = 0
    amount: Decimal = Decimal("0")


@dataclass
class BatchStats:
    """Count and amount sum per transaction status for one batch."""
    total: int = 0
    total_amount: Decimal = Decimal("0")
    auto_matched: StatusTotals = field(default_factory=StatusTotals)
    needs_review: StatusTotals = field(default_factory=StatusTotals)
    unmatched: StatusTotals = field(default_factory=StatusTotals)
    confirmed: StatusTotals = field(default_factory=StatusTotals)

    @classmethod
    def from_status_rows(cls, rows: Dict[str, StatusTotals]) -> "BatchStats":
        """Build stats from a status -> totals grouping."""
        stats = cls()
        for status, totals in rows.items():
            stats.total += totals.count
            stats.total_amount += totals.amount
            if status == TransactionStatus.AUTO_MATCHED.value:
                stats.auto_matched = totals
            elif status == TransactionStatus.NEEDS_REVIEW.value:
                stats.needs_review = totals
            elif status == TransactionStatus.UNMATCHED.value:
                stats.unmatched = totals
            elif status == TransactionStatus.CONFIRMED.value:
                stats.confirmed = totals
        return stats

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "total_amount": str(self.total_amount),
            "auto_matched_count": self.auto_matched.count,
            "auto_matched_sum": str(self.auto_matched.amount),
            "needs_review_count": self.needs_review.count,
            "needs_review_sum": str(self.needs_review.amount),
            "unmatched_count": self.unmatched.count,
            "unmatched_sum": str(self.unmatched.amount),
            "confirmed_count": self.confirmed.count,
            "confirmed_sum": str(self.confirmed.amount),
        }


@dataclass
class TransactionPage:
    items: List[BankTransaction]
    next_cursor: Optional[str]
    has_more: bool
