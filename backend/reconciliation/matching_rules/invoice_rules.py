"""
Invoice Matching Rules

Decides which invoice, if any, a bank transaction pays.

Candidates are the invoices sharing the transaction's exact amount.
Each candidate is scored 0-100 on:
- name: edit-distance similarity of the invoice customer name tokens
  against the transaction description tokens
- date: proximity of the transaction date to the invoice due date
- ambiguity: 100 for a single candidate, 80 when several share the amount

final = 0.6 * name + 0.3 * date + 0.1 * ambiguity

Classification of the best final score:
- >= 90: auto_matched
- >= 60: needs_review
- otherwise: unmatched

The highest final score wins; ties keep the first candidate in input order.
"""

import re
from datetime import date
from typing import Dict, Any, Iterable, List, Optional, FrozenSet
from dataclasses import dataclass

from rapidfuzz.distance import Levenshtein

from reconciliation.models import BankTransaction, Invoice, InvoiceStatus, TransactionStatus


DEFAULT_MATCHABLE_STATUSES = frozenset({
    InvoiceStatus.DRAFT.value,
    InvoiceStatus.SENT.value,
    InvoiceStatus.OVERDUE.value,
})

_STRIP_CHARS = re.compile(r"[.,]")


def normalize_name(value: str) -> str:
    """Uppercase, drop '.' and ',', turn '-' into a space, trim."""
    value = (value or "").upper()
    value = _STRIP_CHARS.sub("", value)
    value = value.replace("-", " ")
    return value.strip()


def token_similarity(a: str, b: str) -> float:
    """1 - levenshtein(a, b) / max(len(a), len(b)), in [0, 1]."""
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return 1.0 - Levenshtein.distance(a, b) / longest


def name_score(description: str, customer_name: str) -> float:
    """
    Average best-token similarity of the customer name against the
    description, scaled to 0-100. A name with no tokens scores 0.
    """
    description_tokens = normalize_name(description).split()
    name_tokens = normalize_name(customer_name).split()

    if not name_tokens:
        return 0.0

    total = 0.0
    for name_token in name_tokens:
        total += max(
            (token_similarity(name_token, desc_token) for desc_token in description_tokens),
            default=0.0,
        )

    return total / len(name_tokens) * 100


def date_score(transaction_date: date, due_date: date) -> float:
    """Step function of the absolute day difference."""
    days = abs((transaction_date - due_date).days)

    if days <= 3:
        return 100.0
    elif days <= 7:
        return 80.0
    elif days <= 15:
        return 60.0
    elif days <= 30:
        return 40.0

    return 20.0


def ambiguity_score(candidate_count: int) -> float:
    return 100.0 if candidate_count == 1 else 80.0


@dataclass
class MatchCandidate:
    """A scored invoice candidate."""
    invoice: Invoice
    name_score: float
    date_score: float
    ambiguity_score: float
    final_score: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "invoice_id": self.invoice.id,
            "invoice_name": self.invoice.customer_name,
            "name_score": self.name_score,
            "date_score": self.date_score,
            "ambiguity_score": self.ambiguity_score,
            "final_score": self.final_score,
        }


@dataclass
class MatchResult:
    """
    Outcome of matching one transaction.

    invoice_id is set only when status is auto_matched or needs_review.
    explanation is the audit payload shown to operators.
    """
    status: TransactionStatus
    invoice_id: Optional[str]
    confidence_score: float
    explanation: Dict[str, Any]
    best_match: Optional[MatchCandidate]
    candidates: List[MatchCandidate]

    @property
    def matched(self) -> bool:
        return self.invoice_id is not None


class InvoiceMatchingRules:
    """
    Scoring and classification for transaction-to-invoice matching.

    Pure: never touches storage, never mutates invoices or transactions.
    """

    WEIGHT_NAME = 0.6
    WEIGHT_DATE = 0.3
    WEIGHT_AMBIGUITY = 0.1

    def __init__(
        self,
        auto_match_threshold: float = 90.0,
        review_threshold: float = 60.0,
        matchable_statuses: Iterable[str] = DEFAULT_MATCHABLE_STATUSES
    ):
        self.auto_match_threshold = auto_match_threshold
        self.review_threshold = review_threshold
        self.matchable_statuses: FrozenSet[str] = frozenset(
            s.value if isinstance(s, InvoiceStatus) else str(s) for s in matchable_statuses
        )

    def classify(self, score: float) -> TransactionStatus:
        if score >= self.auto_match_threshold:
            return TransactionStatus.AUTO_MATCHED
        elif score >= self.review_threshold:
            return TransactionStatus.NEEDS_REVIEW
        return TransactionStatus.UNMATCHED

    def eligible(self, invoices: Iterable[Invoice]) -> List[Invoice]:
        """Drop invoices whose status is not matchable (paid by default)."""
        return [inv for inv in invoices if inv.status.value in self.matchable_statuses]

    def score_candidates(
        self,
        transaction: BankTransaction,
        invoices: List[Invoice]
    ) -> List[MatchCandidate]:
        ambiguity = ambiguity_score(len(invoices))
        scored = []

        for invoice in invoices:
            name = name_score(transaction.description, invoice.customer_name)
            proximity = date_score(transaction.transaction_date, invoice.due_date)
            final = (
                self.WEIGHT_NAME * name +
                self.WEIGHT_DATE * proximity +
                self.WEIGHT_AMBIGUITY * ambiguity
            )
            scored.append(MatchCandidate(
                invoice=invoice,
                name_score=name,
                date_score=proximity,
                ambiguity_score=ambiguity,
                final_score=min(max(final, 0.0), 100.0),
            ))

        return scored

    def find_match(
        self,
        transaction: BankTransaction,
        invoices: Iterable[Invoice]
    ) -> MatchResult:
        """
        Pick the best invoice for a transaction among same-amount invoices.

        Args:
            transaction: The bank transaction to match
            invoices: Invoices sharing the transaction's exact amount

        Returns:
            MatchResult with status, invoice, score and explanation
        """
        invoices = list(invoices)
        eligible = self.eligible(invoices)

        if not eligible:
            return MatchResult(
                status=TransactionStatus.UNMATCHED,
                invoice_id=None,
                confidence_score=0.0,
                explanation={
                    "amount_match": bool(invoices),
                    "transaction_desc": transaction.description,
                    "candidate_count": 0,
                    "final_score": 0.0,
                    "decision": TransactionStatus.UNMATCHED.value,
                },
                best_match=None,
                candidates=[],
            )

        candidates = self.score_candidates(transaction, eligible)

        best = candidates[0]
        for candidate in candidates[1:]:
            if candidate.final_score > best.final_score:
                best = candidate

        status = self.classify(best.final_score)
        matched = status != TransactionStatus.UNMATCHED

        explanation = {
            "amount_match": True,
            "invoice_id": best.invoice.id,
            "invoice_name": best.invoice.customer_name,
            "transaction_desc": transaction.description,
            "name_score": round(best.name_score, 4),
            "date_score": best.date_score,
            "ambiguity_score": best.ambiguity_score,
            "final_score": round(best.final_score, 4),
            "candidate_count": len(candidates),
            "decision": status.value,
        }

        return MatchResult(
            status=status,
            invoice_id=best.invoice.id if matched else None,
            confidence_score=best.final_score if matched else 0.0,
            explanation=explanation,
            best_match=best,
            candidates=candidates,
        )


# Default rules instance
invoice_rules = InvoiceMatchingRules()
