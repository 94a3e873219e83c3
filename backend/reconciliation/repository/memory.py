"""
In-memory reconciliation repository.

Backs local development (STORAGE_BACKEND=memory) and the test suite.
Records are copied on the way in and out so callers never share state
with the store, matching the behaviour of a real database.
"""

import asyncio
import copy
from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from reconciliation.invoice_index import amount_key
from reconciliation.models import (
    BankTransaction,
    BatchStats,
    BatchStatus,
    Invoice,
    MatchAuditEntry,
    ReconciliationBatch,
    StatusTotals,
    TransactionPage,
    TransactionStatus,
)
from reconciliation.repository.base import ReconciliationRepository


class InMemoryReconciliationRepository(ReconciliationRepository):

    def __init__(self):
        self._invoices: Dict[str, Invoice] = {}
        self._transactions: Dict[str, BankTransaction] = {}
        self._batches: Dict[str, ReconciliationBatch] = {}
        self._audit: Dict[str, List[MatchAuditEntry]] = defaultdict(list)
        self._lock = asyncio.Lock()

    # ==================== Invoices ====================

    async def create_invoice(self, invoice: Invoice) -> bool:
        async with self._lock:
            if any(i.invoice_number == invoice.invoice_number for i in self._invoices.values()):
                return False
            self._invoices[invoice.id] = copy.deepcopy(invoice)
            return True

    async def get_invoice_by_id(self, invoice_id: str) -> Optional[Invoice]:
        invoice = self._invoices.get(invoice_id)
        return copy.deepcopy(invoice) if invoice else None

    async def get_invoice_by_number(self, invoice_number: str) -> Optional[Invoice]:
        for invoice in self._invoices.values():
            if invoice.invoice_number == invoice_number:
                return copy.deepcopy(invoice)
        return None

    async def get_all_invoices(self) -> List[Invoice]:
        return [copy.deepcopy(i) for i in self._invoices.values()]

    async def find_invoices_by_exact_amount(self, amount: Decimal) -> List[Invoice]:
        key = amount_key(amount)
        return [copy.deepcopy(i) for i in self._invoices.values() if amount_key(i.amount) == key]

    # ==================== Transactions ====================

    async def create_transaction(self, tx: BankTransaction) -> BankTransaction:
        async with self._lock:
            self._transactions[tx.id] = copy.deepcopy(tx)
        return tx

    async def save_transaction(self, tx: BankTransaction) -> BankTransaction:
        async with self._lock:
            self._transactions[tx.id] = copy.deepcopy(tx)
        return tx

    async def get_transaction_by_id(self, transaction_id: str) -> Optional[BankTransaction]:
        tx = self._transactions.get(transaction_id)
        return copy.deepcopy(tx) if tx else None

    async def list_transactions_by_batch(
        self,
        batch_id: str,
        status: Optional[str] = None,
        cursor: Optional[str] = None,
        limit: int = 50,
        search: Optional[str] = None
    ) -> TransactionPage:
        rows = [tx for tx in self._transactions.values() if tx.batch_id == batch_id]

        if status and status != "all":
            rows = [tx for tx in rows if tx.status.value == status]

        if cursor:
            rows = [tx for tx in rows if tx.id > cursor]

        if search:
            needle = search.lower()
            rows = [
                tx for tx in rows
                if needle in tx.description.lower() or needle in str(tx.amount)
            ]

        rows.sort(key=lambda tx: tx.id)
        page = rows[:limit + 1]

        has_more = len(page) > limit
        if has_more:
            page = page[:limit]

        return TransactionPage(
            items=[copy.deepcopy(tx) for tx in page],
            next_cursor=page[-1].id if has_more else None,
            has_more=has_more,
        )

    async def bulk_update_transactions(
        self,
        batch_id: str,
        from_status: TransactionStatus,
        updates: Dict[str, Any]
    ) -> int:
        async with self._lock:
            targets = [
                tx for tx in self._transactions.values()
                if tx.batch_id == batch_id and tx.status == from_status
            ]
            for tx in targets:
                for field_name, value in updates.items():
                    setattr(tx, field_name, value)
            return len(targets)

    # ==================== Batches ====================

    async def create_batch(self, batch: ReconciliationBatch) -> ReconciliationBatch:
        async with self._lock:
            self._batches[batch.id] = copy.deepcopy(batch)
        return batch

    async def get_batch(self, batch_id: str) -> Optional[ReconciliationBatch]:
        batch = self._batches.get(batch_id)
        return copy.deepcopy(batch) if batch else None

    async def update_batch_progress(self, batch_id: str, processed_count: int) -> None:
        async with self._lock:
            batch = self._batches[batch_id]
            batch.processed_count = max(batch.processed_count, processed_count)

    async def mark_batch_completed(
        self,
        batch_id: str,
        processed_count: int,
        outcome_counts: Dict[TransactionStatus, int],
        completed_at: datetime
    ) -> None:
        async with self._lock:
            batch = self._batches[batch_id]
            batch.processed_count = processed_count
            batch.total_transactions = processed_count
            batch.auto_matched_count = outcome_counts.get(TransactionStatus.AUTO_MATCHED, 0)
            batch.needs_review_count = outcome_counts.get(TransactionStatus.NEEDS_REVIEW, 0)
            batch.unmatched_count = outcome_counts.get(TransactionStatus.UNMATCHED, 0)
            batch.status = BatchStatus.COMPLETED
            batch.completed_at = completed_at

    async def get_batch_stats(self, batch_id: str) -> BatchStats:
        grouped: Dict[str, StatusTotals] = {}
        for tx in self._transactions.values():
            if tx.batch_id != batch_id:
                continue
            totals = grouped.setdefault(tx.status.value, StatusTotals())
            totals.count += 1
            totals.amount += tx.amount
        return BatchStats.from_status_rows(grouped)

    # ==================== Audit sink ====================

    async def create_audit_entry(self, entry: MatchAuditEntry) -> None:
        async with self._lock:
            self._audit[entry.transaction_id].append(copy.deepcopy(entry))

    async def list_audit_entries(self, transaction_id: str) -> List[MatchAuditEntry]:
        return [copy.deepcopy(e) for e in self._audit.get(transaction_id, [])]
