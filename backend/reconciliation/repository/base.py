"""
Reconciliation persistence interface.

All storage access of the reconciliation engine goes through this class.
Implementations may raise on any call; callers do not retry.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from reconciliation.models import (
    BankTransaction,
    BatchStats,
    Invoice,
    MatchAuditEntry,
    ReconciliationBatch,
    TransactionPage,
    TransactionStatus,
)


class ReconciliationRepository(ABC):

    # ==================== Invoices ====================

    @abstractmethod
    async def create_invoice(self, invoice: Invoice) -> bool:
        """Insert an invoice. Returns False when the invoice number already exists."""

    @abstractmethod
    async def get_invoice_by_id(self, invoice_id: str) -> Optional[Invoice]:
        ...

    @abstractmethod
    async def get_invoice_by_number(self, invoice_number: str) -> Optional[Invoice]:
        ...

    @abstractmethod
    async def get_all_invoices(self) -> List[Invoice]:
        ...

    @abstractmethod
    async def find_invoices_by_exact_amount(self, amount: Decimal) -> List[Invoice]:
        ...

    # ==================== Transactions ====================

    @abstractmethod
    async def create_transaction(self, tx: BankTransaction) -> BankTransaction:
        ...

    @abstractmethod
    async def save_transaction(self, tx: BankTransaction) -> BankTransaction:
        ...

    @abstractmethod
    async def get_transaction_by_id(self, transaction_id: str) -> Optional[BankTransaction]:
        ...

    @abstractmethod
    async def list_transactions_by_batch(
        self,
        batch_id: str,
        status: Optional[str] = None,
        cursor: Optional[str] = None,
        limit: int = 50,
        search: Optional[str] = None
    ) -> TransactionPage:
        """
        One page of a batch's transactions ordered by id ascending.

        status None or "all" disables the status filter; cursor is the id of
        the last item of the previous page; search matches the description
        (case-insensitive) or the amount text.
        """

    @abstractmethod
    async def bulk_update_transactions(
        self,
        batch_id: str,
        from_status: TransactionStatus,
        updates: Dict[str, Any]
    ) -> int:
        """Apply field updates to every transaction of the batch in from_status, as one set-update."""

    # ==================== Batches ====================

    @abstractmethod
    async def create_batch(self, batch: ReconciliationBatch) -> ReconciliationBatch:
        ...

    @abstractmethod
    async def get_batch(self, batch_id: str) -> Optional[ReconciliationBatch]:
        ...

    @abstractmethod
    async def update_batch_progress(self, batch_id: str, processed_count: int) -> None:
        ...

    @abstractmethod
    async def mark_batch_completed(
        self,
        batch_id: str,
        processed_count: int,
        outcome_counts: Dict[TransactionStatus, int],
        completed_at: datetime
    ) -> None:
        ...

    @abstractmethod
    async def get_batch_stats(self, batch_id: str) -> BatchStats:
        ...

    # ==================== Audit sink ====================

    @abstractmethod
    async def create_audit_entry(self, entry: MatchAuditEntry) -> None:
        ...

    @abstractmethod
    async def list_audit_entries(self, transaction_id: str) -> List[MatchAuditEntry]:
        ...
