"""
Reconciliation Service

Core business logic for the reconciliation engine:
- Maintaining the invoice index (invoice creation, CSV upload, rebuild)
- Launching batch ingestion of bank statements
- Automatic matching of single transactions
- Batch progress, statistics and transaction listing
- Operator actions (confirm, reject, manual match, mark external, bulk confirm)
- Audit trail

Owns its invoice index, progress tracker and ingestion worker; nothing is
held in module-level state.
"""

import logging
import uuid
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from reconciliation import state_machine
from reconciliation.errors import (
    BatchNotFoundError,
    InvoiceNotFoundError,
    RowParseError,
    TransactionNotFoundError,
    ValidationError,
)
from reconciliation.events import ReconciliationAuditEvent, log_reconciliation_event
from reconciliation.invoice_index import InvoiceIndex, InvoiceSnapshot
from reconciliation.matching_rules import InvoiceMatchingRules, MatchResult, invoice_rules
from reconciliation.models import (
    BankTransaction,
    BatchStats,
    BatchStatus,
    Invoice,
    InvoiceStatus,
    MatchAuditEntry,
    ReconciliationBatch,
    TransactionStatus,
    generate_uuid,
)
from reconciliation.progress_tracker import BatchProgress, BatchProgressTracker
from reconciliation.repository.base import ReconciliationRepository
from reconciliation.row_parser import has_cent_precision, parse_invoice_row
from reconciliation.workers.ingestion_worker import BatchIngestionWorker, RowSource

logger = logging.getLogger(__name__)

LIST_STATUS_FILTERS = frozenset({"all"} | {s.value for s in TransactionStatus})


class ReconciliationService:
    """
    Service for reconciling bank transactions against invoices.
    """

    def __init__(
        self,
        repository: ReconciliationRepository,
        rules: Optional[InvoiceMatchingRules] = None,
        index: Optional[InvoiceIndex] = None,
        tracker: Optional[BatchProgressTracker] = None,
        progress_interval: int = 100,
        page_size: int = 50,
        page_max: int = 500
    ):
        self.repository = repository
        self.rules = rules or invoice_rules
        self.index = index or InvoiceIndex()
        self.tracker = tracker or BatchProgressTracker()
        self.page_size = page_size
        self.page_max = page_max
        self.worker = BatchIngestionWorker(
            repository,
            self.index,
            self.tracker,
            matcher=self.apply_automatic_match,
            progress_interval=progress_interval,
        )

    @classmethod
    def from_settings(cls, repository: ReconciliationRepository, settings) -> "ReconciliationService":
        """Build a service configured from application settings."""
        rules = InvoiceMatchingRules(
            auto_match_threshold=settings.AUTO_MATCH_THRESHOLD,
            review_threshold=settings.REVIEW_THRESHOLD,
            matchable_statuses=settings.matchable_invoice_statuses,
        )
        return cls(
            repository,
            rules=rules,
            tracker=BatchProgressTracker(max_entries=settings.PROGRESS_CACHE_MAX_BATCHES),
            progress_interval=settings.PROGRESS_FLUSH_INTERVAL,
            page_size=settings.TRANSACTION_PAGE_SIZE,
            page_max=settings.TRANSACTION_PAGE_MAX,
        )

    # ==================== INVOICES ====================

    async def create_invoice(
        self,
        customer_name: str,
        amount: Decimal,
        due_date: date,
        invoice_number: Optional[str] = None,
        customer_email: Optional[str] = None,
        status: InvoiceStatus = InvoiceStatus.SENT
    ) -> Invoice:
        """
        Create an invoice and refresh the invoice index.

        An invoice number that already exists is left untouched and the
        stored invoice is returned instead.
        """
        if not customer_name or not customer_name.strip():
            raise ValidationError("Customer name is required", field="customer_name")

        amount = Decimal(str(amount))
        if not amount.is_finite() or amount <= 0:
            raise ValidationError("Amount must be a positive number", field="amount", value=amount)
        if not has_cent_precision(amount):
            raise ValidationError("Amount cannot have more than two decimal places", field="amount", value=amount)

        invoice = Invoice(
            id=generate_uuid(),
            invoice_number=(invoice_number or "").strip() or str(uuid.uuid4()),
            customer_name=customer_name.strip(),
            customer_email=customer_email,
            amount=amount,
            status=InvoiceStatus(status),
            due_date=due_date,
        )

        created = await self.repository.create_invoice(invoice)
        if not created:
            logger.info(f"Invoice {invoice.invoice_number} already exists, returning stored invoice")
            return await self.repository.get_invoice_by_number(invoice.invoice_number)

        await self.rebuild_invoice_index()
        return invoice

    async def upload_invoices(self, rows: Iterable) -> Dict[str, int]:
        """
        Insert invoices from CSV rows, then rebuild the index once.

        Unparseable rows and duplicate invoice numbers are skipped.
        """
        added = 0
        skipped = 0

        for row_number, row in enumerate(rows, start=1):
            try:
                parsed = parse_invoice_row(row, row_number)
            except RowParseError as e:
                logger.warning(f"Skipping invoice row: {e.message}")
                skipped += 1
                continue

            invoice = Invoice(
                id=generate_uuid(),
                invoice_number=parsed.invoice_number,
                customer_name=parsed.customer_name,
                customer_email=parsed.customer_email,
                amount=parsed.amount,
                status=parsed.status,
                due_date=parsed.due_date,
            )
            if await self.repository.create_invoice(invoice):
                added += 1
            else:
                skipped += 1

        await self.rebuild_invoice_index()

        logger.info(f"Invoice upload: {added} added, {skipped} skipped")
        return {"invoices_added": added, "rows_skipped": skipped}

    async def rebuild_invoice_index(self) -> Dict[str, int]:
        amounts = await self.index.rebuild(self.repository)

        details = {"amounts": amounts, "invoices": self.index.invoice_count}
        log_reconciliation_event(ReconciliationAuditEvent.INVOICE_INDEX_REBUILT, details)
        return details

    # ==================== BATCHES ====================

    async def start_batch_upload(self, filename: str, rows: RowSource) -> ReconciliationBatch:
        """
        Create a batch in processing state and launch its ingestion.

        Returns as soon as the ingestion task is scheduled.
        """
        batch = ReconciliationBatch(id=generate_uuid(), filename=filename)
        await self.repository.create_batch(batch)

        self.worker.start_batch(batch.id, rows)

        log_reconciliation_event(
            ReconciliationAuditEvent.BATCH_STARTED,
            {"batch_id": batch.id, "filename": filename}
        )
        return batch

    def apply_automatic_match(
        self,
        tx: BankTransaction,
        snapshot: Optional[InvoiceSnapshot] = None
    ) -> Tuple[MatchResult, MatchAuditEntry]:
        """
        Run automatic matching for one pending transaction in memory.

        Nothing is persisted; the caller saves the transaction and the
        returned audit entry.
        """
        candidates = self.index.candidates(tx.amount, snapshot)
        result = self.rules.find_match(tx, candidates)
        entry = state_machine.apply_match_result(tx, result)
        return result, entry

    async def match_transaction(
        self,
        tx: BankTransaction,
        snapshot: Optional[InvoiceSnapshot] = None
    ) -> MatchResult:
        """
        Run automatic matching for one pending transaction and persist the outcome.

        Args:
            tx: Pending transaction, already persisted
            snapshot: Invoice index snapshot; the current one when omitted

        Returns:
            The MatchResult applied to the transaction
        """
        result, entry = self.apply_automatic_match(tx, snapshot)
        await self.repository.save_transaction(tx)
        await self.repository.create_audit_entry(entry)

        if result.matched:
            log_reconciliation_event(
                ReconciliationAuditEvent.TRANSACTION_MATCHED,
                {
                    "transaction_id": tx.id,
                    "batch_id": tx.batch_id,
                    "invoice_id": result.invoice_id,
                    "status": result.status.value,
                    "confidence_score": round(result.confidence_score, 2),
                },
                level=logging.DEBUG
            )
        return result

    async def _get_batch(self, batch_id: str) -> ReconciliationBatch:
        batch = await self.repository.get_batch(batch_id)
        if batch is None:
            raise BatchNotFoundError(batch_id)
        return batch

    async def get_batch_progress(self, batch_id: str) -> BatchProgress:
        """
        Processed count, total and status of a batch.

        The batch row decides completion; while processing, the tracker may
        be ahead of the last persisted progress flush.
        """
        batch = await self._get_batch(batch_id)

        if batch.status == BatchStatus.COMPLETED:
            return BatchProgress(
                processed_count=batch.processed_count,
                total=batch.total_transactions,
                status=BatchStatus.COMPLETED,
            )

        tracked = self.tracker.get_progress(batch_id)
        processed = batch.processed_count
        if tracked is not None:
            processed = max(processed, tracked.processed_count)

        return BatchProgress(
            processed_count=processed,
            total=batch.total_transactions,
            status=BatchStatus.PROCESSING,
        )

    async def get_batch_stats(self, batch_id: str) -> BatchStats:
        await self._get_batch(batch_id)
        return await self.tracker.get_stats(batch_id, self.repository)

    async def list_transactions(
        self,
        batch_id: str,
        status: Optional[str] = None,
        cursor: Optional[str] = None,
        limit: Optional[int] = None,
        search: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        One page of a batch's transactions plus the batch stats.

        Pages are ordered by transaction id; pass next_cursor back to get
        the following page.
        """
        if status is not None and status not in LIST_STATUS_FILTERS:
            raise ValidationError(
                f"Invalid status filter. Must be one of: {sorted(LIST_STATUS_FILTERS)}",
                field="status",
                value=status
            )

        if limit is None:
            limit = self.page_size
        if limit < 1:
            raise ValidationError("Limit must be at least 1", field="limit", value=limit)
        limit = min(limit, self.page_max)

        await self._get_batch(batch_id)

        page = await self.repository.list_transactions_by_batch(
            batch_id,
            status=status,
            cursor=cursor or None,
            limit=limit,
            search=(search or "").strip() or None,
        )
        stats = await self.tracker.get_stats(batch_id, self.repository)

        return {
            "items": [tx.to_dict() for tx in page.items],
            "next_cursor": page.next_cursor,
            "has_more": page.has_more,
            "stats": stats.to_dict(),
        }

    # ==================== OPERATOR ACTIONS ====================

    async def _get_transaction(self, transaction_id: str) -> BankTransaction:
        tx = await self.repository.get_transaction_by_id(transaction_id)
        if tx is None:
            raise TransactionNotFoundError(transaction_id)
        return tx

    async def _record(
        self,
        tx: BankTransaction,
        entry: MatchAuditEntry,
        event_type: str
    ) -> BankTransaction:
        await self.repository.save_transaction(tx)
        await self.repository.create_audit_entry(entry)
        self.tracker.invalidate_stats(tx.batch_id)

        log_reconciliation_event(
            event_type,
            {
                "transaction_id": tx.id,
                "batch_id": tx.batch_id,
                "previous_status": entry.previous_status.value,
                "new_status": entry.new_status.value,
                "previous_invoice_id": entry.previous_invoice_id,
                "new_invoice_id": entry.new_invoice_id,
                "reason": entry.reason,
            },
            actor=entry.performed_by
        )
        return tx

    async def confirm_transaction(self, transaction_id: str, actor: str = "system") -> BankTransaction:
        tx = await self._get_transaction(transaction_id)
        entry = state_machine.confirm(tx, actor)
        return await self._record(tx, entry, ReconciliationAuditEvent.TRANSACTION_CONFIRMED)

    async def reject_transaction(
        self,
        transaction_id: str,
        actor: str = "system",
        reason: Optional[str] = None
    ) -> BankTransaction:
        tx = await self._get_transaction(transaction_id)
        entry = state_machine.reject(tx, actor, reason)
        return await self._record(tx, entry, ReconciliationAuditEvent.TRANSACTION_REJECTED)

    async def manual_match_transaction(
        self,
        transaction_id: str,
        invoice_id: str,
        actor: str = "system",
        reason: Optional[str] = None
    ) -> BankTransaction:
        """Assign an invoice chosen by the operator, bypassing scoring."""
        tx = await self._get_transaction(transaction_id)

        invoice = await self.repository.get_invoice_by_id(invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(invoice_id)

        entry = state_machine.manual_match(tx, invoice.id, actor, reason)
        return await self._record(tx, entry, ReconciliationAuditEvent.TRANSACTION_MANUAL_MATCH)

    async def mark_transaction_external(
        self,
        transaction_id: str,
        actor: str = "system",
        reason: Optional[str] = None
    ) -> BankTransaction:
        tx = await self._get_transaction(transaction_id)
        entry = state_machine.mark_external(tx, actor, reason)
        return await self._record(tx, entry, ReconciliationAuditEvent.TRANSACTION_EXTERNAL)

    async def bulk_confirm_auto_matched(self, batch_id: str, actor: str = "system") -> int:
        """
        Confirm every auto_matched transaction of a batch in one set-update.

        Returns:
            Number of transactions moved to confirmed
        """
        await self._get_batch(batch_id)

        updated = await self.repository.bulk_update_transactions(
            batch_id,
            TransactionStatus.AUTO_MATCHED,
            {
                "status": TransactionStatus.CONFIRMED,
                "confidence_score": state_machine.FULL_CONFIDENCE,
            },
        )
        self.tracker.invalidate_stats(batch_id)

        log_reconciliation_event(
            ReconciliationAuditEvent.BULK_CONFIRMED,
            {"batch_id": batch_id, "transactions_updated": updated},
            actor=actor
        )
        return updated

    async def get_transaction_audit_trail(self, transaction_id: str) -> List[MatchAuditEntry]:
        await self._get_transaction(transaction_id)
        return await self.repository.list_audit_entries(transaction_id)
