"""
Invoice Reconciliation - Database Storage Layer

PostgreSQL-backed reconciliation repository.
Each operation opens its own AsyncSession from the session factory, so
one repository instance is safe to share between the API and the
ingestion workers.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy import select, update, and_, or_, func, cast, String
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from database.reconciliation_models import (
    InvoiceDB, BankTransactionDB, ReconciliationBatchDB, MatchAuditLogDB
)
from reconciliation.invoice_index import amount_key
from reconciliation.models import (
    AuditAction,
    BankTransaction,
    BatchStats,
    BatchStatus,
    Invoice,
    InvoiceStatus,
    MatchAuditEntry,
    ReconciliationBatch,
    StatusTotals,
    TransactionPage,
    TransactionStatus,
)
from reconciliation.repository.base import ReconciliationRepository

logger = logging.getLogger(__name__)

LIKE_ESCAPE = "\\"


def contains_pattern(search: str) -> str:
    """LIKE pattern matching search as a literal substring."""
    escaped = (
        search.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
        .replace("%", LIKE_ESCAPE + "%")
        .replace("_", LIKE_ESCAPE + "_")
    )
    return f"%{escaped}%"


# ==================== CONVERSION HELPERS ====================

def db_to_invoice(db_obj: InvoiceDB) -> Invoice:
    return Invoice(
        id=db_obj.id,
        invoice_number=db_obj.invoice_number,
        customer_name=db_obj.customer_name,
        customer_email=db_obj.customer_email,
        amount=Decimal(db_obj.amount),
        status=InvoiceStatus(db_obj.status),
        due_date=db_obj.due_date,
        paid_at=db_obj.paid_at,
        created_at=db_obj.created_at,
    )


def db_to_transaction(db_obj: BankTransactionDB) -> BankTransaction:
    return BankTransaction(
        id=db_obj.id,
        batch_id=db_obj.upload_batch_id,
        transaction_date=db_obj.transaction_date,
        description=db_obj.description,
        amount=Decimal(db_obj.amount),
        reference_number=db_obj.reference_number,
        status=TransactionStatus(db_obj.status),
        matched_invoice_id=db_obj.matched_invoice_id,
        confidence_score=db_obj.confidence_score or 0.0,
        match_details=db_obj.match_details,
        created_at=db_obj.created_at,
    )


def db_to_batch(db_obj: ReconciliationBatchDB) -> ReconciliationBatch:
    return ReconciliationBatch(
        id=db_obj.id,
        filename=db_obj.filename,
        status=BatchStatus(db_obj.status),
        total_transactions=db_obj.total_transactions,
        processed_count=db_obj.processed_count,
        auto_matched_count=db_obj.auto_matched_count,
        needs_review_count=db_obj.needs_review_count,
        unmatched_count=db_obj.unmatched_count,
        started_at=db_obj.started_at,
        completed_at=db_obj.completed_at,
        created_at=db_obj.created_at,
    )


def db_to_audit_entry(db_obj: MatchAuditLogDB) -> MatchAuditEntry:
    return MatchAuditEntry(
        id=db_obj.id,
        transaction_id=db_obj.transaction_id,
        action=AuditAction(db_obj.action),
        previous_invoice_id=db_obj.previous_invoice_id,
        new_invoice_id=db_obj.new_invoice_id,
        previous_status=TransactionStatus(db_obj.previous_status),
        new_status=TransactionStatus(db_obj.new_status),
        performed_by=db_obj.performed_by,
        reason=db_obj.reason,
        created_at=db_obj.created_at,
    )


def _transaction_columns(tx: BankTransaction) -> Dict[str, Any]:
    return {
        "upload_batch_id": tx.batch_id,
        "transaction_date": tx.transaction_date,
        "description": tx.description,
        "amount": tx.amount,
        "reference_number": tx.reference_number,
        "status": tx.status.value,
        "matched_invoice_id": tx.matched_invoice_id,
        "confidence_score": tx.confidence_score,
        "match_details": tx.match_details,
    }


def _column_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


# ==================== REPOSITORY ====================

class SqlReconciliationRepository(ReconciliationRepository):
    """Repository for reconciliation database operations"""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    # ==================== Invoices ====================

    async def create_invoice(self, invoice: Invoice) -> bool:
        """Insert an invoice; an existing invoice number leaves the table unchanged."""
        async with self.session_factory() as session:
            existing = await session.execute(
                select(InvoiceDB.id).where(InvoiceDB.invoice_number == invoice.invoice_number)
            )
            if existing.scalar_one_or_none() is not None:
                return False

            session.add(InvoiceDB(
                id=invoice.id,
                invoice_number=invoice.invoice_number,
                customer_name=invoice.customer_name,
                customer_email=invoice.customer_email,
                amount=invoice.amount,
                status=invoice.status.value,
                due_date=invoice.due_date,
                paid_at=invoice.paid_at,
                created_at=invoice.created_at,
            ))
            try:
                await session.commit()
            except IntegrityError:
                # lost a race with a concurrent insert of the same number
                await session.rollback()
                logger.info(f"Invoice {invoice.invoice_number} already exists, skipped")
                return False
            return True

    async def get_invoice_by_id(self, invoice_id: str) -> Optional[Invoice]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(InvoiceDB).where(InvoiceDB.id == invoice_id)
            )
            db_invoice = result.scalar_one_or_none()
            return db_to_invoice(db_invoice) if db_invoice else None

    async def get_invoice_by_number(self, invoice_number: str) -> Optional[Invoice]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(InvoiceDB).where(InvoiceDB.invoice_number == invoice_number)
            )
            db_invoice = result.scalar_one_or_none()
            return db_to_invoice(db_invoice) if db_invoice else None

    async def get_all_invoices(self) -> List[Invoice]:
        async with self.session_factory() as session:
            result = await session.execute(select(InvoiceDB).order_by(InvoiceDB.created_at))
            return [db_to_invoice(row) for row in result.scalars().all()]

    async def find_invoices_by_exact_amount(self, amount: Decimal) -> List[Invoice]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(InvoiceDB)
                .where(InvoiceDB.amount == amount_key(amount))
                .order_by(InvoiceDB.created_at)
            )
            return [db_to_invoice(row) for row in result.scalars().all()]

    # ==================== Transactions ====================

    async def create_transaction(self, tx: BankTransaction) -> BankTransaction:
        async with self.session_factory() as session:
            session.add(BankTransactionDB(id=tx.id, created_at=tx.created_at, **_transaction_columns(tx)))
            await session.commit()
        return tx

    async def save_transaction(self, tx: BankTransaction) -> BankTransaction:
        async with self.session_factory() as session:
            result = await session.execute(
                update(BankTransactionDB)
                .where(BankTransactionDB.id == tx.id)
                .values(**_transaction_columns(tx))
            )
            if result.rowcount == 0:
                session.add(BankTransactionDB(id=tx.id, created_at=tx.created_at, **_transaction_columns(tx)))
            await session.commit()
        return tx

    async def get_transaction_by_id(self, transaction_id: str) -> Optional[BankTransaction]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(BankTransactionDB).where(BankTransactionDB.id == transaction_id)
            )
            db_tx = result.scalar_one_or_none()
            return db_to_transaction(db_tx) if db_tx else None

    async def list_transactions_by_batch(
        self,
        batch_id: str,
        status: Optional[str] = None,
        cursor: Optional[str] = None,
        limit: int = 50,
        search: Optional[str] = None
    ) -> TransactionPage:
        conditions = [BankTransactionDB.upload_batch_id == batch_id]

        if status and status != "all":
            conditions.append(BankTransactionDB.status == status)

        if cursor:
            conditions.append(BankTransactionDB.id > cursor)

        if search:
            pattern = contains_pattern(search)
            conditions.append(or_(
                BankTransactionDB.description.ilike(pattern, escape=LIKE_ESCAPE),
                cast(BankTransactionDB.amount, String).like(pattern, escape=LIKE_ESCAPE),
            ))

        async with self.session_factory() as session:
            result = await session.execute(
                select(BankTransactionDB)
                .where(and_(*conditions))
                .order_by(BankTransactionDB.id.asc())
                .limit(limit + 1)
            )
            rows = [db_to_transaction(row) for row in result.scalars().all()]

        has_more = len(rows) > limit
        if has_more:
            rows = rows[:limit]

        return TransactionPage(
            items=rows,
            next_cursor=rows[-1].id if has_more else None,
            has_more=has_more,
        )

    async def bulk_update_transactions(
        self,
        batch_id: str,
        from_status: TransactionStatus,
        updates: Dict[str, Any]
    ) -> int:
        values = {name: _column_value(value) for name, value in updates.items()}

        async with self.session_factory() as session:
            result = await session.execute(
                update(BankTransactionDB)
                .where(and_(
                    BankTransactionDB.upload_batch_id == batch_id,
                    BankTransactionDB.status == from_status.value,
                ))
                .values(**values)
            )
            await session.commit()
            return result.rowcount

    # ==================== Batches ====================

    async def create_batch(self, batch: ReconciliationBatch) -> ReconciliationBatch:
        async with self.session_factory() as session:
            session.add(ReconciliationBatchDB(
                id=batch.id,
                filename=batch.filename,
                status=batch.status.value,
                total_transactions=batch.total_transactions,
                processed_count=batch.processed_count,
                started_at=batch.started_at,
                created_at=batch.created_at,
            ))
            await session.commit()
        return batch

    async def get_batch(self, batch_id: str) -> Optional[ReconciliationBatch]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(ReconciliationBatchDB).where(ReconciliationBatchDB.id == batch_id)
            )
            db_batch = result.scalar_one_or_none()
            return db_to_batch(db_batch) if db_batch else None

    async def update_batch_progress(self, batch_id: str, processed_count: int) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(ReconciliationBatchDB)
                .where(and_(
                    ReconciliationBatchDB.id == batch_id,
                    ReconciliationBatchDB.processed_count < processed_count,
                ))
                .values(processed_count=processed_count)
            )
            await session.commit()

    async def mark_batch_completed(
        self,
        batch_id: str,
        processed_count: int,
        outcome_counts: Dict[TransactionStatus, int],
        completed_at: datetime
    ) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(ReconciliationBatchDB)
                .where(ReconciliationBatchDB.id == batch_id)
                .values(
                    processed_count=processed_count,
                    total_transactions=processed_count,
                    auto_matched_count=outcome_counts.get(TransactionStatus.AUTO_MATCHED, 0),
                    needs_review_count=outcome_counts.get(TransactionStatus.NEEDS_REVIEW, 0),
                    unmatched_count=outcome_counts.get(TransactionStatus.UNMATCHED, 0),
                    status=BatchStatus.COMPLETED.value,
                    completed_at=completed_at,
                )
            )
            await session.commit()

    async def get_batch_stats(self, batch_id: str) -> BatchStats:
        async with self.session_factory() as session:
            result = await session.execute(
                select(
                    BankTransactionDB.status,
                    func.count(BankTransactionDB.id),
                    func.coalesce(func.sum(BankTransactionDB.amount), 0),
                )
                .where(BankTransactionDB.upload_batch_id == batch_id)
                .group_by(BankTransactionDB.status)
            )
            grouped = {
                status: StatusTotals(count=count, amount=Decimal(total))
                for status, count, total in result.all()
            }
        return BatchStats.from_status_rows(grouped)

    # ==================== Audit sink ====================

    async def create_audit_entry(self, entry: MatchAuditEntry) -> None:
        async with self.session_factory() as session:
            session.add(MatchAuditLogDB(
                id=entry.id,
                transaction_id=entry.transaction_id,
                action=entry.action.value,
                previous_invoice_id=entry.previous_invoice_id,
                new_invoice_id=entry.new_invoice_id,
                previous_status=entry.previous_status.value,
                new_status=entry.new_status.value,
                performed_by=entry.performed_by,
                reason=entry.reason,
                created_at=entry.created_at,
            ))
            await session.commit()

    async def list_audit_entries(self, transaction_id: str) -> List[MatchAuditEntry]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(MatchAuditLogDB)
                .where(MatchAuditLogDB.transaction_id == transaction_id)
                .order_by(MatchAuditLogDB.created_at.asc())
            )
            return [db_to_audit_entry(row) for row in result.scalars().all()]
