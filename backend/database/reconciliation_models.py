"""
Invoice Reconciliation - Database Models

Tables:
- invoices: Outstanding invoices (matching targets)
- bank_transactions: One row per accepted bank statement line
- reconciliation_batches: One row per uploaded statement file
- match_audit_logs: Immutable trail of match transitions
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, String, Text, Float, Integer, Date, DateTime, Index, JSON, Numeric
)

from database.connection import Base


def generate_uuid() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class InvoiceDB(Base):
    """Invoice issued to a customer. Read-only input to matching."""
    __tablename__ = "invoices"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    invoice_number = Column(String(100), nullable=False, unique=True)
    customer_name = Column(Text, nullable=False, index=True)
    customer_email = Column(Text, nullable=True)
    amount = Column(Numeric(12, 2), nullable=False, index=True)
    status = Column(String(20), nullable=False, default="sent", index=True)
    due_date = Column(Date, nullable=False)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)


class BankTransactionDB(Base):
    """
    Bank statement line.

    status is governed by the transaction state machine; matched_invoice_id
    is set only for auto_matched, needs_review and confirmed rows.
    """
    __tablename__ = "bank_transactions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    upload_batch_id = Column(String(36), nullable=False, index=True)
    transaction_date = Column(Date, nullable=False)
    description = Column(Text, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False, index=True)
    reference_number = Column(String(255), nullable=True)
    status = Column(String(20), nullable=False, default="pending", index=True)
    matched_invoice_id = Column(String(36), nullable=True)
    confidence_score = Column(Float, nullable=False, default=0.0)
    match_details = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        Index("ix_bank_transactions_batch_status", "upload_batch_id", "status"),
    )


class ReconciliationBatchDB(Base):
    """Uploaded statement file and its ingestion progress."""
    __tablename__ = "reconciliation_batches"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    filename = Column(Text, nullable=False)
    total_transactions = Column(Integer, nullable=False, default=0)
    processed_count = Column(Integer, nullable=False, default=0)
    auto_matched_count = Column(Integer, nullable=False, default=0)
    needs_review_count = Column(Integer, nullable=False, default=0)
    unmatched_count = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default="processing", index=True)
    started_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)


class MatchAuditLogDB(Base):
    """Append-only record of a transaction's match transitions."""
    __tablename__ = "match_audit_logs"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    transaction_id = Column(String(36), nullable=False, index=True)
    action = Column(String(30), nullable=False)
    previous_invoice_id = Column(String(36), nullable=True)
    new_invoice_id = Column(String(36), nullable=True)
    previous_status = Column(String(20), nullable=True)
    new_status = Column(String(20), nullable=True)
    performed_by = Column(String(100), nullable=False, default="system")
    reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
