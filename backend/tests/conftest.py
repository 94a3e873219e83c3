"""
Shared fixtures for the reconciliation test suite.
"""

import uuid
from datetime import date
from decimal import Decimal

import pytest

from reconciliation.models import BankTransaction, Invoice, InvoiceStatus
from reconciliation.repository import InMemoryReconciliationRepository
from reconciliation.services import ReconciliationService


def build_invoice(
    customer_name="Acme Corp",
    amount="500.00",
    due_date=date(2024, 1, 10),
    status=InvoiceStatus.SENT,
    invoice_number=None,
    **kwargs
) -> Invoice:
    return Invoice(
        id=str(uuid.uuid4()),
        invoice_number=invoice_number or f"INV-{uuid.uuid4().hex[:8]}",
        customer_name=customer_name,
        amount=Decimal(amount),
        due_date=due_date,
        status=status,
        **kwargs
    )


def build_transaction(
    description="ACME CORP PAYMENT",
    amount="500.00",
    transaction_date=date(2024, 1, 9),
    batch_id=None,
    **kwargs
) -> BankTransaction:
    return BankTransaction(
        id=str(uuid.uuid4()),
        batch_id=batch_id or str(uuid.uuid4()),
        transaction_date=transaction_date,
        description=description,
        amount=Decimal(amount),
        **kwargs
    )


@pytest.fixture
def make_invoice():
    return build_invoice


@pytest.fixture
def make_transaction():
    return build_transaction


@pytest.fixture
def repository():
    return InMemoryReconciliationRepository()


@pytest.fixture
def service(repository):
    """Service on in-memory storage, publishing progress every 2 rows."""
    return ReconciliationService(repository, progress_interval=2)


def statement_row(date_text="09-01-2024", description="ACME CORP PAYMENT", amount="500.00", reference="REF-1"):
    """One bank statement CSV row in upload column order."""
    return ["1", date_text, description, amount, reference]


@pytest.fixture
def make_row():
    return statement_row
