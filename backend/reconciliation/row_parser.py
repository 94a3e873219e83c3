"""
Statement and invoice row parsing.

Turns raw CSV rows into typed values for the ingestion pipeline and the
invoice upload. Every failure is a RowParseError carrying the row number,
so callers can skip the row and keep going.
"""

import csv
import os
import re
import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Iterator, List, Optional, Sequence

from reconciliation.errors import RowParseError
from reconciliation.models import InvoiceStatus

logger = logging.getLogger(__name__)

# Day-month-year is preferred, year-month-day accepted as a fallback
DATE_FORMATS = ("%d-%m-%Y", "%Y-%m-%d")

STATEMENT_MIN_COLUMNS = 5
INVOICE_MIN_COLUMNS = 7

_CURRENCY_PREFIX = re.compile(r"^[$€£¥₹]")

CENT = Decimal("0.01")

AMOUNT_ERROR = "amount must be a positive number with at most two decimal places"


@dataclass
class ParsedTransactionRow:
    transaction_date: date
    description: str
    amount: Decimal
    reference_number: Optional[str]


@dataclass
class ParsedInvoiceRow:
    invoice_number: str
    customer_name: str
    customer_email: Optional[str]
    amount: Decimal
    status: InvoiceStatus
    due_date: date


def has_cent_precision(amount: Decimal) -> bool:
    """True when the amount needs no more than two decimal places."""
    try:
        return amount == amount.quantize(CENT)
    except InvalidOperation:
        return False


def parse_amount(value: str) -> Optional[Decimal]:
    """
    Parse decimal text.

    Returns None unless the result is a finite positive number with at most
    two decimal places (trailing zeros beyond that are fine: 500.000).
    """
    if value is None:
        return None

    value_str = str(value).strip().replace(",", "").replace(" ", "")
    value_str = _CURRENCY_PREFIX.sub("", value_str)
    if not value_str:
        return None

    try:
        amount = Decimal(value_str)
    except InvalidOperation:
        return None

    if not amount.is_finite() or amount <= 0 or not has_cent_precision(amount):
        return None
    return amount.quantize(CENT)


def parse_date(value: str) -> Optional[date]:
    if not value:
        return None

    value_str = str(value).strip()
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(value_str, fmt).date()
        except ValueError:
            continue
    return None


def parse_transaction_row(row: Sequence[str], row_number: int) -> ParsedTransactionRow:
    """
    Parse one bank statement row.

    Columns: reference (ignored), date, description, amount, reference code.
    """
    if len(row) < STATEMENT_MIN_COLUMNS:
        raise RowParseError(row_number, f"expected {STATEMENT_MIN_COLUMNS} columns, got {len(row)}")

    tx_date = parse_date(row[1])
    if tx_date is None:
        raise RowParseError(row_number, "invalid transaction date", field="date", value=row[1])

    description = (row[2] or "").strip()

    amount = parse_amount(row[3])
    if amount is None:
        raise RowParseError(row_number, AMOUNT_ERROR, field="amount", value=row[3])

    reference = (row[4] or "").strip() or None

    return ParsedTransactionRow(
        transaction_date=tx_date,
        description=description,
        amount=amount,
        reference_number=reference,
    )


def parse_invoice_row(row: Sequence[str], row_number: int) -> ParsedInvoiceRow:
    """
    Parse one invoice upload row.

    Columns: row id (ignored), invoice number, customer name, customer
    email, amount, status, due date. A blank invoice number gets a
    generated one.
    """
    if len(row) < INVOICE_MIN_COLUMNS:
        raise RowParseError(row_number, f"expected {INVOICE_MIN_COLUMNS} columns, got {len(row)}")

    invoice_number = (row[1] or "").strip() or str(uuid.uuid4())

    customer_name = (row[2] or "").strip()
    if not customer_name:
        raise RowParseError(row_number, "empty customer name", field="customer_name")

    amount = parse_amount(row[4])
    if amount is None:
        raise RowParseError(row_number, AMOUNT_ERROR, field="amount", value=row[4])

    status_text = (row[5] or "").strip().lower() or InvoiceStatus.SENT.value
    try:
        status = InvoiceStatus(status_text)
    except ValueError:
        raise RowParseError(row_number, f"unknown invoice status '{status_text}'", field="status", value=row[5])

    due_date = parse_date(row[6])
    if due_date is None:
        raise RowParseError(row_number, "invalid due date", field="due_date", value=row[6])

    return ParsedInvoiceRow(
        invoice_number=invoice_number,
        customer_name=customer_name,
        customer_email=(row[3] or "").strip() or None,
        amount=amount,
        status=status,
        due_date=due_date,
    )


def read_csv_rows(file_path: str, remove_after: bool = False) -> Iterator[List[str]]:
    """
    Stream the data rows of a CSV file, header excluded.

    With remove_after the file is deleted once the stream ends, whether it
    was exhausted, failed or closed early.
    """
    try:
        with open(file_path, "r", encoding="utf-8-sig", newline="") as f:
            sample = f.read(4096)
            f.seek(0)

            try:
                dialect = csv.Sniffer().sniff(sample, delimiters=",;\t|")
            except csv.Error:
                dialect = csv.excel

            reader = csv.reader(f, dialect=dialect)
            header = next(reader, None)
            if header is None:
                logger.warning(f"CSV file {file_path} is empty")
                return

            for row in reader:
                yield row
    finally:
        if remove_after:
            remove_file(file_path)


def remove_file(file_path: str):
    """Delete a stored upload; a file that is already gone is fine."""
    try:
        os.remove(file_path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Could not remove upload {file_path}: {e}")
