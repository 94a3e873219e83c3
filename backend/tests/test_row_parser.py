"""
Unit Tests for Statement and Invoice Row Parsing

Run with: pytest backend/tests/test_row_parser.py -v
"""

import uuid
from datetime import date
from decimal import Decimal

import pytest

from reconciliation.errors import RowParseError, ValidationError
from reconciliation.models import InvoiceStatus
from reconciliation.row_parser import (
    parse_amount,
    parse_date,
    parse_invoice_row,
    parse_transaction_row,
    read_csv_rows,
)


class TestParseAmount:

    @pytest.mark.parametrize("text,expected", [
        ("500.00", Decimal("500.00")),
        (" 500 ", Decimal("500")),
        ("1,250.50", Decimal("1250.50")),
        ("$99.95", Decimal("99.95")),
        ("500.000", Decimal("500.00")),
    ])
    def test_valid(self, text, expected):
        assert parse_amount(text) == expected

    @pytest.mark.parametrize("text", ["", "abc", "0", "0.00", "-5.00", "NaN", "Infinity", "500.004", "0.001", None])
    def test_rejected(self, text):
        assert parse_amount(text) is None


class TestParseDate:

    def test_day_month_year(self):
        assert parse_date("09-01-2024") == date(2024, 1, 9)

    def test_year_month_day_fallback(self):
        assert parse_date("2024-01-09") == date(2024, 1, 9)

    @pytest.mark.parametrize("text", ["", "2024/01/09", "31-02-2024", "yesterday"])
    def test_rejected(self, text):
        assert parse_date(text) is None


class TestParseTransactionRow:

    def test_valid_row(self):
        parsed = parse_transaction_row(["1", "09-01-2024", " ACME CORP PAYMENT ", "500.00", "REF-1"], 1)

        assert parsed.transaction_date == date(2024, 1, 9)
        assert parsed.description == "ACME CORP PAYMENT"
        assert parsed.amount == Decimal("500.00")
        assert parsed.reference_number == "REF-1"

    def test_blank_reference_is_none(self):
        parsed = parse_transaction_row(["1", "09-01-2024", "ACME", "5.00", ""], 1)

        assert parsed.reference_number is None

    def test_short_row(self):
        with pytest.raises(RowParseError) as exc_info:
            parse_transaction_row(["1", "09-01-2024", "ACME", "5.00"], 7)

        assert exc_info.value.row_number == 7

    def test_bad_date(self):
        with pytest.raises(RowParseError) as exc_info:
            parse_transaction_row(["1", "2024/01/09", "ACME", "5.00", "R"], 3)

        assert exc_info.value.field == "date"
        assert exc_info.value.to_dict()["row_number"] == 3

    @pytest.mark.parametrize("amount", ["0", "-10.00", "ten", "NaN", "10.005"])
    def test_bad_amount(self, amount):
        with pytest.raises(RowParseError) as exc_info:
            parse_transaction_row(["1", "09-01-2024", "ACME", amount, "R"], 1)

        assert exc_info.value.field == "amount"

    def test_blank_description_is_kept(self):
        parsed = parse_transaction_row(["1", "09-01-2024", "  ", "5.00", "R"], 1)

        assert parsed.description == ""
        assert parsed.amount == Decimal("5.00")

    def test_sub_cent_amount(self):
        with pytest.raises(RowParseError) as exc_info:
            parse_transaction_row(["1", "09-01-2024", "ACME", "500.004", "R"], 1)

        assert exc_info.value.field == "amount"

    def test_row_errors_are_validation_errors(self):
        with pytest.raises(ValidationError):
            parse_transaction_row([], 1)


class TestParseInvoiceRow:

    def test_valid_row(self):
        parsed = parse_invoice_row(
            ["1", "INV-001", "Acme Corp", "billing@acme.test", "500.00", "overdue", "10-01-2024"], 1
        )

        assert parsed.invoice_number == "INV-001"
        assert parsed.customer_name == "Acme Corp"
        assert parsed.customer_email == "billing@acme.test"
        assert parsed.amount == Decimal("500.00")
        assert parsed.status == InvoiceStatus.OVERDUE
        assert parsed.due_date == date(2024, 1, 10)

    def test_defaults(self):
        parsed = parse_invoice_row(["1", "", "Acme Corp", "", "500.00", "", "2024-01-10"], 1)

        uuid.UUID(parsed.invoice_number)
        assert parsed.customer_email is None
        assert parsed.status == InvoiceStatus.SENT

    def test_unknown_status(self):
        with pytest.raises(RowParseError) as exc_info:
            parse_invoice_row(["1", "INV-1", "Acme", "", "5.00", "cancelled", "10-01-2024"], 4)

        assert exc_info.value.field == "status"

    def test_missing_customer_name(self):
        with pytest.raises(RowParseError):
            parse_invoice_row(["1", "INV-1", "", "", "5.00", "sent", "10-01-2024"], 1)

    def test_short_row(self):
        with pytest.raises(RowParseError):
            parse_invoice_row(["1", "INV-1", "Acme", "", "5.00", "sent"], 1)


class TestReadCsvRows:

    def test_skips_header(self, tmp_path):
        path = tmp_path / "statement.csv"
        path.write_text(
            "ref,date,description,amount,reference\n"
            "1,09-01-2024,ACME CORP PAYMENT,500.00,REF-1\n"
            "2,10-01-2024,GLOBEX,120.00,REF-2\n"
        )

        rows = list(read_csv_rows(str(path)))

        assert rows == [
            ["1", "09-01-2024", "ACME CORP PAYMENT", "500.00", "REF-1"],
            ["2", "10-01-2024", "GLOBEX", "120.00", "REF-2"],
        ]

    def test_sniffs_semicolon_delimiter(self, tmp_path):
        path = tmp_path / "statement.csv"
        path.write_text(
            "ref;date;description;amount;reference\n"
            "1;09-01-2024;ACME CORP PAYMENT;1,500.00;REF-1\n"
        )

        rows = list(read_csv_rows(str(path)))

        assert rows == [["1", "09-01-2024", "ACME CORP PAYMENT", "1,500.00", "REF-1"]]

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.csv"
        path.write_text("")

        assert list(read_csv_rows(str(path))) == []

    def test_remove_after_deletes_file(self, tmp_path):
        path = tmp_path / "statement.csv"
        path.write_text("ref,date,description,amount,reference\n1,09-01-2024,ACME,5.00,R\n")

        rows = read_csv_rows(str(path), remove_after=True)
        assert path.exists()

        assert len(list(rows)) == 1
        assert not path.exists()

    def test_remove_after_on_early_close(self, tmp_path):
        path = tmp_path / "statement.csv"
        path.write_text("ref,date,description,amount,reference\n1,09-01-2024,ACME,5.00,R\n2,09-01-2024,X,1.00,R\n")

        rows = read_csv_rows(str(path), remove_after=True)
        next(rows)
        rows.close()

        assert not path.exists()

    def test_file_kept_by_default(self, tmp_path):
        path = tmp_path / "statement.csv"
        path.write_text("ref,date,description,amount,reference\n")

        list(read_csv_rows(str(path)))

        assert path.exists()
