"""
Unit Tests for the Invoice Index

Run with: pytest backend/tests/test_invoice_index.py -v
"""

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from reconciliation.invoice_index import InvoiceIndex, amount_key


class TestAmountKey:

    def test_normalises_scale(self):
        assert amount_key(Decimal("500")) == amount_key(Decimal("500.00"))
        assert amount_key("500.0") == Decimal("500.00")

    def test_does_not_round(self):
        assert amount_key("500.004") != amount_key("500.00")


class TestInvoiceIndex:
    """Test rebuild and lookup."""

    @pytest.mark.asyncio
    async def test_rebuild_groups_by_amount(self, repository, make_invoice):
        first = make_invoice(amount="250.00")
        second = make_invoice(amount="250.00")
        other = make_invoice(amount="99.95")
        for invoice in (first, second, other):
            await repository.create_invoice(invoice)

        index = InvoiceIndex()
        amounts = await index.rebuild(repository)

        assert amounts == 2
        assert index.invoice_count == 3
        assert [i.id for i in index.candidates(Decimal("250"))] == [first.id, second.id]
        assert [i.id for i in index.candidates(Decimal("99.95"))] == [other.id]

    @pytest.mark.asyncio
    async def test_unknown_amount_returns_empty(self, repository):
        index = InvoiceIndex()
        await index.rebuild(repository)

        assert index.candidates(Decimal("1.00")) == []

    @pytest.mark.asyncio
    async def test_sub_cent_amount_is_not_a_candidate(self, repository, make_invoice):
        await repository.create_invoice(make_invoice(amount="500.00"))
        index = InvoiceIndex()
        await index.rebuild(repository)

        assert index.candidates(Decimal("500.004")) == []
        assert index.candidates(Decimal("499.995")) == []
        assert len(index.candidates(Decimal("500.000"))) == 1

    @pytest.mark.asyncio
    async def test_index_is_a_snapshot(self, repository, make_invoice):
        await repository.create_invoice(make_invoice(amount="10.00"))
        index = InvoiceIndex()
        await index.rebuild(repository)

        await repository.create_invoice(make_invoice(amount="10.00"))

        # not live-updated until the next rebuild
        assert len(index.candidates(Decimal("10.00"))) == 1

        await index.rebuild(repository)
        assert len(index.candidates(Decimal("10.00"))) == 2

    @pytest.mark.asyncio
    async def test_old_snapshot_survives_rebuild(self, repository, make_invoice):
        await repository.create_invoice(make_invoice(amount="10.00"))
        index = InvoiceIndex()
        await index.rebuild(repository)
        snapshot = index.snapshot()

        await repository.create_invoice(make_invoice(amount="10.00"))
        await index.rebuild(repository)

        assert len(index.candidates(Decimal("10.00"), snapshot)) == 1
        assert len(index.candidates(Decimal("10.00"))) == 2
        with pytest.raises(TypeError):
            snapshot[Decimal("1.00")] = ()

    @pytest.mark.asyncio
    async def test_failed_rebuild_keeps_previous_snapshot(self, repository, make_invoice):
        await repository.create_invoice(make_invoice(amount="10.00"))
        index = InvoiceIndex()
        await index.rebuild(repository)

        broken = AsyncMock()
        broken.get_all_invoices = AsyncMock(side_effect=RuntimeError("connection lost"))

        with pytest.raises(RuntimeError):
            await index.rebuild(broken)

        assert len(index.candidates(Decimal("10.00"))) == 1
