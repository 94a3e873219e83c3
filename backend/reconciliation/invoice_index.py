"""
Invoice Index

In-memory lookup of invoices by exact amount, so ingestion does not query
the invoice store once per bank transaction.

The index is a snapshot of the store as of the last rebuild(). A rebuild
builds a fresh mapping and publishes it with a single reference swap;
readers holding an older snapshot keep a consistent view.
"""

import asyncio
import logging
from decimal import Decimal
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple

from reconciliation.models import Invoice

logger = logging.getLogger(__name__)

InvoiceSnapshot = Mapping[Decimal, Tuple[Invoice, ...]]


def amount_key(amount) -> Decimal:
    """
    Normalise an amount to the index key.

    Keys are exact; Decimal equality already treats 500, 500.0 and 500.00
    as one key, and nothing is rounded so 500.004 never lands on 500.00.
    """
    return Decimal(str(amount))


class InvoiceIndex:
    """Amount -> invoices mapping owned by the reconciliation service."""

    def __init__(self):
        self._by_amount: InvoiceSnapshot = MappingProxyType({})
        self._rebuild_lock = asyncio.Lock()
        self._invoice_count = 0

    async def rebuild(self, repository) -> int:
        """
        Reload every invoice from the repository and publish a new snapshot.

        Returns the number of distinct amounts indexed.
        """
        async with self._rebuild_lock:
            invoices = await repository.get_all_invoices()

            grouped: Dict[Decimal, List[Invoice]] = {}
            for invoice in invoices:
                grouped.setdefault(amount_key(invoice.amount), []).append(invoice)

            self._by_amount = MappingProxyType({k: tuple(v) for k, v in grouped.items()})
            self._invoice_count = len(invoices)

        logger.info(
            f"Invoice index rebuilt: {len(grouped)} amounts, {len(invoices)} invoices"
        )
        return len(grouped)

    def snapshot(self) -> InvoiceSnapshot:
        """The currently published mapping. Never mutated after publication."""
        return self._by_amount

    def candidates(self, amount, snapshot: Optional[InvoiceSnapshot] = None) -> List[Invoice]:
        """Invoices carrying exactly this amount, in load order."""
        source = self._by_amount if snapshot is None else snapshot
        return list(source.get(amount_key(amount), ()))

    @property
    def amount_count(self) -> int:
        return len(self._by_amount)

    @property
    def invoice_count(self) -> int:
        return self._invoice_count
