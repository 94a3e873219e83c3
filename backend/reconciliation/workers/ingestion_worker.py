"""
Batch Ingestion Worker

Turns an uploaded statement's row stream into persisted, matched bank
transactions without blocking the upload request.

Features:
- One supervised asyncio task per batch (handle kept while running, for awaiting/shutdown)
- Row error isolation (bad rows and rows whose transaction cannot be stored are
  skipped; a stored transaction always counts, even if its match is not saved)
- Progress published every N accepted rows to the tracker and the batch row
- Batch always finishes as completed once its row stream ends
"""

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, Callable, Dict, Iterable, Optional, Tuple, Union

from logging_config import set_batch_context
from sentry_integration import capture_exception

from reconciliation.errors import RowParseError, ValidationError
from reconciliation.events import ReconciliationAuditEvent, log_reconciliation_event
from reconciliation.invoice_index import InvoiceIndex, InvoiceSnapshot
from reconciliation.matching_rules import MatchResult
from reconciliation.models import BankTransaction, MatchAuditEntry, TransactionStatus, generate_uuid, utc_now
from reconciliation.progress_tracker import BatchProgressTracker
from reconciliation.repository.base import ReconciliationRepository
from reconciliation.row_parser import parse_transaction_row

logger = logging.getLogger(__name__)

RowSource = Union[Iterable, AsyncIterable]
Matcher = Callable[[BankTransaction, InvoiceSnapshot], Tuple[MatchResult, MatchAuditEntry]]


@dataclass
class BatchIngestionResult:
    """Accounting of one finished batch."""
    batch_id: str
    processed_count: int = 0
    skipped_count: int = 0
    outcome_counts: Dict[TransactionStatus, int] = field(default_factory=dict)
    completed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "processed_count": self.processed_count,
            "skipped_count": self.skipped_count,
            "outcome_counts": {k.value: v for k, v in self.outcome_counts.items()},
            "completed": self.completed,
        }


async def _iterate_rows(rows: RowSource):
    if hasattr(rows, "__aiter__"):
        async for row in rows:
            yield row
    else:
        for row in rows:
            yield row


class BatchIngestionWorker:
    """
    Background ingestion of bank statement batches.

    For each row: parse, persist a pending transaction, run the automatic
    match against the invoice index snapshot taken at batch start, save the
    matched transaction and its audit entry, and count the outcome.
    Progress fields of a batch are only written here.

    Finished tasks are released; a completed batch is also dropped from the
    progress tracker since its batch row is authoritative from then on.
    """

    def __init__(
        self,
        repository: ReconciliationRepository,
        index: InvoiceIndex,
        tracker: BatchProgressTracker,
        matcher: Matcher,
        progress_interval: int = 100
    ):
        """
        Initialize the worker.

        Args:
            repository: Persistence collaborator
            index: Invoice index; its snapshot is captured once per batch
            tracker: Progress/stats cache shared with the API
            matcher: Applies one automatic match in memory, returning the result and audit entry
            progress_interval: Accepted rows between progress publications
        """
        self.repository = repository
        self.index = index
        self.tracker = tracker
        self.matcher = matcher
        self.progress_interval = max(1, progress_interval)
        self._tasks: Dict[str, asyncio.Task] = {}

    def start_batch(self, batch_id: str, rows: RowSource) -> asyncio.Task:
        """Launch ingestion of a batch and return its task handle immediately."""
        running = self._tasks.get(batch_id)
        if running is not None and not running.done():
            raise ValidationError(f"Batch {batch_id} is already being ingested", field="batch_id", value=batch_id)

        self.tracker.start(batch_id)
        task = asyncio.create_task(self._run(batch_id, rows), name=f"ingest-{batch_id}")
        self._tasks[batch_id] = task
        task.add_done_callback(lambda t, b=batch_id: self._on_task_done(b, t))
        return task

    def _on_task_done(self, batch_id: str, task: asyncio.Task):
        if self._tasks.get(batch_id) is task:
            del self._tasks[batch_id]

        if task.cancelled():
            return
        if task.exception() is not None:
            logger.error(f"Ingestion task for batch {batch_id} crashed: {task.exception()}")
            return

        # a failed completion write keeps the tracker as the only record of the final count
        if task.result().completed:
            self.tracker.forget(batch_id)

    @property
    def active_batches(self):
        return [batch_id for batch_id, task in self._tasks.items() if not task.done()]

    async def wait_for(self, batch_id: str) -> Optional[BatchIngestionResult]:
        """Await a running batch task and return its result. Returns None when none is running."""
        task = self._tasks.get(batch_id)
        if task is None:
            return None
        return await task

    async def wait_all(self):
        """Await every running batch (used on shutdown)."""
        tasks = [task for task in self._tasks.values() if not task.done()]
        if tasks:
            logger.info(f"Waiting for {len(tasks)} ingestion task(s) to finish")
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _run(self, batch_id: str, rows: RowSource) -> BatchIngestionResult:
        set_batch_context(batch_id)
        result = BatchIngestionResult(batch_id=batch_id)
        outcomes: Counter = Counter()

        snapshot = self.index.snapshot()
        logger.info(f"Starting ingestion of batch {batch_id} ({len(snapshot)} invoice amounts indexed)")

        try:
            row_number = 0
            async for row in _iterate_rows(rows):
                row_number += 1
                status = await self._process_row(batch_id, row, row_number, snapshot)

                if status is None:
                    result.skipped_count += 1
                    continue

                result.processed_count += 1
                outcomes[status] += 1

                if result.processed_count % self.progress_interval == 0:
                    await self._publish_progress(batch_id, result.processed_count)

        except Exception as e:
            # the stream itself failed; what was ingested so far still counts
            logger.error(f"Row stream of batch {batch_id} failed after {result.processed_count} rows: {e}")
            capture_exception(e, batch_id=batch_id, processed_count=result.processed_count)

        result.outcome_counts = dict(outcomes)

        try:
            await self.repository.mark_batch_completed(
                batch_id,
                result.processed_count,
                result.outcome_counts,
                utc_now(),
            )
            self.tracker.mark_completed(batch_id, result.processed_count)
            result.completed = True

            log_reconciliation_event(
                ReconciliationAuditEvent.BATCH_COMPLETED,
                result.to_dict()
            )
        except Exception as e:
            logger.error(f"Failed to mark batch {batch_id} completed: {e}")
            capture_exception(e, batch_id=batch_id, processed_count=result.processed_count)
            self.tracker.update_progress(batch_id, result.processed_count)
        finally:
            set_batch_context(None)

        return result

    async def _process_row(
        self,
        batch_id: str,
        row,
        row_number: int,
        snapshot: InvoiceSnapshot
    ) -> Optional[TransactionStatus]:
        """Ingest one row. Returns its final status, or None if the row was skipped."""
        try:
            parsed = parse_transaction_row(row, row_number)
        except RowParseError as e:
            logger.warning(f"Skipping row: {e.message}")
            log_reconciliation_event(
                ReconciliationAuditEvent.ROW_SKIPPED,
                {"batch_id": batch_id, **e.to_dict()},
                level=logging.DEBUG
            )
            return None

        tx = BankTransaction(
            id=generate_uuid(),
            batch_id=batch_id,
            transaction_date=parsed.transaction_date,
            description=parsed.description,
            amount=parsed.amount,
            reference_number=parsed.reference_number,
        )

        try:
            await self.repository.create_transaction(tx)
        except Exception as e:
            logger.warning(f"Skipping row {row_number}: failed to persist transaction {tx.id}: {e}")
            return None

        # the transaction is stored from here on, so the row counts as processed
        try:
            result, entry = self.matcher(tx, snapshot)
            await self.repository.save_transaction(tx)
        except Exception as e:
            logger.error(f"Row {row_number}: transaction {tx.id} left pending, match not saved: {e}")
            capture_exception(e, batch_id=batch_id, transaction_id=tx.id)
            return TransactionStatus.PENDING

        try:
            await self.repository.create_audit_entry(entry)
        except Exception as e:
            logger.error(f"Row {row_number}: audit entry for transaction {tx.id} not written: {e}")
            capture_exception(e, batch_id=batch_id, transaction_id=tx.id)

        if result.matched:
            log_reconciliation_event(
                ReconciliationAuditEvent.TRANSACTION_MATCHED,
                {
                    "transaction_id": tx.id,
                    "batch_id": batch_id,
                    "invoice_id": result.invoice_id,
                    "status": result.status.value,
                    "confidence_score": round(result.confidence_score, 2),
                },
                level=logging.DEBUG
            )
        return tx.status

    async def _publish_progress(self, batch_id: str, processed_count: int):
        self.tracker.update_progress(batch_id, processed_count)
        try:
            await self.repository.update_batch_progress(batch_id, processed_count)
        except Exception as e:
            logger.warning(f"Failed to persist progress of batch {batch_id}: {e}")
