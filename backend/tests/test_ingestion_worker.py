"""
Unit Tests for the Batch Ingestion Worker

Tests the background pipeline:
- Bad rows are skipped without aborting the batch
- Row persistence failures are isolated; stored rows always count
- Progress publication cadence
- Completion accounting
- One task per batch, released when it finishes

Run with: pytest backend/tests/test_ingestion_worker.py -v
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from reconciliation.errors import ValidationError
from reconciliation.models import BatchStatus, ReconciliationBatch, TransactionStatus


async def create_batch(repository, batch_id="11111111-1111-1111-1111-111111111111"):
    batch = ReconciliationBatch(id=batch_id, filename="statement.csv")
    await repository.create_batch(batch)
    return batch


class TestBatchIngestion:
    """Test row processing and completion."""

    @pytest.mark.asyncio
    async def test_bad_rows_are_skipped(self, service, repository, make_invoice, make_row):
        await repository.create_invoice(make_invoice())
        await service.rebuild_invoice_index()
        batch = await create_batch(repository)

        rows = [
            make_row(),
            make_row(date_text="2024/01/09"),
            make_row(description="GLOBEX", amount="42.00"),
            make_row(date_text="not a date"),
            make_row(description="INITECH", amount="13.37"),
        ]

        result = await service.worker.start_batch(batch.id, rows)

        assert result.processed_count == 3
        assert result.skipped_count == 2
        assert result.completed is True

        stored = await repository.get_batch(batch.id)
        assert stored.status == BatchStatus.COMPLETED
        assert stored.processed_count == 3
        assert stored.total_transactions == 3
        assert stored.completed_at is not None

        progress = await service.get_batch_progress(batch.id)
        assert (progress.processed_count, progress.total) == (3, 3)

    @pytest.mark.asyncio
    async def test_outcome_counts(self, service, repository, make_invoice, make_row):
        await repository.create_invoice(make_invoice())
        await service.rebuild_invoice_index()
        batch = await create_batch(repository)

        result = await service.worker.start_batch(
            batch.id,
            [make_row(), make_row(description="UNKNOWN PAYER", amount="77.00")]
        )

        assert result.outcome_counts == {
            TransactionStatus.AUTO_MATCHED: 1,
            TransactionStatus.UNMATCHED: 1,
        }
        stored = await repository.get_batch(batch.id)
        assert stored.auto_matched_count == 1
        assert stored.unmatched_count == 1
        assert stored.needs_review_count == 0

    @pytest.mark.asyncio
    async def test_row_persistence_failure_is_isolated(self, service, repository, make_row):
        batch = await create_batch(repository)
        original = repository.create_transaction
        calls = {"n": 0}

        async def flaky_create(tx):
            calls["n"] += 1
            if calls["n"] == 2:
                raise ConnectionError("database unavailable")
            return await original(tx)

        repository.create_transaction = AsyncMock(side_effect=flaky_create)

        rows = [make_row(amount=f"{n}.00") for n in (1, 2, 3)]
        result = await service.worker.start_batch(batch.id, rows)

        assert result.processed_count == 2
        assert result.skipped_count == 1
        stored = await repository.get_batch(batch.id)
        assert stored.status == BatchStatus.COMPLETED

        stats = await service.get_batch_stats(batch.id)
        assert stats.total == stored.total_transactions == 2

    @pytest.mark.asyncio
    async def test_audit_write_failure_still_counts_row(self, service, repository, make_row):
        batch = await create_batch(repository)
        original = repository.create_audit_entry
        calls = {"n": 0}

        async def flaky_audit(entry):
            calls["n"] += 1
            if calls["n"] == 2:
                raise ConnectionError("database unavailable")
            return await original(entry)

        repository.create_audit_entry = AsyncMock(side_effect=flaky_audit)

        rows = [make_row(amount=f"{n}.00") for n in (1, 2, 3)]
        with patch("reconciliation.workers.ingestion_worker.capture_exception") as capture:
            result = await service.worker.start_batch(batch.id, rows)

        assert result.processed_count == 3
        assert result.skipped_count == 0
        capture.assert_called_once()

        stored = await repository.get_batch(batch.id)
        stats = await service.get_batch_stats(batch.id)
        assert stats.total == stored.total_transactions == 3
        assert stats.unmatched.count == 3

    @pytest.mark.asyncio
    async def test_match_save_failure_leaves_row_pending(self, service, repository, make_row):
        batch = await create_batch(repository)
        original = repository.save_transaction
        calls = {"n": 0}

        async def flaky_save(tx):
            calls["n"] += 1
            if calls["n"] == 2:
                raise ConnectionError("database unavailable")
            return await original(tx)

        repository.save_transaction = AsyncMock(side_effect=flaky_save)

        rows = [make_row(amount=f"{n}.00") for n in (1, 2, 3)]
        with patch("reconciliation.workers.ingestion_worker.capture_exception") as capture:
            result = await service.worker.start_batch(batch.id, rows)

        assert result.processed_count == 3
        assert result.outcome_counts == {
            TransactionStatus.UNMATCHED: 2,
            TransactionStatus.PENDING: 1,
        }
        capture.assert_called_once()

        stored = await repository.get_batch(batch.id)
        stats = await service.get_batch_stats(batch.id)
        assert stats.total == stored.total_transactions == 3

        pending = await service.list_transactions(batch.id, status="pending")
        assert [item["amount"] for item in pending["items"]] == ["2.00"]

    @pytest.mark.asyncio
    async def test_blank_description_is_ingested(self, service, repository, make_row):
        batch = await create_batch(repository)

        result = await service.worker.start_batch(batch.id, [make_row(description="   ", amount="42.00")])

        assert result.processed_count == 1
        assert result.outcome_counts == {TransactionStatus.UNMATCHED: 1}
        page = await service.list_transactions(batch.id)
        assert page["items"][0]["description"] == ""

    @pytest.mark.asyncio
    async def test_progress_published_every_interval(self, service, repository, make_row):
        batch = await create_batch(repository)
        repository.update_batch_progress = AsyncMock(wraps=repository.update_batch_progress)

        await service.worker.start_batch(batch.id, [make_row() for _ in range(5)])

        published = [call.args[1] for call in repository.update_batch_progress.await_args_list]
        assert published == [2, 4]

    @pytest.mark.asyncio
    async def test_progress_failure_does_not_abort(self, service, repository, make_row):
        batch = await create_batch(repository)
        repository.update_batch_progress = AsyncMock(side_effect=ConnectionError("timeout"))

        result = await service.worker.start_batch(batch.id, [make_row() for _ in range(4)])

        assert result.processed_count == 4
        assert result.completed is True

    @pytest.mark.asyncio
    async def test_async_row_source(self, service, repository, make_row):
        batch = await create_batch(repository)

        async def rows():
            for _ in range(3):
                await asyncio.sleep(0)
                yield make_row()

        result = await service.worker.start_batch(batch.id, rows())

        assert result.processed_count == 3

    @pytest.mark.asyncio
    async def test_stream_failure_still_completes(self, service, repository, make_row):
        batch = await create_batch(repository)

        def rows():
            yield make_row()
            yield make_row()
            raise OSError("file truncated")

        with patch("reconciliation.workers.ingestion_worker.capture_exception") as capture:
            result = await service.worker.start_batch(batch.id, rows())

        assert result.processed_count == 2
        assert result.completed is True
        capture.assert_called_once()
        stored = await repository.get_batch(batch.id)
        assert stored.status == BatchStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_completion_write_failure(self, service, repository, make_row):
        batch = await create_batch(repository)
        repository.mark_batch_completed = AsyncMock(side_effect=ConnectionError("database unavailable"))

        with patch("reconciliation.workers.ingestion_worker.capture_exception") as capture:
            result = await service.worker.start_batch(batch.id, [make_row()])

        assert result.completed is False
        capture.assert_called_once()
        stored = await repository.get_batch(batch.id)
        assert stored.status == BatchStatus.PROCESSING

        progress = await service.get_batch_progress(batch.id)
        assert progress.status == BatchStatus.PROCESSING
        assert progress.processed_count == 1

    @pytest.mark.asyncio
    async def test_empty_stream(self, service, repository):
        batch = await create_batch(repository)

        result = await service.worker.start_batch(batch.id, [])

        assert result.processed_count == 0
        stored = await repository.get_batch(batch.id)
        assert stored.status == BatchStatus.COMPLETED


class TestTaskSupervision:

    @pytest.mark.asyncio
    async def test_one_task_per_batch(self, service, repository, make_row):
        batch = await create_batch(repository)
        release = asyncio.Event()

        async def rows():
            await release.wait()
            yield make_row()

        task = service.worker.start_batch(batch.id, rows())
        assert batch.id in service.worker.active_batches

        with pytest.raises(ValidationError):
            service.worker.start_batch(batch.id, [])

        release.set()
        result = await service.worker.wait_for(batch.id)

        assert task.done()
        assert result.processed_count == 1
        assert service.worker.active_batches == []

    @pytest.mark.asyncio
    async def test_wait_for_unknown_batch(self, service):
        assert await service.worker.wait_for("unknown") is None

    @pytest.mark.asyncio
    async def test_progress_visible_while_processing(self, service, repository, make_row):
        batch = await create_batch(repository)
        halfway = asyncio.Event()
        release = asyncio.Event()

        async def rows():
            for n in range(4):
                if n == 2:
                    halfway.set()
                    await release.wait()
                yield make_row()

        service.worker.start_batch(batch.id, rows())
        await halfway.wait()

        progress = await service.get_batch_progress(batch.id)
        assert progress.status == BatchStatus.PROCESSING
        assert progress.processed_count == 2
        assert progress.total == 0

        release.set()
        await service.worker.wait_for(batch.id)

        progress = await service.get_batch_progress(batch.id)
        assert progress.status == BatchStatus.COMPLETED
        assert progress.processed_count == 4

    @pytest.mark.asyncio
    async def test_finished_batch_is_released(self, service, repository, make_row):
        batch = await create_batch(repository)

        await service.worker.start_batch(batch.id, [make_row()])

        assert service.worker.active_batches == []
        assert await service.worker.wait_for(batch.id) is None
        assert service.tracker.get_progress(batch.id) is None

        progress = await service.get_batch_progress(batch.id)
        assert progress.status == BatchStatus.COMPLETED
        assert progress.processed_count == 1

    @pytest.mark.asyncio
    async def test_tracker_kept_when_completion_not_written(self, service, repository, make_row):
        batch = await create_batch(repository)
        repository.mark_batch_completed = AsyncMock(side_effect=ConnectionError("database unavailable"))

        with patch("reconciliation.workers.ingestion_worker.capture_exception"):
            await service.worker.start_batch(batch.id, [make_row()])

        assert service.worker.active_batches == []
        assert service.tracker.get_progress(batch.id).processed_count == 1
