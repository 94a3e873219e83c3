"""
Reconciliation Workers
"""

from reconciliation.workers.ingestion_worker import BatchIngestionWorker, BatchIngestionResult

__all__ = ["BatchIngestionWorker", "BatchIngestionResult"]
