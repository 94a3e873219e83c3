"""
Batch Progress / Stats Tracker

Cache of in-flight batch progress and per-batch statistics, so polling
clients do not hit the database on every request.

Only the ingestion worker writes progress. Stats are filled lazily from the
repository and dropped whenever the batch's transactions change. The
repository's batch row stays authoritative for completion, so entries of
finished batches are evicted oldest first once the cache is full.
"""

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass, replace
from typing import Optional

from reconciliation.models import BatchStats, BatchStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BatchProgress:
    processed_count: int = 0
    total: int = 0
    status: BatchStatus = BatchStatus.PROCESSING

    def to_dict(self) -> dict:
        return {
            "processed_count": self.processed_count,
            "total": self.total,
            "status": self.status.value,
        }


class _BatchEntry:
    __slots__ = ("lock", "progress", "stats", "generation", "active")

    def __init__(self):
        self.lock = threading.Lock()
        # set while a worker is ingesting the batch; active entries are never evicted
        self.active = False
        self.progress = BatchProgress()
        self.stats: Optional[BatchStats] = None
        # bumped on every invalidation; a stats read started before it is discarded
        self.generation = 0

    def drop_stats(self):
        self.stats = None
        self.generation += 1


class BatchProgressTracker:
    """
    Per-batch progress records and cached stats.

    The map lock is held only to find or create an entry; each entry has
    its own lock, so batches never contend with each other.
    """

    def __init__(self, max_entries: int = 1000):
        self.max_entries = max(1, max_entries)
        self._entries: "OrderedDict[str, _BatchEntry]" = OrderedDict()
        self._map_lock = threading.Lock()

    def __len__(self) -> int:
        with self._map_lock:
            return len(self._entries)

    def _entry(self, batch_id: str) -> _BatchEntry:
        with self._map_lock:
            entry = self._entries.get(batch_id)
            if entry is None:
                entry = self._entries[batch_id] = _BatchEntry()
                self._evict(keep=batch_id)
            else:
                self._entries.move_to_end(batch_id)
            return entry

    def _evict(self, keep: str):
        # caller holds the map lock
        overflow = len(self._entries) - self.max_entries
        if overflow <= 0:
            return
        idle = [batch_id for batch_id, entry in self._entries.items() if not entry.active and batch_id != keep]
        for batch_id in idle[:overflow]:
            del self._entries[batch_id]
        logger.debug(f"Evicted {min(overflow, len(idle))} idle batch entries from the progress cache")

    def start(self, batch_id: str) -> BatchProgress:
        entry = self._entry(batch_id)
        with entry.lock:
            entry.active = True
            entry.progress = BatchProgress()
            entry.drop_stats()
            return entry.progress

    def update_progress(self, batch_id: str, processed_count: int) -> BatchProgress:
        """Raise the processed count. Lower counts are ignored so reads stay monotonic."""
        entry = self._entry(batch_id)
        with entry.lock:
            if processed_count > entry.progress.processed_count:
                entry.progress = replace(entry.progress, processed_count=processed_count)
            entry.drop_stats()
            return entry.progress

    def mark_completed(self, batch_id: str, total: int) -> BatchProgress:
        entry = self._entry(batch_id)
        with entry.lock:
            entry.active = False
            entry.progress = BatchProgress(
                processed_count=max(total, entry.progress.processed_count),
                total=total,
                status=BatchStatus.COMPLETED,
            )
            entry.drop_stats()
            return entry.progress

    def get_progress(self, batch_id: str) -> Optional[BatchProgress]:
        with self._map_lock:
            entry = self._entries.get(batch_id)
        if entry is None:
            return None
        with entry.lock:
            return entry.progress

    async def get_stats(self, batch_id: str, repository) -> BatchStats:
        """Serve cached stats, computing them from the repository on a miss."""
        entry = self._entry(batch_id)
        with entry.lock:
            if entry.stats is not None:
                return entry.stats
            generation = entry.generation

        stats = await repository.get_batch_stats(batch_id)

        with entry.lock:
            if entry.generation == generation:
                entry.stats = stats
        return stats

    def invalidate_stats(self, batch_id: str):
        with self._map_lock:
            entry = self._entries.get(batch_id)
        if entry is not None:
            with entry.lock:
                entry.drop_stats()

    def forget(self, batch_id: str):
        with self._map_lock:
            self._entries.pop(batch_id, None)
