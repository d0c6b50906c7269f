"""Failed log for mutations that exhausted their retries.

Entries stay here for inspection until they are retried or cleared; they
are never replayed automatically.

Usage:
    failed_log = FailedLog(FailedSyncRepository(database))
    await failed_log.load()
    await failed_log.append(item)
"""

import time
from typing import Callable, List

from core.logging import get_logger
from .models import SyncQueueItem
from .repositories import FailedSyncRepository

logger = get_logger(__name__)


class FailedLog:
    """Persistent failed log backed by its own collection."""

    def __init__(self, repository: FailedSyncRepository, clock: Callable[[], float] = time.time):
        self.repository = repository
        self._clock = clock
        self._count = 0

    @property
    def count(self) -> int:
        """Number of entries as of the last load/append/clear."""
        return self._count

    async def load(self) -> int:
        self._count = await self.repository.count()
        return self._count

    async def append(self, item: SyncQueueItem) -> None:
        """Persist a failed item. Upserts, so a re-failed retry replaces its old entry."""
        await self.repository.update(item.to_record(failed_at=self._clock()))
        self._count = await self.repository.count()
        logger.warning("Sync item moved to failed log",
                       sync_item_id=item.id,
                       entity=item.entity,
                       kind=item.kind.value,
                       retry_count=item.retry_count,
                       error=item.last_error)

    async def items(self) -> List[SyncQueueItem]:
        """Failed items in original enqueue order."""
        records = await self.repository.get_all(order_by="enqueued_at")
        return [SyncQueueItem.from_record(record) for record in records]

    async def clear(self) -> int:
        removed = await self.repository.clear()
        self._count = 0
        return removed
