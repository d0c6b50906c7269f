"""Remote targets that queued mutations are replayed against."""

import asyncio
import random
from typing import Optional, Protocol

from core.exceptions import SyncApplyError
from core.logging import get_logger
from .models import SyncQueueItem

logger = get_logger(__name__)


class RemoteApply(Protocol):
    """Apply one mutation remotely. Returning means success; raising means failure."""

    async def __call__(self, item: SyncQueueItem) -> None:
        ...


class SimulatedRemote:
    """Stand-in remote with configurable latency and failure rate.

    Sleeps `latency + random() * jitter` seconds, then fails with
    probability `failure_rate`.
    """

    def __init__(self, latency: float = 0.1, jitter: float = 0.2,
                 failure_rate: float = 0.0, rng: Optional[random.Random] = None):
        self.latency = latency
        self.jitter = jitter
        self.failure_rate = failure_rate
        self._rng = rng or random.Random()
        self.applied = 0

    async def __call__(self, item: SyncQueueItem) -> None:
        delay = self.latency + self._rng.random() * self.jitter
        if delay > 0:
            await asyncio.sleep(delay)

        if self.failure_rate and self._rng.random() < self.failure_rate:
            raise SyncApplyError(item.id, "simulated remote failure")

        self.applied += 1
        logger.debug("Remote applied mutation", sync_item_id=item.id,
                     entity=item.entity, kind=item.kind.value)
