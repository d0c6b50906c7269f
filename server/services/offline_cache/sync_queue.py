"""Offline mutation queue with batched replay, retries and backoff.

Local writes are enqueued and replayed against a remote target whenever
connectivity allows. Replay runs on detached background tasks so callers
of enqueue() never wait on the network and never see sync failures.

State machine per item:
- success: removed from the live queue
- failure, retry_count <= max_retries: stays queued, gated by exponential
  backoff, released by a timer that starts a fresh pass
- failure, retry_count > max_retries: moved to the failed log
"""

import asyncio
import time
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from core.config import SyncConfig
from core.exceptions import OfflineCacheError, OfflineSyncError
from core.logging import get_logger, log_sync_operation
from .connectivity import ConnectivityObserver
from .failed_log import FailedLog
from .models import SyncKind, SyncQueueItem
from .remote import RemoteApply

logger = get_logger(__name__)

SUPERSEDING_KINDS = (SyncKind.UPDATE, SyncKind.DELETE)


def _empty_result() -> Dict[str, int]:
    return {"success": 0, "failed": 0}


class SyncQueueManager:
    """Replays queued mutations against a remote when online.

    `is_syncing` is the only mutual exclusion: it is set before the first
    await of a pass and cleared in a finally block, so timer-driven and
    event-driven triggers never process the same queue twice.
    """

    def __init__(self, config: SyncConfig, failed_log: FailedLog,
                 remote: RemoteApply, connectivity: ConnectivityObserver,
                 clock: Callable[[], float] = time.time):
        """Initialize sync queue manager.

        Args:
            config: Retry, batch and interval settings
            failed_log: Durable log for items that exhaust retries
            remote: Async callable applying one item remotely
            connectivity: Source of online/offline/visible signals
            clock: Time source in Unix seconds (injectable for tests)
        """
        self.config = config
        self.failed_log = failed_log
        self.remote = remote
        self.connectivity = connectivity
        self._clock = clock

        self.queue: List[SyncQueueItem] = []
        self.is_online = connectivity.is_online()
        self.is_syncing = False

        self._running = False
        self._closed = False
        self._task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        self._timers: Set[asyncio.Task] = set()
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._rerun_requested = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Load the failed log, subscribe to connectivity and start the periodic timer."""
        if self._running:
            logger.warning("Sync queue manager already running")
            return

        await self.failed_log.load()
        self._closed = False
        self.is_online = self.connectivity.is_online()
        self._unsubscribe = self.connectivity.subscribe(
            self.handle_online, self.handle_offline, self.handle_visible
        )
        self._running = True
        self._task = asyncio.create_task(self._sync_loop())
        logger.info("Sync queue manager started",
                    is_online=self.is_online,
                    batch_size=self.config.batch_size,
                    sync_interval=self.config.sync_interval_seconds,
                    failed_items=self.failed_log.count)

    async def stop(self) -> None:
        """Stop future timer firings. In-flight passes run to completion."""
        self._running = False
        self._closed = True

        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        for timer in list(self._timers):
            timer.cancel()
        self._timers.clear()
        logger.info("Sync queue manager stopped", queue_length=len(self.queue))

    async def _sync_loop(self) -> None:
        """Periodic safety-net pass."""
        while self._running:
            await asyncio.sleep(self.config.sync_interval_seconds)
            try:
                await self.sync()
            except Exception as e:
                logger.error("Periodic sync failed", error=str(e))

    async def wait_idle(self) -> None:
        """Wait until no background pass or retry timer is pending."""
        while True:
            pending = [t for t in (*self._background, *self._timers) if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Queue operations
    # ------------------------------------------------------------------

    def enqueue(self, kind: SyncKind, entity: str, payload: Dict[str, Any]) -> SyncQueueItem:
        """Append a mutation and kick off a background pass when online.

        Synchronous: the item is visible in get_sync_status() as soon as
        this returns.
        """
        item = SyncQueueItem.create(kind, entity, payload, now=self._clock())
        self.queue.append(item)
        logger.debug("Sync item enqueued", sync_item_id=item.id, entity=entity,
                     kind=item.kind.value, queue_length=len(self.queue))

        if self.is_online:
            self._trigger_sync()
        return item

    async def sync(self) -> Dict[str, int]:
        """Run one replay pass.

        Returns:
            {"success": n, "failed": m} for this pass; both zero when
            offline, already syncing or the queue is empty.
        """
        if not self.is_online:
            return _empty_result()
        if self.is_syncing:
            return _empty_result()
        if not self.queue:
            return _empty_result()

        self.is_syncing = True
        success = 0
        failed = 0
        try:
            self._apply_conflict_policy()

            now = self._clock()
            ready = sorted(
                (item for item in self.queue if item.next_attempt_at <= now),
                key=lambda item: item.enqueued_at,
            )

            batch_size = self.config.batch_size
            for start in range(0, len(ready), batch_size):
                if not self.is_online:
                    logger.info("Went offline mid-sync, stopping pass",
                                remaining=len(ready) - start)
                    break

                # Items cleared or superseded since the pass began are not sent
                chunk = [item for item in ready[start:start + batch_size] if item in self.queue]
                if not chunk:
                    continue
                results = await asyncio.gather(
                    *(self.remote(item) for item in chunk),
                    return_exceptions=True,
                )

                for item, result in zip(chunk, results):
                    if isinstance(result, BaseException):
                        failed += 1
                        await self._handle_sync_failure(item, result)
                    else:
                        success += 1
                        self._remove(item)
                        log_sync_operation(logger, "applied", item.id, item.entity, item.kind.value)

            if success or failed:
                logger.info("Sync pass completed", success=success, failed=failed,
                            remaining=len(self.queue))
        finally:
            self.is_syncing = False

        if self._rerun_requested:
            self._rerun_requested = False
            if self.queue and not self._closed:
                self._spawn_sync()

        return {"success": success, "failed": failed}

    async def force_sync(self) -> Dict[str, int]:
        """Like sync() but raises OfflineSyncError when offline."""
        if not self.is_online:
            raise OfflineSyncError()
        return await self.sync()

    async def retry_failed_items(self) -> Dict[str, int]:
        """Move every failed-log entry back into the live queue and sync."""
        failed_items = await self.failed_log.items()
        if not failed_items:
            return _empty_result()

        for item in failed_items:
            item.retry_count = 0
            item.last_error = None
            item.next_attempt_at = 0.0
            self.queue.append(item)
        await self.failed_log.clear()
        logger.info("Failed sync items requeued", count=len(failed_items))

        if self.is_syncing:
            self._rerun_requested = True
        return await self.sync()

    async def get_failed_items(self) -> List[SyncQueueItem]:
        return await self.failed_log.items()

    async def clear_failed_items(self) -> int:
        removed = await self.failed_log.clear()
        logger.info("Failed sync log cleared", removed=removed)
        return removed

    async def clear_queue(self) -> None:
        """Drop every pending mutation and the failed log."""
        dropped = len(self.queue)
        self.queue.clear()
        for timer in list(self._timers):
            timer.cancel()
        self._timers.clear()
        await self.failed_log.clear()
        logger.info("Sync queue cleared", dropped=dropped)

    def get_sync_status(self) -> Dict[str, Any]:
        """Synchronous snapshot for UI/telemetry."""
        now = self._clock()
        return {
            "queue_length": len(self.queue),
            "is_online": self.is_online,
            "is_syncing": self.is_syncing,
            "failed_items": self.failed_log.count,
            "pending_retries": sum(1 for item in self.queue if item.next_attempt_at > now),
        }

    # ------------------------------------------------------------------
    # Connectivity handlers
    # ------------------------------------------------------------------

    def handle_online(self) -> None:
        self.is_online = True
        logger.info("Online, triggering sync", queue_length=len(self.queue))
        self._trigger_sync()

    def handle_offline(self) -> None:
        self.is_online = False
        logger.info("Offline, queueing mutations", queue_length=len(self.queue))

    def handle_visible(self) -> None:
        if self.is_online:
            self._trigger_sync()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _handle_sync_failure(self, item: SyncQueueItem, error: BaseException) -> None:
        item.retry_count += 1
        item.last_error = str(error) or type(error).__name__

        if item not in self.queue:
            # Cleared while in flight
            return

        if item.retry_count > self.config.max_retries:
            try:
                await self.failed_log.append(item)
            except OfflineCacheError as e:
                # Stays queued; the next pass escalates it again
                logger.error("Failed to persist failed sync item",
                             sync_item_id=item.id, error=str(e))
                return
            self._remove(item)
            log_sync_operation(logger, "failed", item.id, item.entity, item.kind.value,
                               retry_count=item.retry_count, error=item.last_error)
            return

        delay = self.config.retry_delay_seconds * (2 ** (item.retry_count - 1))
        item.next_attempt_at = self._clock() + delay
        log_sync_operation(logger, "retry_scheduled", item.id, item.entity, item.kind.value,
                           retry_count=item.retry_count, delay=delay, error=item.last_error)
        self._schedule_retry(item.id, delay)

    def _schedule_retry(self, item_id: str, delay: float) -> None:
        if self._closed:
            return
        timer = asyncio.create_task(self._retry_after(item_id, delay))
        self._timers.add(timer)
        timer.add_done_callback(self._timers.discard)

    async def _retry_after(self, item_id: str, delay: float) -> None:
        """Release a backed-off item and run a full pass for everything queued."""
        await asyncio.sleep(delay)
        for item in self.queue:
            if item.id == item_id:
                item.next_attempt_at = 0.0
                break

        if self.is_syncing:
            self._rerun_requested = True
            return
        try:
            await self.sync()
        except Exception as e:
            logger.error("Retry sync failed", sync_item_id=item_id, error=str(e))

    def _trigger_sync(self) -> None:
        if self._closed:
            return
        if self.is_syncing or any(not t.done() for t in self._background):
            self._rerun_requested = True
            return
        self._spawn_sync()

    def _spawn_sync(self) -> None:
        task = asyncio.create_task(self.sync())
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background sync failed", error=str(task.exception()))

    def _remove(self, item: SyncQueueItem) -> None:
        if item in self.queue:
            self.queue.remove(item)

    def _apply_conflict_policy(self) -> None:
        """Drop updates superseded by a newer update/delete of the same record."""
        if self.config.conflict_resolution != "last-write-wins":
            return

        ordered = sorted(enumerate(self.queue), key=lambda pair: (pair[1].enqueued_at, pair[0]))
        seen: Set[Tuple[str, str]] = set()
        superseded: List[SyncQueueItem] = []

        for _, item in reversed(ordered):
            if item.record_id is None:
                continue
            key = (item.entity, item.record_id)
            if item.kind == SyncKind.UPDATE and key in seen:
                superseded.append(item)
            if item.kind in SUPERSEDING_KINDS:
                seen.add(key)

        for item in superseded:
            self._remove(item)
            log_sync_operation(logger, "superseded", item.id, item.entity, item.kind.value)
