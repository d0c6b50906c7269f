"""Priority/recency eviction over cache-managed records.

Runs as background task to:
- Remove entries past their TTL or explicit expiry
- Evict lowest-priority, least-recently-used entries when over budget

Eviction ordering reads only the cache_metadata collection; the records
themselves are deleted through their own repositories.
"""

import asyncio
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from core.config import EvictionConfig
from core.exceptions import CacheCapacityError, EvictionDeleteError, OfflineCacheError
from core.logging import get_logger, log_cache_operation
from models.cache import CacheMetadataEntry
from .repository import BaseRepository
from .repositories import CacheMetadataRepository

logger = get_logger(__name__)

EVICTION_TARGET_RATIO = 0.8


class EvictionManager:
    """Keeps cache-managed records within size, item-count and TTL budgets."""

    def __init__(self, metadata: CacheMetadataRepository, config: EvictionConfig,
                 repositories: Optional[Dict[str, BaseRepository]] = None,
                 clock: Callable[[], float] = time.time):
        """Initialize eviction manager.

        Args:
            metadata: Repository over the cache_metadata collection
            config: Size, item and TTL budgets
            repositories: Record repositories keyed by collection name
            clock: Time source in Unix seconds (injectable for tests)
        """
        self.metadata = metadata
        self.config = config
        self.repositories: Dict[str, BaseRepository] = dict(repositories or {})
        self._clock = clock
        # Held across every read-modify-write of the metadata collection
        self._lock = asyncio.Lock()
        self._running = False
        self._task: Optional[asyncio.Task] = None

    def register(self, repository: BaseRepository) -> None:
        self.repositories[repository.collection] = repository

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the periodic cleanup task."""
        if self._running:
            logger.warning("Eviction manager already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._cleanup_loop())
        logger.info("Eviction manager started",
                    max_size_bytes=self.config.max_size_bytes,
                    max_items=self.config.max_items,
                    ttl_seconds=self.config.ttl_seconds,
                    cleanup_interval=self.config.cleanup_interval_seconds)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Eviction manager stopped")

    async def _cleanup_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.config.cleanup_interval_seconds)
            try:
                await self.cleanup()
            except Exception as e:
                logger.error("Cache cleanup iteration failed", error=str(e))

    # ------------------------------------------------------------------
    # Budget checks
    # ------------------------------------------------------------------

    def _is_expired(self, entry: CacheMetadataEntry, now: float) -> bool:
        if entry.expires_at is not None and entry.expires_at < now:
            return True
        return now - entry.last_accessed > self.config.ttl_seconds

    @staticmethod
    def _totals(entries: Iterable[CacheMetadataEntry]) -> Tuple[int, int]:
        size = 0
        items = 0
        for entry in entries:
            size += entry.size_bytes
            items += 1
        return size, items

    async def needs_eviction(self, incoming_size: int = 0, incoming_items: int = 0,
                             exclude_key: Optional[str] = None) -> bool:
        """True when current entries plus the incoming ones exceed a budget.

        `exclude_key` leaves out an entry that is about to be replaced.
        """
        entries = [e for e in await self.metadata.get_all() if e.key != exclude_key]
        size, items = self._totals(entries)
        return (size + incoming_size > self.config.max_size_bytes
                or items + incoming_items > self.config.max_items)

    # ------------------------------------------------------------------
    # Cache operations
    # ------------------------------------------------------------------

    async def add_to_cache(self, key: str, collection: str, size_bytes: int,
                           priority: int = 1, expires_at: Optional[float] = None) -> CacheMetadataEntry:
        """Track `key`, evicting others first if it would not fit.

        Raises:
            CacheCapacityError: The entry alone is larger than max_size_bytes
        """
        max_size = self.config.max_size_bytes
        max_items = self.config.max_items
        if size_bytes > max_size:
            raise CacheCapacityError(key, size_bytes, max_size)

        async with self._lock:
            if await self.needs_eviction(size_bytes, 1, exclude_key=key):
                target_size = min(int(max_size * EVICTION_TARGET_RATIO), max_size - size_bytes)
                target_items = min(int(max_items * EVICTION_TARGET_RATIO), max_items - 1)
                await self._evict_lru(target_size, target_items, protect={key})

            entry = CacheMetadataEntry(
                key=key,
                collection=collection,
                size_bytes=size_bytes,
                last_accessed=self._clock(),
                access_count=1,
                priority=priority,
                expires_at=expires_at,
            )
            await self.metadata.update(entry)
        log_cache_operation(logger, "add", key, collection=collection,
                            size_bytes=size_bytes, priority=priority)
        return entry

    async def get(self, key: str) -> Optional[Any]:
        """Return the cached record, or None on a miss.

        A hit refreshes recency and bumps the access count. An expired
        entry is deleted (record and metadata) and reported as a miss.
        """
        async with self._lock:
            entry = await self.metadata.get_by_id(key)
            if entry is None:
                log_cache_operation(logger, "get", key, hit=False)
                return None

            now = self._clock()
            if self._is_expired(entry, now):
                await self._delete_entry(entry)
                log_cache_operation(logger, "get", key, hit=False, expired=True)
                return None

            entry.access_count += 1
            entry.last_accessed = now
            await self.metadata.update(entry)

        repository = self.repositories.get(entry.collection)
        record = await repository.get_by_id(key) if repository else None
        log_cache_operation(logger, "get", key, hit=record is not None)
        return record

    async def evict_lru(self, target_size: Optional[int] = None,
                        target_items: Optional[int] = None, *,
                        protect: Optional[Set[str]] = None) -> int:
        """Evict by ascending (priority, last_accessed) until under both targets.

        Targets default to 80% of the budgets. Protected keys are neither
        evicted nor counted toward the totals. Returns the number evicted.
        """
        async with self._lock:
            return await self._evict_lru(target_size, target_items, protect=protect)

    async def _evict_lru(self, target_size: Optional[int] = None,
                         target_items: Optional[int] = None, *,
                         protect: Optional[Set[str]] = None) -> int:
        if target_size is None:
            target_size = int(self.config.max_size_bytes * EVICTION_TARGET_RATIO)
        if target_items is None:
            target_items = int(self.config.max_items * EVICTION_TARGET_RATIO)
        protect = protect or set()

        candidates = [e for e in await self.metadata.get_all() if e.key not in protect]
        current_size, current_items = self._totals(candidates)
        candidates.sort(key=lambda e: (e.priority, e.last_accessed))

        evicted = 0
        for entry in candidates:
            if current_size <= target_size and current_items <= target_items:
                break
            try:
                await self._delete_entry(entry)
            except OfflineCacheError as e:
                error = EvictionDeleteError(entry.key, str(e))
                logger.warning("Eviction skipped entry", cache_key=entry.key, error=str(error))
                continue

            current_size -= entry.size_bytes
            current_items -= 1
            evicted += 1
            log_cache_operation(logger, "evict", entry.key, collection=entry.collection,
                                priority=entry.priority)

        if evicted:
            logger.info("LRU eviction completed", evicted=evicted,
                        total_size=current_size, total_items=current_items)
        return evicted

    async def remove_expired(self) -> int:
        """Delete every expired entry regardless of size pressure."""
        async with self._lock:
            return await self._remove_expired()

    async def _remove_expired(self) -> int:
        now = self._clock()
        removed = 0
        for entry in await self.metadata.get_all():
            if not self._is_expired(entry, now):
                continue
            try:
                await self._delete_entry(entry)
            except OfflineCacheError as e:
                error = EvictionDeleteError(entry.key, str(e))
                logger.warning("Expired entry removal failed", cache_key=entry.key, error=str(error))
                continue
            removed += 1
            log_cache_operation(logger, "expire", entry.key, collection=entry.collection)

        if removed:
            logger.info("Expired cache entries removed", count=removed)
        return removed

    async def cleanup(self) -> Dict[str, int]:
        """Expire first, then evict only if still over budget."""
        async with self._lock:
            expired = await self._remove_expired()
            evicted = 0
            if await self.needs_eviction():
                evicted = await self._evict_lru()
        return {"expired": expired, "evicted": evicted}

    async def get_cache_stats(self) -> Dict[str, Any]:
        """Point-in-time snapshot over unexpired entries."""
        now = self._clock()
        entries: List[CacheMetadataEntry] = [
            e for e in await self.metadata.get_all() if not self._is_expired(e, now)
        ]
        total_size, total_items = self._totals(entries)
        total_accesses = sum(e.access_count for e in entries)
        accesses = [e.last_accessed for e in entries]

        return {
            "total_size": total_size,
            "total_items": total_items,
            "max_size_bytes": self.config.max_size_bytes,
            "max_items": self.config.max_items,
            "hit_rate": total_items / total_accesses if total_accesses else 0.0,
            "oldest_access": min(accesses) if accesses else None,
            "newest_access": max(accesses) if accesses else None,
        }

    async def remove(self, key: str) -> bool:
        """Stop tracking `key` without touching its record."""
        async with self._lock:
            return await self.metadata.delete(key)

    async def clear(self) -> int:
        async with self._lock:
            return await self.metadata.clear()

    async def _delete_entry(self, entry: CacheMetadataEntry) -> None:
        repository = self.repositories.get(entry.collection)
        if repository is not None:
            await repository.delete(entry.key)
        await self.metadata.delete(entry.key)
