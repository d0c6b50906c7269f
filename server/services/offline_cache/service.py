"""Offline cache service: one lifecycle over the repositories, eviction and sync.

Every entity mutation is applied to the local store first, so local reads
see it immediately, and only then queued for the remote. A later sync
failure never rolls back the local write.
"""

import time
import uuid
from typing import Any, Callable, Dict, List, Optional, Union

import orjson
from sqlmodel import SQLModel

from core.config import Settings
from core.database import Database
from core.exceptions import NotInitializedError, OfflineCacheError
from core.logging import get_logger
from models.database import User, Job, AnalysisResult, CachedModel, PerformanceMetric
from .connectivity import ConnectivityObserver, ManualConnectivity
from .eviction import EvictionManager
from .failed_log import FailedLog
from .models import SyncKind, SyncQueueItem
from .remote import RemoteApply, SimulatedRemote
from .repository import BaseRepository
from .repositories import (
    UserRepository,
    JobRepository,
    AnalysisRepository,
    ModelRepository,
    MetricsRepository,
    CacheMetadataRepository,
    FailedSyncRepository,
)
from .sync_queue import SyncQueueManager

logger = get_logger(__name__)

# Eviction priorities: lower is evicted first
USER_PRIORITY = 3
MODEL_PRIORITY = 2
JOB_PRIORITY = 1
ANALYSIS_PRIORITY = 1


class CacheService:
    """Single entry point for cached entities, eviction and offline sync.

    Construct one per store; nothing here is module-global, so several
    independent caches can live in one process.
    """

    def __init__(self, settings: Settings, database: Optional[Database] = None,
                 remote: Optional[RemoteApply] = None,
                 connectivity: Optional[ConnectivityObserver] = None,
                 clock: Callable[[], float] = time.time):
        self.settings = settings
        self.database = database or Database(settings)
        self.connectivity = connectivity or ManualConnectivity()
        self._clock = clock
        self._initialized = False

        self.users = UserRepository(self.database, clock=clock)
        self.jobs = JobRepository(self.database, clock=clock)
        self.analyses = AnalysisRepository(self.database, clock=clock)
        self.models = ModelRepository(self.database, clock=clock)
        self.metrics = MetricsRepository(self.database, clock=clock)

        self.eviction: Optional[EvictionManager] = None
        if settings.enable_lru:
            self.eviction = EvictionManager(
                CacheMetadataRepository(self.database, clock=clock),
                settings.eviction,
                {repo.collection: repo for repo in (self.users, self.jobs, self.analyses, self.models)},
                clock=clock,
            )

        self.sync_queue: Optional[SyncQueueManager] = None
        if settings.enable_sync:
            self.sync_queue = SyncQueueManager(
                settings.sync,
                FailedLog(FailedSyncRepository(self.database, clock=clock), clock=clock),
                remote or SimulatedRemote(
                    latency=settings.remote_latency_seconds,
                    jitter=settings.remote_jitter_seconds,
                    failure_rate=settings.remote_failure_rate,
                ),
                self.connectivity,
                clock=clock,
            )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Open the store and start the background managers."""
        if self._initialized:
            return

        await self.database.startup()
        if self.eviction:
            await self.eviction.start()
        if self.sync_queue:
            await self.sync_queue.start()

        self._initialized = True
        logger.info("Cache service initialized",
                    enable_lru=self.eviction is not None,
                    enable_sync=self.sync_queue is not None)

    async def destroy(self) -> None:
        """Stop timers and release the store. Safe without initialize() and when repeated."""
        if self.sync_queue:
            await self.sync_queue.stop()
        if self.eviction:
            await self.eviction.stop()
        await self.database.shutdown()

        if self._initialized:
            logger.info("Cache service destroyed")
        self._initialized = False

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise NotInitializedError()

    # ------------------------------------------------------------------
    # Shared plumbing
    # ------------------------------------------------------------------

    @staticmethod
    def _size_of(record: SQLModel) -> int:
        if isinstance(record, CachedModel):
            return record.size or len(record.blob)
        return len(orjson.dumps(record.model_dump()))

    async def _track(self, record: SQLModel, repository: BaseRepository, priority: int) -> None:
        if not self.eviction:
            return
        key = repository.key_of(record)
        try:
            await self.eviction.add_to_cache(key, repository.collection,
                                             self._size_of(record), priority)
        except OfflineCacheError as e:
            # The record stays local and queued, just not cache-managed
            logger.warning("Cache tracking failed", cache_key=key, error=str(e))

    async def _untrack(self, key: str) -> None:
        if self.eviction:
            await self.eviction.remove(key)

    def _queue(self, kind: SyncKind, entity: str,
               record: Union[SQLModel, Dict[str, Any]]) -> None:
        if not self.sync_queue:
            return
        payload = record.model_dump() if isinstance(record, SQLModel) else dict(record)
        self.sync_queue.enqueue(kind, entity, payload)

    async def _read(self, repository: BaseRepository, key: str):
        """Read through the eviction manager (refreshing recency), then the store."""
        if self.eviction:
            record = await self.eviction.get(key)
            if isinstance(record, repository.model):
                return record
        return await repository.get_by_id(key)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def create_user(self, user: User) -> User:
        self._ensure_initialized()
        await self.users.create(user)
        self._queue(SyncKind.CREATE, "user", user)
        await self._track(user, self.users, USER_PRIORITY)
        return user

    async def get_user(self, user_id: str) -> Optional[User]:
        self._ensure_initialized()
        return await self._read(self.users, user_id)

    async def get_user_by_email(self, email: str) -> Optional[User]:
        self._ensure_initialized()
        return await self.users.find_by_email(email)

    async def get_all_users(self) -> List[User]:
        self._ensure_initialized()
        return await self.users.get_all()

    async def update_user(self, user: User) -> User:
        self._ensure_initialized()
        user.updated_at = self._clock()
        await self.users.update(user)
        self._queue(SyncKind.UPDATE, "user", user)
        await self._track(user, self.users, USER_PRIORITY)
        return user

    async def delete_user(self, user_id: str) -> bool:
        self._ensure_initialized()
        deleted = await self.users.delete(user_id)
        if deleted:
            self._queue(SyncKind.DELETE, "user", {"id": user_id})
        await self._untrack(user_id)
        return deleted

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def create_job(self, job: Job) -> Job:
        self._ensure_initialized()
        await self.jobs.create(job)
        self._queue(SyncKind.CREATE, "job", job)
        await self._track(job, self.jobs, JOB_PRIORITY)
        return job

    async def get_job(self, job_id: str) -> Optional[Job]:
        self._ensure_initialized()
        return await self._read(self.jobs, job_id)

    async def get_recent_jobs(self, limit: int = 10) -> List[Job]:
        self._ensure_initialized()
        return await self.jobs.get_recently_analyzed(limit)

    async def search_jobs(self, keywords: List[str]) -> List[Job]:
        self._ensure_initialized()
        return await self.jobs.search_by_keywords(keywords)

    async def update_job(self, job: Job) -> Job:
        self._ensure_initialized()
        await self.jobs.update(job)
        self._queue(SyncKind.UPDATE, "job", job)
        await self._track(job, self.jobs, JOB_PRIORITY)
        return job

    async def delete_job(self, job_id: str) -> bool:
        self._ensure_initialized()
        deleted = await self.jobs.delete(job_id)
        if deleted:
            self._queue(SyncKind.DELETE, "job", {"id": job_id})
        await self._untrack(job_id)
        return deleted

    # ------------------------------------------------------------------
    # Analysis results
    # ------------------------------------------------------------------

    async def create_analysis(self, analysis: AnalysisResult) -> AnalysisResult:
        self._ensure_initialized()
        await self.analyses.create(analysis)
        self._queue(SyncKind.CREATE, "analysis", analysis)
        await self._track(analysis, self.analyses, ANALYSIS_PRIORITY)
        return analysis

    async def get_analysis(self, analysis_id: str) -> Optional[AnalysisResult]:
        self._ensure_initialized()
        return await self._read(self.analyses, analysis_id)

    async def get_user_analyses(self, user_id: str) -> List[AnalysisResult]:
        self._ensure_initialized()
        return await self.analyses.get_by_user(user_id)

    async def get_job_analyses(self, job_id: str) -> List[AnalysisResult]:
        self._ensure_initialized()
        return await self.analyses.get_by_job(job_id)

    async def get_recent_analyses(self, limit: int = 10) -> List[AnalysisResult]:
        self._ensure_initialized()
        return await self.analyses.get_recent(limit)

    async def get_analyses_by_score_range(self, min_score: float, max_score: float) -> List[AnalysisResult]:
        self._ensure_initialized()
        return await self.analyses.get_by_score_range(min_score, max_score)

    async def update_analysis(self, analysis: AnalysisResult) -> AnalysisResult:
        self._ensure_initialized()
        await self.analyses.update(analysis)
        self._queue(SyncKind.UPDATE, "analysis", analysis)
        await self._track(analysis, self.analyses, ANALYSIS_PRIORITY)
        return analysis

    async def delete_analysis(self, analysis_id: str) -> bool:
        self._ensure_initialized()
        deleted = await self.analyses.delete(analysis_id)
        if deleted:
            self._queue(SyncKind.DELETE, "analysis", {"id": analysis_id})
        await self._untrack(analysis_id)
        return deleted

    # ------------------------------------------------------------------
    # Cached models (cache-managed, never synced)
    # ------------------------------------------------------------------

    async def store_model(self, model: CachedModel) -> CachedModel:
        self._ensure_initialized()
        if not model.size:
            model.size = len(model.blob)
        model.last_accessed = self._clock()
        await self.models.update(model)
        await self._track(model, self.models, MODEL_PRIORITY)
        return model

    async def get_model(self, model_id: str) -> Optional[CachedModel]:
        self._ensure_initialized()
        model = await self._read(self.models, model_id)
        if model is None:
            return None
        return await self.models.update_access(model_id)

    async def get_model_by_version(self, version: str) -> Optional[CachedModel]:
        self._ensure_initialized()
        return await self.models.get_by_version(version)

    async def delete_model(self, model_id: str) -> bool:
        self._ensure_initialized()
        deleted = await self.models.delete(model_id)
        await self._untrack(model_id)
        return deleted

    async def get_model_stats(self) -> Dict[str, Any]:
        self._ensure_initialized()
        return await self.models.get_statistics()

    # ------------------------------------------------------------------
    # Performance metrics (local only)
    # ------------------------------------------------------------------

    async def record_performance_metrics(self, operation: str, metrics: Dict[str, Any]) -> PerformanceMetric:
        self._ensure_initialized()
        now = self._clock()
        sample = PerformanceMetric(
            id=f"metric_{int(now * 1000)}_{uuid.uuid4().hex[:9]}",
            operation=operation,
            timestamp=now,
            metrics=dict(metrics),
        )
        return await self.metrics.create(sample)

    async def get_performance_metrics(self, operation: Optional[str] = None,
                                      limit: int = 100) -> List[PerformanceMetric]:
        self._ensure_initialized()
        return await self.metrics.get_recent(operation, limit)

    # ------------------------------------------------------------------
    # Cache-wide operations
    # ------------------------------------------------------------------

    async def get_cache_stats(self) -> Dict[str, Any]:
        self._ensure_initialized()
        collections = {
            "users": await self.users.count(),
            "jobs": await self.jobs.count(),
            "analyses": await self.analyses.count(),
            "models": await self.models.count(),
            "metrics": await self.metrics.count(),
        }
        return {
            "collections": collections,
            "cache": await self.eviction.get_cache_stats() if self.eviction else None,
            "sync": self.sync_queue.get_sync_status() if self.sync_queue else None,
        }

    async def optimize_cache(self) -> Dict[str, int]:
        """Expire/evict, then drop invalid models and analyses past retention."""
        self._ensure_initialized()
        result = {"expired": 0, "evicted": 0}
        if self.eviction:
            result = await self.eviction.cleanup()

        invalid_models = await self.models.cleanup_invalid()
        old_analyses = await self.analyses.delete_older_than(self.settings.analysis_retention_days)
        for key in (*invalid_models, *old_analyses):
            await self._untrack(key)

        result["cleaned"] = len(invalid_models) + len(old_analyses)
        logger.info("Cache optimized", **result)
        return result

    async def clear_cache(self) -> None:
        """Drop every record, all cache metadata, the live queue and the failed log."""
        self._ensure_initialized()
        for repository in (self.users, self.jobs, self.analyses, self.models, self.metrics):
            await repository.clear()
        if self.eviction:
            await self.eviction.clear()
        if self.sync_queue:
            await self.sync_queue.clear_queue()
        logger.info("Cache cleared")

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def sync_now(self) -> Optional[Dict[str, int]]:
        """Force a pass; raises OfflineSyncError when offline."""
        self._ensure_initialized()
        if not self.sync_queue:
            return None
        return await self.sync_queue.force_sync()

    async def retry_failed_sync(self) -> Optional[Dict[str, int]]:
        self._ensure_initialized()
        if not self.sync_queue:
            return None
        return await self.sync_queue.retry_failed_items()

    def get_sync_status(self) -> Optional[Dict[str, Any]]:
        self._ensure_initialized()
        if not self.sync_queue:
            return None
        return self.sync_queue.get_sync_status()

    async def get_failed_sync_items(self) -> List[SyncQueueItem]:
        self._ensure_initialized()
        if not self.sync_queue:
            return []
        return await self.sync_queue.get_failed_items()

    async def clear_failed_sync(self) -> int:
        self._ensure_initialized()
        if not self.sync_queue:
            return 0
        return await self.sync_queue.clear_failed_items()
