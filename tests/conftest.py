"""Pytest configuration and fixtures for offline cache tests."""

import asyncio
import time
from typing import Dict, List, Optional

import pytest
import pytest_asyncio

from core.config import Settings, EvictionConfig, SyncConfig
from core.database import Database
from core.exceptions import SyncApplyError
from models.database import User, Job, AnalysisResult, CachedModel
from services.offline_cache import (
    CacheService,
    FailedLog,
    FailedSyncRepository,
    ManualConnectivity,
    SyncQueueItem,
    SyncQueueManager,
)


class FakeClock:
    """Manually advanced clock in Unix seconds."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class ScriptedRemote:
    """Remote that fails a scripted number of times per record id.

    Tracks how many applies are in flight when each one starts, which
    shows how items were grouped into concurrent chunks.
    """

    def __init__(self, failures: Optional[Dict[str, int]] = None):
        self.failures = dict(failures or {})
        self.attempts: Dict[str, int] = {}
        self.applied: List[str] = []
        self.in_flight = 0
        self.concurrency_at_start: List[int] = []
        self.gate: Optional[asyncio.Event] = None

    async def __call__(self, item: SyncQueueItem) -> None:
        record_id = item.record_id
        self.in_flight += 1
        self.concurrency_at_start.append(self.in_flight)
        try:
            await asyncio.sleep(0)
            if self.gate is not None:
                await self.gate.wait()
            self.attempts[record_id] = self.attempts.get(record_id, 0) + 1
            if self.attempts[record_id] <= self.failures.get(record_id, 0):
                raise SyncApplyError(item.id, f"scripted failure {self.attempts[record_id]}")
            self.applied.append(record_id)
        finally:
            self.in_flight -= 1


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def remote():
    return ScriptedRemote()


@pytest.fixture
def settings(tmp_path):
    """Settings pointing at a throwaway SQLite file, with no retry delay."""
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'cache.db'}",
        log_format="console",
        log_level="WARNING",
        remote_latency_seconds=0,
        remote_jitter_seconds=0,
        eviction=EvictionConfig(max_size_bytes=10_000, max_items=5, ttl_seconds=3600),
        sync=SyncConfig(max_retries=3, retry_delay_seconds=0, batch_size=10,
                        sync_interval_seconds=3600),
    )


@pytest_asyncio.fixture
async def database(settings):
    db = Database(settings)
    await db.startup()
    yield db
    await db.shutdown()


@pytest_asyncio.fixture
async def failed_log(database, clock):
    log = FailedLog(FailedSyncRepository(database, clock=clock), clock=clock)
    await log.load()
    return log


@pytest_asyncio.fixture
async def make_sync_manager(settings, failed_log, remote, clock):
    """Build a SyncQueueManager over the shared failed log and scripted remote."""
    managers = []

    def factory(online: bool = True, **sync_overrides) -> SyncQueueManager:
        config = settings.sync.model_copy(update=sync_overrides)
        manager = SyncQueueManager(config, failed_log, remote,
                                   ManualConnectivity(online=online), clock=clock)
        managers.append(manager)
        return manager

    yield factory

    for manager in managers:
        if remote.gate is not None:
            remote.gate.set()
        await manager.wait_idle()
        await manager.stop()


@pytest_asyncio.fixture
async def service(settings, remote, clock):
    cache_service = CacheService(settings, remote=remote,
                                 connectivity=ManualConnectivity(online=True), clock=clock)
    await cache_service.initialize()
    yield cache_service
    if cache_service.sync_queue:
        await cache_service.sync_queue.wait_idle()
    await cache_service.destroy()


# ============================================================================
# Record factories
# ============================================================================

@pytest.fixture
def make_user():
    def factory(user_id: str = "user-1", email: Optional[str] = None, **fields) -> User:
        return User(
            id=user_id,
            email=email or f"{user_id}@example.com",
            profile=fields.pop("profile", {"name": user_id.title(), "skills": ["python"]}),
            preferences=fields.pop("preferences", {"theme": "dark"}),
            created_at=fields.pop("created_at", 1_700_000_000.0),
            updated_at=fields.pop("updated_at", 1_700_000_000.0),
            **fields,
        )
    return factory


@pytest.fixture
def make_job():
    def factory(job_id: str = "job-1", **fields) -> Job:
        return Job(
            id=job_id,
            title=fields.pop("title", "Backend Engineer"),
            company=fields.pop("company", "Acme"),
            content=fields.pop("content", "Build async Python services"),
            analyzed_at=fields.pop("analyzed_at", time.time()),
            **fields,
        )
    return factory


@pytest.fixture
def make_analysis():
    def factory(analysis_id: str = "analysis-1", user_id: str = "user-1",
                job_id: str = "job-1", match_score: float = 0.5, **fields) -> AnalysisResult:
        return AnalysisResult(
            id=analysis_id,
            user_id=user_id,
            job_id=job_id,
            match_score=match_score,
            created_at=fields.pop("created_at", time.time()),
            **fields,
        )
    return factory


@pytest.fixture
def make_model():
    def factory(model_id: str = "model-1", blob: bytes = b"\x00\x01weights", **fields) -> CachedModel:
        return CachedModel(
            id=model_id,
            blob=blob,
            manifest=fields.pop("manifest", {"name": "matcher", "type": "embedding", "checksum": "abc"}),
            version=fields.pop("version", "1.0.0"),
            size=fields.pop("size", len(blob)),
            **fields,
        )
    return factory
