"""Offline cache package.

Persistent cache and offline-sync engine with:
- Typed repositories over SQLModel tables with lazy index scans
- Priority/recency eviction under size, item-count and TTL budgets
- Batched mutation replay with exponential backoff and a failed log
- A lifecycle-managed service composing all of the above
"""

from .repository import (
    BaseRepository,
    BatchResult,
    KeyRange,
)
from .repositories import (
    UserRepository,
    JobRepository,
    AnalysisRepository,
    ModelRepository,
    MetricsRepository,
    CacheMetadataRepository,
    FailedSyncRepository,
)
from .models import (
    SyncKind,
    SyncQueueItem,
    generate_sync_id,
)
from .connectivity import (
    ConnectivityObserver,
    ManualConnectivity,
)
from .remote import (
    RemoteApply,
    SimulatedRemote,
)
from .failed_log import FailedLog
from .eviction import EvictionManager
from .sync_queue import SyncQueueManager
from .service import CacheService

__all__ = [
    # Repositories
    "BaseRepository",
    "BatchResult",
    "KeyRange",
    "UserRepository",
    "JobRepository",
    "AnalysisRepository",
    "ModelRepository",
    "MetricsRepository",
    "CacheMetadataRepository",
    "FailedSyncRepository",
    # Sync models
    "SyncKind",
    "SyncQueueItem",
    "generate_sync_id",
    # Collaborators
    "ConnectivityObserver",
    "ManualConnectivity",
    "RemoteApply",
    "SimulatedRemote",
    # Engines
    "FailedLog",
    "EvictionManager",
    "SyncQueueManager",
    "CacheService",
]
