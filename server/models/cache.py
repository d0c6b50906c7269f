"""Tables owned by the cache engines rather than by application entities."""

import time
from typing import Optional, Dict, Any
from sqlmodel import SQLModel, Field, Column, JSON


class CacheMetadataEntry(SQLModel, table=True):
    """Eviction bookkeeping for one cache-managed record.

    The only source of truth for eviction ordering; the record itself is
    never consulted.
    """

    __tablename__ = "cache_metadata"

    key: str = Field(primary_key=True, max_length=255)
    collection: str = Field(index=True, max_length=100)
    size_bytes: int = Field(default=0, ge=0)
    last_accessed: float = Field(default_factory=time.time, index=True)
    access_count: int = Field(default=1, ge=0)
    priority: int = Field(default=1, index=True)
    expires_at: Optional[float] = Field(default=None, index=True)  # Unix timestamp


class FailedSyncItem(SQLModel, table=True):
    """Mutation that exhausted its retry budget.

    Kept in its own table so a crash mid-sync cannot corrupt both the
    failed log and the live queue.
    """

    __tablename__ = "sync_failed_items"

    id: str = Field(primary_key=True, max_length=255)
    kind: str = Field(max_length=20)
    entity: str = Field(index=True, max_length=100)
    payload: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    enqueued_at: float = Field(index=True)
    retry_count: int = Field(default=0)
    last_error: Optional[str] = Field(default=None, max_length=2000)
    failed_at: float = Field(default_factory=time.time)
