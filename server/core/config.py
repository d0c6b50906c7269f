"""Environment-driven configuration with Pydantic v2."""

from typing import Literal, Optional
from pathlib import Path
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings


class EvictionConfig(BaseModel):
    """Budgets enforced over cache-managed records.

    Set from the environment as EVICTION__MAX_ITEMS, EVICTION__TTL_SECONDS, ...
    """

    max_size_bytes: int = Field(default=100 * 1024 * 1024, ge=1)  # 100MB
    max_items: int = Field(default=50, ge=1)
    ttl_seconds: float = Field(default=24 * 60 * 60, gt=0)  # 24 hours since last access
    cleanup_interval_seconds: float = Field(default=60 * 60, gt=0)  # 1 hour


class SyncConfig(BaseModel):
    """Replay settings for the offline mutation queue.

    Set from the environment as SYNC__MAX_RETRIES, SYNC__BATCH_SIZE, ...
    """

    max_retries: int = Field(default=3, ge=0, le=20)
    retry_delay_seconds: float = Field(default=5.0, ge=0)
    batch_size: int = Field(default=10, ge=1, le=500)
    sync_interval_seconds: float = Field(default=30.0, gt=0)
    conflict_resolution: Literal["last-write-wins", "client-wins"] = "last-write-wins"


class Settings(BaseSettings):
    """Application settings driven entirely by environment variables."""

    # Admin API
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=3020, ge=1024, le=65535)
    debug: bool = Field(default=False)

    # Persistent store
    database_url: str = Field(default="sqlite+aiosqlite:///./data/offline_cache.db")
    database_echo: bool = Field(default=False)

    # Cache and sync engines
    eviction: EvictionConfig = Field(default_factory=EvictionConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    enable_lru: bool = Field(default=True)
    enable_sync: bool = Field(default=True)
    analysis_retention_days: int = Field(default=90, ge=1)

    # Simulated remote target (used when no transport is injected)
    remote_latency_seconds: float = Field(default=0.1, ge=0)
    remote_jitter_seconds: float = Field(default=0.2, ge=0)
    remote_failure_rate: float = Field(default=0.0, ge=0.0, le=1.0)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: Literal["json", "console"] = Field(default="json")
    log_file: Optional[str] = Field(default=None)

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        """Ensure database directory exists for SQLite."""
        if v and v.startswith("sqlite") and ":///" in v:
            db_path = v.split("///")[1]
            if db_path and db_path != ":memory:":
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return v

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.debug

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
        "env_parse_none_str": "none",
        "env_nested_delimiter": "__",
    }
