"""Health check utilities for daemon monitoring.

Provides uptime tracking and health status for the /health endpoint.
"""
import time
from typing import Dict, Any, TYPE_CHECKING

if TYPE_CHECKING:
    from services.offline_cache import CacheService

# Module-level startup time tracking
_startup_time: float = 0.0


def set_startup_time() -> None:
    """Record the application startup time. Call once during lifespan startup."""
    global _startup_time
    _startup_time = time.time()


def get_uptime() -> float:
    """Get uptime in seconds since startup."""
    return time.time() - _startup_time if _startup_time else 0.0


async def get_health_status(service: "CacheService") -> Dict[str, Any]:
    """Get health status for /health endpoint.

    Returns:
        Dict containing status, uptime, store check, sync status and feature flags.
    """
    db_healthy = service.is_initialized and await service.database.ping()
    sync_status = service.get_sync_status() if service.is_initialized else None

    return {
        "status": "healthy" if db_healthy else "degraded",
        "uptime_seconds": round(get_uptime(), 1),
        "checks": {
            "database": db_healthy,
        },
        "sync": sync_status,
        "features": {
            "lru": service.eviction is not None,
            "sync": service.sync_queue is not None,
        },
    }
