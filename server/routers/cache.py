"""Cache maintenance routes."""

from fastapi import APIRouter, Depends

from core.container import get_cache_service
from core.exceptions import OfflineCacheError
from core.logging import get_logger
from services.offline_cache import CacheService

logger = get_logger(__name__)
router = APIRouter(prefix="/api/cache", tags=["cache"])


@router.get("/stats")
async def get_cache_stats(service: CacheService = Depends(get_cache_service)):
    """Collection counts, eviction snapshot and sync status."""
    try:
        stats = await service.get_cache_stats()
        return {"success": True, "stats": stats}
    except OfflineCacheError as e:
        logger.error("Failed to get cache stats", error=str(e))
        return {"success": False, "error": str(e)}


@router.post("/optimize")
async def optimize_cache(service: CacheService = Depends(get_cache_service)):
    """Expire, evict and drop stale records."""
    try:
        result = await service.optimize_cache()
        return {"success": True, **result}
    except OfflineCacheError as e:
        logger.error("Failed to optimize cache", error=str(e))
        return {"success": False, "error": str(e)}


@router.post("/clear")
async def clear_cache(service: CacheService = Depends(get_cache_service)):
    """Drop every cached record, the sync queue and the failed log."""
    try:
        await service.clear_cache()
        return {"success": True}
    except OfflineCacheError as e:
        logger.error("Failed to clear cache", error=str(e))
        return {"success": False, "error": str(e)}
