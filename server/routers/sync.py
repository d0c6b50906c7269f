"""Offline sync routes: status, replay control and connectivity signals."""

from fastapi import APIRouter, Depends, HTTPException, status

from core.container import get_cache_service
from core.exceptions import OfflineCacheError, OfflineSyncError
from core.logging import get_logger
from services.offline_cache import CacheService, ManualConnectivity

logger = get_logger(__name__)
router = APIRouter(prefix="/api/sync", tags=["sync"])


def _manual_connectivity(service: CacheService) -> ManualConnectivity:
    if not isinstance(service.connectivity, ManualConnectivity):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Connectivity is observed automatically and cannot be set"
        )
    return service.connectivity


@router.get("/status")
async def get_sync_status(service: CacheService = Depends(get_cache_service)):
    return {"success": True, "status": service.get_sync_status()}


@router.post("/now")
async def sync_now(service: CacheService = Depends(get_cache_service)):
    """Force a replay pass; 409 when offline."""
    try:
        result = await service.sync_now()
    except OfflineSyncError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return {"success": True, "result": result}


@router.post("/retry-failed")
async def retry_failed(service: CacheService = Depends(get_cache_service)):
    """Requeue the failed log and sync."""
    try:
        result = await service.retry_failed_sync()
        return {"success": True, "result": result}
    except OfflineCacheError as e:
        logger.error("Failed to retry failed sync items", error=str(e))
        return {"success": False, "error": str(e)}


@router.get("/failed")
async def get_failed_items(service: CacheService = Depends(get_cache_service)):
    items = await service.get_failed_sync_items()
    return {"success": True, "items": [item.to_dict() for item in items]}


@router.delete("/failed")
async def clear_failed_items(service: CacheService = Depends(get_cache_service)):
    removed = await service.clear_failed_sync()
    return {"success": True, "removed": removed}


# ============================================================================
# Connectivity signals
# ============================================================================

@router.post("/online")
async def go_online(service: CacheService = Depends(get_cache_service)):
    _manual_connectivity(service).go_online()
    return {"success": True, "status": service.get_sync_status()}


@router.post("/offline")
async def go_offline(service: CacheService = Depends(get_cache_service)):
    _manual_connectivity(service).go_offline()
    return {"success": True, "status": service.get_sync_status()}


@router.post("/visible")
async def become_visible(service: CacheService = Depends(get_cache_service)):
    _manual_connectivity(service).become_visible()
    return {"success": True, "status": service.get_sync_status()}
