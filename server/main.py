"""
Admin API for the offline cache and sync engine.

Exposes cache maintenance, sync control and connectivity signals over HTTP.
"""

from datetime import datetime
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse, ORJSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from core.container import Container
from core.exceptions import NotInitializedError
from core.health import get_health_status, set_startup_time
from core.logging import configure_logging, get_logger
from routers import cache, sync

logger = get_logger(__name__)


class CatchAllExceptionsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error("Unhandled exception", error_type=type(e).__name__,
                         error=str(e), path=request.url.path, exc_info=True)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "success": False,
                    "error": f"{type(e).__name__}: {str(e)}",
                    "detail": "Internal server error"
                }
            )


def create_app(container: Optional[Container] = None) -> FastAPI:
    """Build the FastAPI app around its own container."""
    container = container or Container()
    settings = container.settings()
    configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan management."""
        logger.info("Starting offline cache service", database_url=settings.database_url)
        set_startup_time()

        service = container.cache_service()
        await service.initialize()

        logger.info("Services started successfully")
        yield

        await service.destroy()
        logger.info("Services shutdown complete")

    app = FastAPI(
        title="Resume Offline Cache",
        version="1.0.0",
        description="Persistent cache and offline-sync engine",
        lifespan=lifespan,
        default_response_class=ORJSONResponse
    )
    app.state.container = container

    @app.exception_handler(NotInitializedError)
    async def not_initialized_handler(request: Request, exc: NotInitializedError):
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"success": False, "error": str(exc)}
        )

    app.add_middleware(CatchAllExceptionsMiddleware)

    app.include_router(cache.router)
    app.include_router(sync.router)

    @app.get("/health")
    async def health_check():
        """Detailed health check."""
        health = await get_health_status(container.cache_service())
        return {
            **health,
            "service": "offline-cache",
            "environment": "development" if settings.debug else "production",
            "timestamp": datetime.now().isoformat()
        }

    return app


if __name__ == "__main__":
    import uvicorn
    from core.config import Settings

    settings = Settings()
    logger.info("Starting offline cache service",
                host=settings.host, port=settings.port, debug=settings.debug)
    uvicorn.run(
        "main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        reload_dirs=["."] if settings.debug else None,
        reload_excludes=["*.pyc", "__pycache__", "*.log", "*.db"] if settings.debug else None,
    )
