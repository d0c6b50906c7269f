"""Dependency injection container for the application."""

from dependency_injector import containers, providers
from fastapi import Request

from core.config import Settings
from core.database import Database
from services.offline_cache import CacheService, ManualConnectivity, SimulatedRemote


class Container(containers.DeclarativeContainer):
    """Application dependency injection container.

    There is no global instance: the app factory and each test build
    their own, so independent caches can share a process.
    """

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    # Persistent store
    database = providers.Singleton(
        Database,
        settings=settings
    )

    # Connectivity signals (driven by the /api/sync admin routes)
    connectivity = providers.Singleton(
        ManualConnectivity,
        online=True
    )

    # Remote target for replayed mutations
    remote = providers.Singleton(
        SimulatedRemote,
        latency=settings.provided.remote_latency_seconds,
        jitter=settings.provided.remote_jitter_seconds,
        failure_rate=settings.provided.remote_failure_rate
    )

    # Cache facade
    cache_service = providers.Singleton(
        CacheService,
        settings=settings,
        database=database,
        remote=remote,
        connectivity=connectivity
    )


def get_cache_service(request: Request) -> CacheService:
    """FastAPI dependency: the cache service of the app's container."""
    return request.app.state.container.cache_service()
