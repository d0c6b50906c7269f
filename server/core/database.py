"""Async persistent store over SQLModel and SQLAlchemy 2.0.

Each collection is one table; secondary indexes are indexed columns.
Repositories never touch the engine directly, they borrow a session from
`Database.transaction()`.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlmodel import SQLModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, AsyncSession, async_sessionmaker

from core.config import Settings
from core.exceptions import NotInitializedError, StoreTransactionError
from core.logging import get_logger
from models import database as _record_tables  # noqa: F401  registers tables on SQLModel.metadata
from models import cache as _cache_tables  # noqa: F401

logger = get_logger(__name__)


class Database:
    """Async database service with SQLModel."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.engine: Optional[AsyncEngine] = None
        self.async_session: Optional[async_sessionmaker] = None

    @property
    def is_started(self) -> bool:
        return self.engine is not None

    async def startup(self):
        """Open the engine and create any missing tables."""
        if self.engine is not None:
            return

        try:
            logging.getLogger("aiosqlite").setLevel(logging.WARNING)
            logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

            engine_options = {"echo": self.settings.database_echo, "future": True}
            if not self.settings.database_url.startswith("sqlite"):
                engine_options.update(pool_size=20, max_overflow=30)

            self.engine = create_async_engine(self.settings.database_url, **engine_options)

            self.async_session = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)

            logger.info("Database initialized successfully", url=self.settings.database_url)

        except Exception as e:
            logger.error("Database startup failed", error=str(e))
            self.engine = None
            self.async_session = None
            raise

    async def shutdown(self):
        """Close database connections. Safe to call more than once."""
        if self.engine:
            await self.engine.dispose()
            logger.info("Database connections closed")
        self.engine = None
        self.async_session = None

    @asynccontextmanager
    async def get_session(self) -> AsyncIterator[AsyncSession]:
        """Get a plain async session; the caller commits."""
        if not self.async_session:
            raise NotInitializedError("Database")

        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    @asynccontextmanager
    async def transaction(self, collection: str, operation: str) -> AsyncIterator[AsyncSession]:
        """Run one unit of work against `collection`.

        Commits when the block exits cleanly, rolls back otherwise. Store
        failures surface as StoreTransactionError; every other exception
        raised inside the block propagates unchanged.
        """
        if not self.async_session:
            raise NotInitializedError("Database")

        try:
            async with self.async_session() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as e:
            logger.error("Store transaction failed",
                         collection=collection, operation=operation, error=str(e))
            raise StoreTransactionError(collection, operation, str(e)) from e

    async def ping(self) -> bool:
        """Check database connectivity."""
        try:
            async with self.get_session() as session:
                await session.execute(text("SELECT 1"))
            return True
        except Exception:
            return False
