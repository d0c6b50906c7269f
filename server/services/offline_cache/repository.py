"""Generic CRUD and indexed-query layer over one collection.

A repository owns exactly one table. It hides sessions and transactions
from callers: every public method is one transaction, and store failures
surface as StoreTransactionError without being retried here.
"""

import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, ClassVar, Generic, List, Literal, Optional, Tuple, Type, TypeVar

from sqlmodel import SQLModel, select
from sqlalchemy import delete as sa_delete, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.sql import Select

from core.database import Database
from core.exceptions import DuplicateKeyError, StoreTransactionError
from core.logging import get_logger

logger = get_logger(__name__)

RecordT = TypeVar("RecordT", bound=SQLModel)
OrderDirection = Literal["asc", "desc"]


@dataclass(frozen=True)
class KeyRange:
    """Inclusive/exclusive bounds over an index, either end may be open.

    Examples:
        KeyRange.only("acme")
        KeyRange.bound(0.5, 0.8)
        KeyRange.upper_bound(cutoff, open=True)
    """
    lower: Any = None
    upper: Any = None
    lower_open: bool = False
    upper_open: bool = False

    @classmethod
    def only(cls, value: Any) -> "KeyRange":
        return cls(lower=value, upper=value)

    @classmethod
    def bound(cls, lower: Any, upper: Any,
              lower_open: bool = False, upper_open: bool = False) -> "KeyRange":
        if lower is not None and upper is not None and lower > upper:
            raise ValueError(f"Invalid key range: lower {lower!r} is greater than upper {upper!r}")
        return cls(lower=lower, upper=upper, lower_open=lower_open, upper_open=upper_open)

    @classmethod
    def lower_bound(cls, lower: Any, open: bool = False) -> "KeyRange":
        return cls(lower=lower, lower_open=open)

    @classmethod
    def upper_bound(cls, upper: Any, open: bool = False) -> "KeyRange":
        return cls(upper=upper, upper_open=open)

    def clause(self, column):
        """Render as a SQL condition on `column` (None when unbounded)."""
        conditions = []
        if self.lower is not None:
            conditions.append(column > self.lower if self.lower_open else column >= self.lower)
        if self.upper is not None:
            conditions.append(column < self.upper if self.upper_open else column <= self.upper)
        if not conditions:
            return None
        return conditions[0] if len(conditions) == 1 else conditions[0] & conditions[1]

    def includes(self, value: Any) -> bool:
        if self.lower is not None:
            if value < self.lower or (self.lower_open and value == self.lower):
                return False
        if self.upper is not None:
            if value > self.upper or (self.upper_open and value == self.upper):
                return False
        return True


@dataclass
class BatchResult(Generic[RecordT]):
    """Outcome of one record in a batch write."""
    index: int
    record: RecordT
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class BaseRepository(Generic[RecordT]):
    """Typed CRUD over one SQLModel table.

    Subclasses set `model`, `collection` and the index columns they allow
    queries on. Records handed to the repository are copied before being
    attached to a session, so callers keep ownership of their instances.
    """

    model: ClassVar[Type[SQLModel]]
    collection: ClassVar[str]
    key_field: ClassVar[str] = "id"
    indexes: ClassVar[Tuple[str, ...]] = ()

    def __init__(self, database: Database, clock: Callable[[], float] = time.time):
        self.database = database
        self._clock = clock

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @property
    def _key_column(self):
        return getattr(self.model, self.key_field)

    def key_of(self, record: RecordT) -> str:
        return getattr(record, self.key_field)

    def _copy(self, record: RecordT) -> RecordT:
        return self.model(**record.model_dump())

    def _index_column(self, index_name: str):
        if index_name != self.key_field and index_name not in self.indexes:
            raise ValueError(f"Unknown index '{index_name}' on collection '{self.collection}'")
        return getattr(self.model, index_name)

    def _ordered(self, stmt: Select, column, order_direction: OrderDirection) -> Select:
        if order_direction == "desc":
            return stmt.order_by(column.desc(), self._key_column.desc())
        return stmt.order_by(column.asc(), self._key_column.asc())

    @staticmethod
    def _paged(stmt: Select, limit: Optional[int], offset: int) -> Select:
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        return stmt

    async def _scan(self, stmt: Select, operation: str = "scan") -> AsyncIterator[RecordT]:
        """Stream rows of `stmt` from a server-side cursor."""
        async with self.database.transaction(self.collection, operation) as session:
            result = await session.stream_scalars(stmt)
            async for row in result:
                yield row

    async def _fetch(self, stmt: Select, operation: str = "query") -> List[RecordT]:
        return [row async for row in self._scan(stmt, operation)]

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    async def create(self, record: RecordT) -> RecordT:
        """Insert a new record; DuplicateKeyError if its id is taken."""
        key = self.key_of(record)
        try:
            async with self.database.transaction(self.collection, "create") as session:
                if await session.get(self.model, key) is not None:
                    raise DuplicateKeyError(self.collection, key)
                session.add(self._copy(record))
        except StoreTransactionError as e:
            # A concurrent create of the same key won the race to commit
            if isinstance(e.__cause__, IntegrityError):
                raise DuplicateKeyError(self.collection, key) from e
            raise
        return record

    async def get_by_id(self, key: str) -> Optional[RecordT]:
        """Return the record, or None when absent."""
        async with self.database.transaction(self.collection, "get") as session:
            return await session.get(self.model, key)

    async def exists(self, key: str) -> bool:
        return await self.get_by_id(key) is not None

    async def update(self, record: RecordT) -> RecordT:
        """Upsert by identifier (last write wins)."""
        async with self.database.transaction(self.collection, "update") as session:
            await session.merge(self._copy(record))
        return record

    async def delete(self, key: str) -> bool:
        """Delete by identifier. Returns False when nothing was there."""
        async with self.database.transaction(self.collection, "delete") as session:
            row = await session.get(self.model, key)
            if row is None:
                return False
            await session.delete(row)
        return True

    async def count(self) -> int:
        stmt = select(func.count()).select_from(self.model)
        async with self.database.transaction(self.collection, "count") as session:
            return (await session.execute(stmt)).scalar_one()

    async def clear(self) -> int:
        """Remove every record. Maintenance and cache resets only."""
        async with self.database.transaction(self.collection, "clear") as session:
            result = await session.execute(sa_delete(self.model))
        logger.info("Collection cleared", collection=self.collection, deleted=result.rowcount)
        return result.rowcount

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def scan_index(self, index_name: str, value: Any = None, *,
                   limit: Optional[int] = None, offset: int = 0,
                   order_direction: OrderDirection = "asc") -> AsyncIterator[RecordT]:
        """Lazy cursor walk over `index_name`.

        Args:
            index_name: Indexed column to match and order by
            value: Exact value, a KeyRange, or None for the whole index
            limit: Stop after this many records
            offset: Skip this many matching records first
            order_direction: "asc" or "desc" along the index

        Every call starts a fresh scan, so the sequence is restartable.
        """
        column = self._index_column(index_name)
        stmt = select(self.model)
        if isinstance(value, KeyRange):
            condition = value.clause(column)
            if condition is not None:
                stmt = stmt.where(condition)
        elif value is not None:
            stmt = stmt.where(column == value)
        stmt = self._paged(self._ordered(stmt, column, order_direction), limit, offset)
        return self._scan(stmt, "query_by_index")

    async def query_by_index(self, index_name: str, value: Any = None, *,
                             limit: Optional[int] = None, offset: int = 0,
                             order_direction: OrderDirection = "asc") -> List[RecordT]:
        """Materialise scan_index() into a list."""
        return [row async for row in self.scan_index(
            index_name, value, limit=limit, offset=offset, order_direction=order_direction
        )]

    async def get_all(self, *, limit: Optional[int] = None, offset: int = 0,
                      order_by: Optional[str] = None,
                      order_direction: OrderDirection = "asc") -> List[RecordT]:
        """Every record, optionally ordered along an index."""
        column = self._index_column(order_by) if order_by else self._key_column
        stmt = self._paged(self._ordered(select(self.model), column, order_direction), limit, offset)
        return await self._fetch(stmt, "get_all")

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    async def batch_create(self, records: List[RecordT]) -> List[BatchResult[RecordT]]:
        """Create each record in its own transaction.

        A failure is reported on that record's BatchResult and the rest of
        the batch continues.
        """
        return await self._batch(records, self.create, "batch_create")

    async def batch_update(self, records: List[RecordT]) -> List[BatchResult[RecordT]]:
        return await self._batch(records, self.update, "batch_update")

    async def _batch(self, records, write, operation: str) -> List[BatchResult[RecordT]]:
        results: List[BatchResult[RecordT]] = []
        for index, record in enumerate(records):
            try:
                await write(record)
                results.append(BatchResult(index=index, record=record))
            except Exception as e:
                logger.warning("Batch item failed", collection=self.collection,
                               operation=operation, index=index, error=str(e))
                results.append(BatchResult(index=index, record=record, error=e))

        failed = sum(1 for r in results if not r.ok)
        if failed:
            logger.info("Batch completed with failures", collection=self.collection,
                        operation=operation, total=len(records), failed=failed)
        return results
