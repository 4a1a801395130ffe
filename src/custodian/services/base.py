from __future__ import annotations

import aiosqlite
import logging
from abc import ABC, abstractmethod
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")
log = logging.getLogger("custodian.base_service")


class BaseService(ABC, Generic[T]):
    """Base class for all SQLite-backed record stores.

    Stores never open their own write connections: callers hand in the
    connection of the transaction the write belongs to.
    """

    def __init__(self, sqlite_path: str) -> None:
        self._path = sqlite_path
        self._logger = logging.getLogger(f"custodian.{self.__class__.__name__.lower()}")

    async def init(self) -> None:
        """Initialize the database schema."""
        async with aiosqlite.connect(self._path) as db:
            await self._create_tables(db)
            await db.commit()

    @abstractmethod
    async def _create_tables(self, db: aiosqlite.Connection) -> None:
        """Create the necessary database tables."""
        pass

    @abstractmethod
    def _from_row(self, row: aiosqlite.Row) -> T:
        """Convert a database row to the service's data type."""
        pass

    @property
    @abstractmethod
    def _get_query(self) -> str:
        """SQL query for getting a record by key."""
        pass

    async def get(self, db: aiosqlite.Connection, key: Any) -> Optional[T]:
        async with db.execute(self._get_query, (key,)) as cur:
            row = await cur.fetchone()
        if row is None:
            return None
        return self._from_row(row)

    async def _fetchall(self, db: aiosqlite.Connection, sql: str, params: tuple = ()) -> list[T]:
        async with db.execute(sql, params) as cur:
            rows = await cur.fetchall()
        return [self._from_row(r) for r in rows]

    @staticmethod
    async def _scalar(db: aiosqlite.Connection, sql: str, params: tuple = ()) -> Any:
        async with db.execute(sql, params) as cur:
            row = await cur.fetchone()
        return row[0] if row is not None else None
