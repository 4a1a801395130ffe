from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Sequence

import aiosqlite

from .services.base import BaseService

log = logging.getLogger("custodian.database")


@asynccontextmanager
async def connect(sqlite_path: str) -> AsyncIterator[aiosqlite.Connection]:
    """Autocommit connection with Row access, for reads and explicit transactions."""
    async with aiosqlite.connect(sqlite_path, isolation_level=None) as db:
        db.row_factory = aiosqlite.Row
        await db.execute("PRAGMA foreign_keys=ON")
        yield db


@asynccontextmanager
async def transaction(sqlite_path: str) -> AsyncIterator[aiosqlite.Connection]:
    """One atomic unit: everything written through the yielded connection commits or none of it does.

    BEGIN IMMEDIATE takes the write lock up front so the read-then-write
    precondition checks inside the block see a stable view.
    """
    async with connect(sqlite_path) as db:
        await db.execute("BEGIN IMMEDIATE")
        try:
            yield db
        except BaseException:
            await db.execute("ROLLBACK")
            raise
        await db.execute("COMMIT")


async def initialize_database(sqlite_path: str, stores: Sequence[BaseService]) -> None:
    """Initialize the database with all stores."""
    try:
        async with aiosqlite.connect(sqlite_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.execute("PRAGMA synchronous=NORMAL")
            await db.execute("PRAGMA foreign_keys=ON")
            await db.execute("PRAGMA temp_store=MEMORY")
            await db.commit()

        log.info("Applied SQLite pragmas")

        for store in stores:
            await store.init()
            log.info("Initialized %s", store.__class__.__name__)

        log.info("Database initialization completed")

    except Exception as e:
        log.error("Failed to initialize database: %s", e)
        raise


async def get_database_info(sqlite_path: str) -> dict:
    """Get information about the database."""
    try:
        async with aiosqlite.connect(sqlite_path) as db:
            cursor = await db.execute("PRAGMA page_count")
            page_count = (await cursor.fetchone())[0]

            cursor = await db.execute("PRAGMA page_size")
            page_size = (await cursor.fetchone())[0]

            cursor = await db.execute(
                "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"
            )
            tables = [row[0] for row in await cursor.fetchall()]

            return {
                "size_bytes": page_count * page_size,
                "page_count": page_count,
                "page_size": page_size,
                "table_count": len(tables),
                "tables": tables,
            }
    except Exception as e:
        log.error("Failed to get database info: %s", e)
        raise
