from __future__ import annotations

from datetime import datetime
from typing import Optional

import aiosqlite

from ..models import Reviewable
from ..utils import from_iso, to_iso
from .base import BaseService


class ReviewStore(BaseService[Reviewable]):
    """Pending-approval review items, one per account."""

    async def _create_tables(self, db: aiosqlite.Connection) -> None:
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS reviewables (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              account_id INTEGER NOT NULL UNIQUE,
              status TEXT NOT NULL DEFAULT 'pending',
              created_at TEXT NOT NULL,
              resolved_by_id INTEGER,
              resolved_at TEXT
            )
            """
        )

    def _from_row(self, row: aiosqlite.Row) -> Reviewable:
        return Reviewable(
            id=int(row["id"]),
            account_id=int(row["account_id"]),
            status=str(row["status"]),
            created_at=from_iso(row["created_at"]),
            resolved_by_id=row["resolved_by_id"],
            resolved_at=from_iso(row["resolved_at"]),
        )

    @property
    def _get_query(self) -> str:
        return "SELECT id, account_id, status, created_at, resolved_by_id, resolved_at FROM reviewables WHERE id = ?"

    async def find_for_account(self, db: aiosqlite.Connection, account_id: int) -> Optional[Reviewable]:
        async with db.execute(
            "SELECT id, account_id, status, created_at, resolved_by_id, resolved_at FROM reviewables WHERE account_id = ?",
            (int(account_id),),
        ) as cur:
            row = await cur.fetchone()
        return self._from_row(row) if row is not None else None

    async def create(self, db: aiosqlite.Connection, account_id: int, now: datetime) -> Reviewable:
        cur = await db.execute(
            "INSERT INTO reviewables (account_id, status, created_at) VALUES (?, 'pending', ?)",
            (int(account_id), to_iso(now)),
        )
        return Reviewable(id=int(cur.lastrowid), account_id=int(account_id), status="pending", created_at=now)

    async def resolve(self, db: aiosqlite.Connection, reviewable_id: int, status: str, resolved_by_id: int, now: datetime) -> None:
        await db.execute(
            "UPDATE reviewables SET status = ?, resolved_by_id = ?, resolved_at = ? WHERE id = ?",
            (status, int(resolved_by_id), to_iso(now), int(reviewable_id)),
        )

    async def delete_for_account(self, db: aiosqlite.Connection, account_id: int) -> int:
        cur = await db.execute("DELETE FROM reviewables WHERE account_id = ?", (int(account_id),))
        return int(cur.rowcount)
