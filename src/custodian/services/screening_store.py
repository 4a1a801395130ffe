from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Literal

import aiosqlite

from ..utils import from_iso, to_iso
from .base import BaseService

ScreenKind = Literal["email", "ip", "domain"]


@dataclass(frozen=True)
class ScreenedEntry:
    id: int
    kind: ScreenKind
    value: str
    action: str
    created_by_id: int
    created_at: datetime


class ScreeningStore(BaseService[ScreenedEntry]):
    """Identifiers blocked from re-registering."""

    async def _create_tables(self, db: aiosqlite.Connection) -> None:
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS screened_entries (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              kind TEXT NOT NULL CHECK (kind IN ('email', 'ip', 'domain')),
              value TEXT NOT NULL,
              action TEXT NOT NULL DEFAULT 'block',
              created_by_id INTEGER NOT NULL,
              created_at TEXT NOT NULL,
              UNIQUE (kind, value)
            )
            """
        )

    def _from_row(self, row: aiosqlite.Row) -> ScreenedEntry:
        return ScreenedEntry(
            id=int(row["id"]),
            kind=row["kind"],
            value=str(row["value"]),
            action=str(row["action"]),
            created_by_id=int(row["created_by_id"]),
            created_at=from_iso(row["created_at"]),
        )

    @property
    def _get_query(self) -> str:
        return "SELECT id, kind, value, action, created_by_id, created_at FROM screened_entries WHERE id = ?"

    async def block(self, db: aiosqlite.Connection, kind: ScreenKind, value: str, created_by_id: int, now: datetime) -> bool:
        value = value.strip().lower()
        if not value:
            return False
        cur = await db.execute(
            """
            INSERT OR IGNORE INTO screened_entries (kind, value, action, created_by_id, created_at)
            VALUES (?, ?, 'block', ?, ?)
            """,
            (kind, value, int(created_by_id), to_iso(now)),
        )
        return cur.rowcount > 0

    async def is_blocked(self, db: aiosqlite.Connection, kind: ScreenKind, value: str) -> bool:
        found = await self._scalar(
            db,
            "SELECT 1 FROM screened_entries WHERE kind = ? AND value = ? AND action = 'block'",
            (kind, value.strip().lower()),
        )
        return found is not None

    async def list_kind(self, db: aiosqlite.Connection, kind: ScreenKind) -> list[ScreenedEntry]:
        return await self._fetchall(
            db,
            "SELECT id, kind, value, action, created_by_id, created_at FROM screened_entries WHERE kind = ? ORDER BY id",
            (kind,),
        )
