from __future__ import annotations

import aiosqlite

from ..models import Group
from .base import BaseService


class GroupStore(BaseService[Group]):
    async def _create_tables(self, db: aiosqlite.Connection) -> None:
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS groups (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              name TEXT NOT NULL UNIQUE,
              automatic INTEGER NOT NULL DEFAULT 0
            )
            """
        )
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS group_users (
              group_id INTEGER NOT NULL,
              account_id INTEGER NOT NULL,
              PRIMARY KEY (group_id, account_id)
            )
            """
        )
        await db.execute("CREATE INDEX IF NOT EXISTS idx_group_users_account ON group_users(account_id)")

    def _from_row(self, row: aiosqlite.Row) -> Group:
        return Group(id=int(row["id"]), name=str(row["name"]), automatic=bool(row["automatic"]))

    @property
    def _get_query(self) -> str:
        return "SELECT id, name, automatic FROM groups WHERE id = ?"

    async def create(self, db: aiosqlite.Connection, name: str, *, automatic: bool = False) -> Group:
        cur = await db.execute(
            "INSERT INTO groups (name, automatic) VALUES (?, ?)",
            (name, int(automatic)),
        )
        return Group(id=int(cur.lastrowid), name=name, automatic=automatic)

    async def is_member(self, db: aiosqlite.Connection, group_id: int, account_id: int) -> bool:
        found = await self._scalar(
            db,
            "SELECT 1 FROM group_users WHERE group_id = ? AND account_id = ?",
            (int(group_id), int(account_id)),
        )
        return found is not None

    async def add_member(self, db: aiosqlite.Connection, group_id: int, account_id: int) -> bool:
        cur = await db.execute(
            "INSERT OR IGNORE INTO group_users (group_id, account_id) VALUES (?, ?)",
            (int(group_id), int(account_id)),
        )
        return cur.rowcount > 0

    async def remove_member(self, db: aiosqlite.Connection, group_id: int, account_id: int) -> bool:
        cur = await db.execute(
            "DELETE FROM group_users WHERE group_id = ? AND account_id = ?",
            (int(group_id), int(account_id)),
        )
        return cur.rowcount > 0

    async def transfer_memberships(self, db: aiosqlite.Connection, source_id: int, target_id: int) -> int:
        """Give the target every non-automatic membership the source holds."""
        cur = await db.execute(
            """
            INSERT OR IGNORE INTO group_users (group_id, account_id)
            SELECT gu.group_id, ? FROM group_users gu
            JOIN groups g ON g.id = gu.group_id
            WHERE gu.account_id = ? AND g.automatic = 0
            """,
            (int(target_id), int(source_id)),
        )
        return int(cur.rowcount)

    async def remove_all_memberships(self, db: aiosqlite.Connection, account_id: int) -> int:
        cur = await db.execute("DELETE FROM group_users WHERE account_id = ?", (int(account_id),))
        return int(cur.rowcount)
