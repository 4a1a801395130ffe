from __future__ import annotations

import aiosqlite

from .base import BaseService


class IdempotencyStore(BaseService):
    """Dedupe keys for deferred tasks.

    A task key is claimed before its handler runs. If it is already present,
    the task is a replay and is skipped. Failed tasks release their key so a
    later replay can run them again.
    """

    async def _create_tables(self, db: aiosqlite.Connection) -> None:
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS task_idempotency (
              task_key TEXT PRIMARY KEY,
              task_kind TEXT NOT NULL,
              created_at_iso TEXT NOT NULL
            )
            """
        )

    def _from_row(self, row: aiosqlite.Row):
        return row

    @property
    def _get_query(self) -> str:
        return "SELECT task_key, task_kind, created_at_iso FROM task_idempotency WHERE task_key = ?"

    async def claim(self, task_key: str, task_kind: str, created_at_iso: str) -> bool:
        """Try to claim a task key. Returns True if newly claimed, False if already existed."""
        async with aiosqlite.connect(self._path) as db:
            try:
                await db.execute(
                    "INSERT INTO task_idempotency (task_key, task_kind, created_at_iso) VALUES (?, ?, ?)",
                    (task_key, task_kind, created_at_iso),
                )
                await db.commit()
                return True
            except aiosqlite.IntegrityError:
                return False

    async def release(self, task_key: str) -> None:
        async with aiosqlite.connect(self._path) as db:
            await db.execute("DELETE FROM task_idempotency WHERE task_key = ?", (task_key,))
            await db.commit()
