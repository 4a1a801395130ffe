from __future__ import annotations

from datetime import datetime
from typing import Optional

import aiosqlite

from ..models import PenaltyKind, PenaltyRecord
from ..utils import from_iso, to_iso
from .base import BaseService

_PENALTY_COLUMNS = "id, kind, account_id, actor_id, reason, message, created_at, expires_at, active"


class PenaltyStore(BaseService[PenaltyRecord]):
    """Suspension and silence records.

    The partial unique index allows at most one active record per
    (account, kind). A second insert racing past the engine's read check
    fails with IntegrityError instead of silently overwriting.
    """

    async def _create_tables(self, db: aiosqlite.Connection) -> None:
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS penalties (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              kind TEXT NOT NULL CHECK (kind IN ('suspension', 'silence')),
              account_id INTEGER NOT NULL,
              actor_id INTEGER NOT NULL,
              reason TEXT NOT NULL,
              message TEXT,
              created_at TEXT NOT NULL,
              expires_at TEXT,
              active INTEGER NOT NULL DEFAULT 1
            )
            """
        )
        await db.execute(
            "CREATE UNIQUE INDEX IF NOT EXISTS uq_penalties_active ON penalties(account_id, kind) WHERE active = 1"
        )

    def _from_row(self, row: aiosqlite.Row) -> PenaltyRecord:
        return PenaltyRecord(
            id=int(row["id"]),
            kind=row["kind"],
            account_id=int(row["account_id"]),
            acting_operator_id=int(row["actor_id"]),
            reason=str(row["reason"]),
            message=row["message"],
            created_at=from_iso(row["created_at"]),
            expires_at=from_iso(row["expires_at"]),
            active=bool(row["active"]),
        )

    @property
    def _get_query(self) -> str:
        return f"SELECT {_PENALTY_COLUMNS} FROM penalties WHERE id = ?"

    async def retire_expired(self, db: aiosqlite.Connection, account_id: int, kind: PenaltyKind, now: datetime) -> int:
        cur = await db.execute(
            """
            UPDATE penalties SET active = 0
            WHERE account_id = ? AND kind = ? AND active = 1
              AND expires_at IS NOT NULL AND expires_at <= ?
            """,
            (int(account_id), kind, to_iso(now)),
        )
        return int(cur.rowcount)

    async def active(self, db: aiosqlite.Connection, account_id: int, kind: PenaltyKind) -> Optional[PenaltyRecord]:
        async with db.execute(
            f"SELECT {_PENALTY_COLUMNS} FROM penalties WHERE account_id = ? AND kind = ? AND active = 1",
            (int(account_id), kind),
        ) as cur:
            row = await cur.fetchone()
        return self._from_row(row) if row is not None else None

    async def open(
        self,
        db: aiosqlite.Connection,
        *,
        kind: PenaltyKind,
        account_id: int,
        actor_id: int,
        reason: str,
        message: Optional[str],
        created_at: datetime,
        expires_at: Optional[datetime],
    ) -> int:
        """Insert an active record. Raises aiosqlite.IntegrityError if one is already active."""
        cur = await db.execute(
            """
            INSERT INTO penalties (kind, account_id, actor_id, reason, message, created_at, expires_at, active)
            VALUES (?, ?, ?, ?, ?, ?, ?, 1)
            """,
            (kind, int(account_id), int(actor_id), reason, message, to_iso(created_at), to_iso(expires_at)),
        )
        return int(cur.lastrowid)

    async def close(self, db: aiosqlite.Connection, account_id: int, kind: PenaltyKind) -> int:
        cur = await db.execute(
            "UPDATE penalties SET active = 0 WHERE account_id = ? AND kind = ? AND active = 1",
            (int(account_id), kind),
        )
        return int(cur.rowcount)

    async def history(self, db: aiosqlite.Connection, account_id: int) -> list[PenaltyRecord]:
        return await self._fetchall(
            db,
            f"SELECT {_PENALTY_COLUMNS} FROM penalties WHERE account_id = ? ORDER BY id",
            (int(account_id),),
        )

    async def delete_for_account(self, db: aiosqlite.Connection, account_id: int) -> int:
        cur = await db.execute("DELETE FROM penalties WHERE account_id = ?", (int(account_id),))
        return int(cur.rowcount)
