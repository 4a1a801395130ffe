from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Optional

import aiosqlite

from ..constants import AUDIT_KINDS, PENALTY_RETAG
from ..models import AuditRecord
from ..utils import from_iso, to_iso
from .base import BaseService

_AUDIT_COLUMNS = "id, kind, actor_id, target_account_id, post_id, context, created_at, details_json"


class AuditLogger(BaseService[AuditRecord]):
    """Append-only staff action history.

    ``record`` writes through the caller's transaction connection, so an audit
    row exists exactly when the state change it describes was committed.
    """

    async def _create_tables(self, db: aiosqlite.Connection) -> None:
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS audit_log (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              kind TEXT NOT NULL,
              actor_id INTEGER,
              target_account_id INTEGER,
              post_id INTEGER,
              context TEXT,
              created_at TEXT NOT NULL,
              details_json TEXT NOT NULL
            )
            """
        )
        await db.execute("CREATE INDEX IF NOT EXISTS idx_audit_target ON audit_log(target_account_id, kind)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_audit_actor ON audit_log(actor_id, id)")

    def _from_row(self, row: aiosqlite.Row) -> AuditRecord:
        return AuditRecord(
            id=int(row["id"]),
            kind=str(row["kind"]),
            actor_id=row["actor_id"],
            target_account_id=row["target_account_id"],
            created_at=from_iso(row["created_at"]),
            details=json.loads(row["details_json"] or "{}"),
            post_id=row["post_id"],
            context=row["context"],
        )

    @property
    def _get_query(self) -> str:
        return f"SELECT {_AUDIT_COLUMNS} FROM audit_log WHERE id = ?"

    async def record(
        self,
        db: aiosqlite.Connection,
        *,
        actor_id: Optional[int],
        target_id: Optional[int],
        kind: str,
        details: dict[str, Any],
        now: datetime,
        post_id: Optional[int] = None,
        context: Optional[str] = None,
    ) -> AuditRecord:
        if kind not in AUDIT_KINDS:
            raise ValueError(f"Unknown audit kind: {kind}")
        details_json = json.dumps(details, separators=(",", ":"), ensure_ascii=False, default=str)
        cur = await db.execute(
            """
            INSERT INTO audit_log (kind, actor_id, target_account_id, post_id, context, created_at, details_json)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (kind, actor_id, target_id, post_id, context, to_iso(now), details_json),
        )
        return AuditRecord(
            id=int(cur.lastrowid),
            kind=kind,
            actor_id=actor_id,
            target_account_id=target_id,
            created_at=now,
            details=dict(details),
            post_id=post_id,
            context=context,
        )

    async def list_for_account(self, db: aiosqlite.Connection, account_id: int, limit: int = 50) -> list[AuditRecord]:
        limit = max(1, min(500, int(limit)))
        return await self._fetchall(
            db,
            f"SELECT {_AUDIT_COLUMNS} FROM audit_log WHERE target_account_id = ? ORDER BY id DESC LIMIT ?",
            (int(account_id), limit),
        )

    async def retag_penalties(self, db: aiosqlite.Connection, account_id: int) -> int:
        """Move penalty kinds to their ``removed_*`` counterparts.

        Only the four live penalty kinds match the WHERE clause, so running
        this again never produces a doubly-prefixed kind.
        """
        cases = " ".join(f"WHEN '{old}' THEN '{new}'" for old, new in PENALTY_RETAG.items())
        placeholders = ", ".join("?" for _ in PENALTY_RETAG)
        cur = await db.execute(
            f"""
            UPDATE audit_log
            SET kind = CASE kind {cases} END
            WHERE target_account_id = ? AND kind IN ({placeholders})
            """,
            (int(account_id), *PENALTY_RETAG.keys()),
        )
        return int(cur.rowcount)

    async def penalty_counts(self, db: aiosqlite.Connection, account_id: int) -> dict[str, int]:
        """Live suspend/silence counts, the figures trust-level scoring consumes."""
        counts = {"suspend_user": 0, "silence_user": 0}
        async with db.execute(
            """
            SELECT kind, COUNT(*) AS n FROM audit_log
            WHERE target_account_id = ? AND kind IN ('suspend_user', 'silence_user')
            GROUP BY kind
            """,
            (int(account_id),),
        ) as cur:
            for row in await cur.fetchall():
                counts[str(row["kind"])] = int(row["n"])
        return counts
