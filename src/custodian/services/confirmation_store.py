from __future__ import annotations

import secrets
from datetime import datetime
from typing import Optional

import aiosqlite

from ..models import AdminConfirmation
from ..utils import from_iso, hash_token, to_iso
from .base import BaseService


class AdminConfirmationStore(BaseService[AdminConfirmation]):
    """Pending admin grants awaiting out-of-band confirmation.

    One pending confirmation per account; requesting again replaces it.
    Lookups take the raw token and match on its hash.
    """

    async def _create_tables(self, db: aiosqlite.Connection) -> None:
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS admin_confirmations (
              token_hash TEXT PRIMARY KEY,
              account_id INTEGER NOT NULL UNIQUE,
              requested_by_id INTEGER NOT NULL,
              created_at TEXT NOT NULL,
              expires_at TEXT NOT NULL
            )
            """
        )

    def _from_row(self, row: aiosqlite.Row) -> AdminConfirmation:
        return AdminConfirmation(
            token_hash=str(row["token_hash"]),
            account_id=int(row["account_id"]),
            requested_by_id=int(row["requested_by_id"]),
            created_at=from_iso(row["created_at"]),
            expires_at=from_iso(row["expires_at"]),
        )

    @property
    def _get_query(self) -> str:
        return (
            "SELECT token_hash, account_id, requested_by_id, created_at, expires_at "
            "FROM admin_confirmations WHERE token_hash = ?"
        )

    async def get(self, db: aiosqlite.Connection, token: str) -> Optional[AdminConfirmation]:
        return await super().get(db, hash_token(str(token)))

    async def create(
        self,
        db: aiosqlite.Connection,
        account_id: int,
        requested_by_id: int,
        now: datetime,
        expires_at: datetime,
    ) -> AdminConfirmation:
        await db.execute("DELETE FROM admin_confirmations WHERE account_id = ?", (int(account_id),))
        token = secrets.token_urlsafe(24)
        token_hash = hash_token(token)
        await db.execute(
            """
            INSERT INTO admin_confirmations (token_hash, account_id, requested_by_id, created_at, expires_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (token_hash, int(account_id), int(requested_by_id), to_iso(now), to_iso(expires_at)),
        )
        return AdminConfirmation(
            token_hash=token_hash,
            account_id=int(account_id),
            requested_by_id=int(requested_by_id),
            created_at=now,
            expires_at=expires_at,
            token=token,
        )

    async def delete(self, db: aiosqlite.Connection, token: str) -> int:
        cur = await db.execute("DELETE FROM admin_confirmations WHERE token_hash = ?", (hash_token(str(token)),))
        return int(cur.rowcount)

    async def delete_for_account(self, db: aiosqlite.Connection, account_id: int) -> int:
        cur = await db.execute("DELETE FROM admin_confirmations WHERE account_id = ?", (int(account_id),))
        return int(cur.rowcount)
