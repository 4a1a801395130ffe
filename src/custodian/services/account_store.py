from __future__ import annotations

import secrets
from datetime import datetime
from typing import Any, Optional

import aiosqlite

from ..models import Account, EmailToken
from ..utils import from_iso, hash_token, to_iso
from .base import BaseService

_ACCOUNT_COLUMNS = (
    "id, username, email, name, bio, website, ip_address, registration_ip, admin, moderator, "
    "trust_level, manual_locked_trust_level, active, approved, approved_by_id, approved_at, "
    "anonymized, merged_into_id, primary_group_id, suspended_at, suspended_till, "
    "silenced_at, silenced_till, created_at"
)

# Columns an update may touch; id and created_at are fixed at creation.
_UPDATABLE = {
    "username",
    "email",
    "name",
    "bio",
    "website",
    "ip_address",
    "registration_ip",
    "admin",
    "moderator",
    "trust_level",
    "manual_locked_trust_level",
    "active",
    "approved",
    "approved_by_id",
    "approved_at",
    "anonymized",
    "merged_into_id",
    "primary_group_id",
    "suspended_at",
    "suspended_till",
    "silenced_at",
    "silenced_till",
}


def _to_db(value: Any) -> Any:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, datetime):
        return to_iso(value)
    return value


class AccountStore(BaseService[Account]):
    """Accounts plus the credential, session, token, stats and SSO rows hanging off them."""

    async def _create_tables(self, db: aiosqlite.Connection) -> None:
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS accounts (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              username TEXT NOT NULL COLLATE NOCASE UNIQUE,
              email TEXT NOT NULL,
              name TEXT,
              bio TEXT,
              website TEXT,
              ip_address TEXT,
              registration_ip TEXT,
              admin INTEGER NOT NULL DEFAULT 0,
              moderator INTEGER NOT NULL DEFAULT 0,
              trust_level INTEGER NOT NULL DEFAULT 0,
              manual_locked_trust_level INTEGER,
              active INTEGER NOT NULL DEFAULT 0,
              approved INTEGER NOT NULL DEFAULT 0,
              approved_by_id INTEGER,
              approved_at TEXT,
              anonymized INTEGER NOT NULL DEFAULT 0,
              merged_into_id INTEGER,
              primary_group_id INTEGER,
              suspended_at TEXT,
              suspended_till TEXT,
              silenced_at TEXT,
              silenced_till TEXT,
              created_at TEXT NOT NULL
            )
            """
        )
        await db.execute("CREATE INDEX IF NOT EXISTS idx_accounts_ip ON accounts(ip_address)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_accounts_reg_ip ON accounts(registration_ip)")
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS user_second_factors (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              account_id INTEGER NOT NULL,
              name TEXT NOT NULL,
              created_at TEXT NOT NULL
            )
            """
        )
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS user_security_keys (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              account_id INTEGER NOT NULL,
              credential_id TEXT NOT NULL,
              created_at TEXT NOT NULL
            )
            """
        )
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS user_auth_tokens (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              account_id INTEGER NOT NULL,
              token_hash TEXT NOT NULL UNIQUE,
              created_at TEXT NOT NULL
            )
            """
        )
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS email_tokens (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              account_id INTEGER NOT NULL,
              email TEXT NOT NULL,
              token TEXT NOT NULL UNIQUE,
              confirmed INTEGER NOT NULL DEFAULT 0,
              expired INTEGER NOT NULL DEFAULT 0,
              created_at TEXT NOT NULL
            )
            """
        )
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS user_stats (
              account_id INTEGER PRIMARY KEY,
              bounce_score REAL NOT NULL DEFAULT 0,
              reset_bounce_score_after TEXT
            )
            """
        )
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS sso_records (
              account_id INTEGER PRIMARY KEY,
              external_id TEXT NOT NULL,
              created_at TEXT NOT NULL
            )
            """
        )
        for table in ("user_second_factors", "user_security_keys", "user_auth_tokens", "email_tokens"):
            await db.execute(f"CREATE INDEX IF NOT EXISTS idx_{table}_account ON {table}(account_id)")

    def _from_row(self, row: aiosqlite.Row) -> Account:
        return Account(
            id=int(row["id"]),
            username=str(row["username"]),
            email=str(row["email"]),
            name=row["name"],
            bio=row["bio"],
            website=row["website"],
            ip_address=row["ip_address"],
            registration_ip=row["registration_ip"],
            admin=bool(row["admin"]),
            moderator=bool(row["moderator"]),
            trust_level=int(row["trust_level"]),
            manual_locked_trust_level=(
                int(row["manual_locked_trust_level"]) if row["manual_locked_trust_level"] is not None else None
            ),
            active=bool(row["active"]),
            approved=bool(row["approved"]),
            approved_by_id=row["approved_by_id"],
            approved_at=from_iso(row["approved_at"]),
            anonymized=bool(row["anonymized"]),
            merged_into_id=row["merged_into_id"],
            primary_group_id=row["primary_group_id"],
            suspended_at=from_iso(row["suspended_at"]),
            suspended_till=from_iso(row["suspended_till"]),
            silenced_at=from_iso(row["silenced_at"]),
            silenced_till=from_iso(row["silenced_till"]),
            created_at=from_iso(row["created_at"]),
        )

    @property
    def _get_query(self) -> str:
        return f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE id = ?"

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def create(self, db: aiosqlite.Connection, *, username: str, email: str, created_at: datetime, **fields: Any) -> Account:
        unknown = set(fields) - _UPDATABLE
        if unknown:
            raise ValueError(f"Unknown account fields: {sorted(unknown)}")
        columns = ["username", "email", "created_at", *fields.keys()]
        values = [username, email, to_iso(created_at), *(_to_db(v) for v in fields.values())]
        placeholders = ", ".join("?" for _ in columns)
        cur = await db.execute(
            f"INSERT INTO accounts ({', '.join(columns)}) VALUES ({placeholders})",
            tuple(values),
        )
        account = await self.get(db, int(cur.lastrowid))
        assert account is not None
        return account

    async def find_by_username(self, db: aiosqlite.Connection, username: str) -> Optional[Account]:
        async with db.execute(
            f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE username = ? COLLATE NOCASE",
            (str(username).strip(),),
        ) as cur:
            row = await cur.fetchone()
        return self._from_row(row) if row is not None else None

    async def update(self, db: aiosqlite.Connection, account_id: int, **fields: Any) -> int:
        if not fields:
            return 0
        unknown = set(fields) - _UPDATABLE
        if unknown:
            raise ValueError(f"Unknown account fields: {sorted(unknown)}")
        assignments = ", ".join(f"{col} = ?" for col in fields)
        cur = await db.execute(
            f"UPDATE accounts SET {assignments} WHERE id = ?",
            (*(_to_db(v) for v in fields.values()), int(account_id)),
        )
        return int(cur.rowcount)

    async def lock_trust_level_if_unlocked(self, db: aiosqlite.Connection, account_id: int, level: int) -> bool:
        cur = await db.execute(
            "UPDATE accounts SET manual_locked_trust_level = ? WHERE id = ? AND manual_locked_trust_level IS NULL",
            (int(level), int(account_id)),
        )
        return cur.rowcount > 0

    async def delete(self, db: aiosqlite.Connection, account_id: int) -> int:
        cur = await db.execute("DELETE FROM accounts WHERE id = ?", (int(account_id),))
        return int(cur.rowcount)

    # ------------------------------------------------------------------
    # Same-IP lookups
    # ------------------------------------------------------------------

    async def ids_with_ip(
        self,
        db: aiosqlite.Connection,
        ip: str,
        *,
        exclude_id: Optional[int],
        order_by: str,
        limit: int,
    ) -> list[int]:
        # order_by comes from a fixed whitelist (SAME_IP_ORDERS)
        async with db.execute(
            f"""
            SELECT id FROM accounts
            WHERE (ip_address = ? OR registration_ip = ?) AND id != ? AND admin = 0 AND moderator = 0
            ORDER BY {order_by}
            LIMIT ?
            """,
            (ip, ip, int(exclude_id or 0), int(limit)),
        ) as cur:
            rows = await cur.fetchall()
        return [int(r["id"]) for r in rows]

    async def count_with_ip(self, db: aiosqlite.Connection, ip: str, *, exclude_id: Optional[int]) -> int:
        count = await self._scalar(
            db,
            """
            SELECT COUNT(*) FROM accounts
            WHERE (ip_address = ? OR registration_ip = ?) AND id != ? AND admin = 0 AND moderator = 0
            """,
            (ip, ip, int(exclude_id or 0)),
        )
        return int(count or 0)

    # ------------------------------------------------------------------
    # Second factor credentials
    # ------------------------------------------------------------------

    async def add_second_factor(self, db: aiosqlite.Connection, account_id: int, name: str, created_at: datetime) -> int:
        cur = await db.execute(
            "INSERT INTO user_second_factors (account_id, name, created_at) VALUES (?, ?, ?)",
            (int(account_id), name, to_iso(created_at)),
        )
        return int(cur.lastrowid)

    async def add_security_key(self, db: aiosqlite.Connection, account_id: int, credential_id: str, created_at: datetime) -> int:
        cur = await db.execute(
            "INSERT INTO user_security_keys (account_id, credential_id, created_at) VALUES (?, ?, ?)",
            (int(account_id), credential_id, to_iso(created_at)),
        )
        return int(cur.lastrowid)

    async def count_second_factors(self, db: aiosqlite.Connection, account_id: int) -> int:
        return int(await self._scalar(db, "SELECT COUNT(*) FROM user_second_factors WHERE account_id = ?", (int(account_id),)) or 0)

    async def count_security_keys(self, db: aiosqlite.Connection, account_id: int) -> int:
        return int(await self._scalar(db, "SELECT COUNT(*) FROM user_security_keys WHERE account_id = ?", (int(account_id),)) or 0)

    async def destroy_second_factors(self, db: aiosqlite.Connection, account_id: int) -> int:
        cur = await db.execute("DELETE FROM user_second_factors WHERE account_id = ?", (int(account_id),))
        return int(cur.rowcount)

    async def destroy_security_keys(self, db: aiosqlite.Connection, account_id: int) -> int:
        cur = await db.execute("DELETE FROM user_security_keys WHERE account_id = ?", (int(account_id),))
        return int(cur.rowcount)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def add_auth_token(self, db: aiosqlite.Connection, account_id: int, created_at: datetime) -> str:
        """Issue a session token. Only its hash is stored."""
        raw = secrets.token_urlsafe(32)
        await db.execute(
            "INSERT INTO user_auth_tokens (account_id, token_hash, created_at) VALUES (?, ?, ?)",
            (int(account_id), hash_token(raw), to_iso(created_at)),
        )
        return raw

    async def count_auth_tokens(self, db: aiosqlite.Connection, account_id: int) -> int:
        return int(await self._scalar(db, "SELECT COUNT(*) FROM user_auth_tokens WHERE account_id = ?", (int(account_id),)) or 0)

    async def destroy_auth_tokens(self, db: aiosqlite.Connection, account_id: int) -> int:
        cur = await db.execute("DELETE FROM user_auth_tokens WHERE account_id = ?", (int(account_id),))
        return int(cur.rowcount)

    # ------------------------------------------------------------------
    # Email tokens
    # ------------------------------------------------------------------

    @staticmethod
    def _token_from_row(row: aiosqlite.Row) -> EmailToken:
        return EmailToken(
            id=int(row["id"]),
            account_id=int(row["account_id"]),
            email=str(row["email"]),
            token=str(row["token"]),
            created_at=from_iso(row["created_at"]),
            confirmed=bool(row["confirmed"]),
            expired=bool(row["expired"]),
        )

    async def active_email_token(
        self, db: aiosqlite.Connection, account_id: int, email: str, *, valid_since: datetime
    ) -> Optional[EmailToken]:
        async with db.execute(
            """
            SELECT id, account_id, email, token, confirmed, expired, created_at
            FROM email_tokens
            WHERE account_id = ? AND email = ? AND confirmed = 0 AND expired = 0 AND created_at > ?
            ORDER BY id DESC
            LIMIT 1
            """,
            (int(account_id), email, to_iso(valid_since)),
        ) as cur:
            row = await cur.fetchone()
        return self._token_from_row(row) if row is not None else None

    async def create_email_token(self, db: aiosqlite.Connection, account_id: int, email: str, created_at: datetime) -> EmailToken:
        token = secrets.token_hex(16)
        cur = await db.execute(
            "INSERT INTO email_tokens (account_id, email, token, created_at) VALUES (?, ?, ?, ?)",
            (int(account_id), email, token, to_iso(created_at)),
        )
        return EmailToken(
            id=int(cur.lastrowid),
            account_id=int(account_id),
            email=email,
            token=token,
            created_at=created_at,
            confirmed=False,
            expired=False,
        )

    async def confirm_email_token(self, db: aiosqlite.Connection, token_id: int) -> None:
        await db.execute("UPDATE email_tokens SET confirmed = 1 WHERE id = ?", (int(token_id),))

    async def list_email_tokens(self, db: aiosqlite.Connection, account_id: int) -> list[EmailToken]:
        async with db.execute(
            "SELECT id, account_id, email, token, confirmed, expired, created_at FROM email_tokens WHERE account_id = ? ORDER BY id",
            (int(account_id),),
        ) as cur:
            rows = await cur.fetchall()
        return [self._token_from_row(r) for r in rows]

    async def delete_email_tokens(self, db: aiosqlite.Connection, account_id: int) -> int:
        cur = await db.execute("DELETE FROM email_tokens WHERE account_id = ?", (int(account_id),))
        return int(cur.rowcount)

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    async def set_bounce_score(self, db: aiosqlite.Connection, account_id: int, score: float) -> None:
        await db.execute(
            """
            INSERT INTO user_stats (account_id, bounce_score) VALUES (?, ?)
            ON CONFLICT(account_id) DO UPDATE SET bounce_score = excluded.bounce_score
            """,
            (int(account_id), float(score)),
        )

    async def bounce_score(self, db: aiosqlite.Connection, account_id: int) -> Optional[float]:
        score = await self._scalar(db, "SELECT bounce_score FROM user_stats WHERE account_id = ?", (int(account_id),))
        return float(score) if score is not None else None

    async def reset_bounce_score(self, db: aiosqlite.Connection, account_id: int) -> bool:
        cur = await db.execute(
            "UPDATE user_stats SET bounce_score = 0, reset_bounce_score_after = NULL WHERE account_id = ?",
            (int(account_id),),
        )
        return cur.rowcount > 0

    # ------------------------------------------------------------------
    # Single sign-on
    # ------------------------------------------------------------------

    async def add_sso_record(self, db: aiosqlite.Connection, account_id: int, external_id: str, created_at: datetime) -> None:
        await db.execute(
            "INSERT INTO sso_records (account_id, external_id, created_at) VALUES (?, ?, ?)",
            (int(account_id), external_id, to_iso(created_at)),
        )

    async def has_sso_record(self, db: aiosqlite.Connection, account_id: int) -> bool:
        return await self._scalar(db, "SELECT 1 FROM sso_records WHERE account_id = ?", (int(account_id),)) is not None

    async def delete_sso_record(self, db: aiosqlite.Connection, account_id: int) -> int:
        cur = await db.execute("DELETE FROM sso_records WHERE account_id = ?", (int(account_id),))
        return int(cur.rowcount)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def purge_related(self, db: aiosqlite.Connection, account_id: int) -> dict[str, int]:
        """Delete every row hanging off an account, leaving the account row itself."""
        removed: dict[str, int] = {}
        for table in ("user_second_factors", "user_security_keys", "user_auth_tokens", "email_tokens", "user_stats", "sso_records"):
            cur = await db.execute(f"DELETE FROM {table} WHERE account_id = ?", (int(account_id),))
            removed[table] = int(cur.rowcount)
        return removed
