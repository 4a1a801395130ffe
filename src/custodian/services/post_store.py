from __future__ import annotations

from datetime import datetime
from typing import Optional

import aiosqlite

from ..models import Post
from ..utils import from_iso, to_iso
from .base import BaseService

_POST_COLUMNS = "id, author_id, reply_to_post_id, raw, created_at, deleted_at, deleted_by_id"


class PostStore(BaseService[Post]):
    async def _create_tables(self, db: aiosqlite.Connection) -> None:
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS posts (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              author_id INTEGER NOT NULL,
              reply_to_post_id INTEGER,
              raw TEXT NOT NULL,
              created_at TEXT NOT NULL,
              updated_at TEXT,
              deleted_at TEXT,
              deleted_by_id INTEGER
            )
            """
        )
        await db.execute("CREATE INDEX IF NOT EXISTS idx_posts_author ON posts(author_id, deleted_at)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_posts_reply_to ON posts(reply_to_post_id)")

    def _from_row(self, row: aiosqlite.Row) -> Post:
        return Post(
            id=int(row["id"]),
            author_id=int(row["author_id"]),
            raw=str(row["raw"]),
            created_at=from_iso(row["created_at"]),
            reply_to_post_id=row["reply_to_post_id"],
            deleted_at=from_iso(row["deleted_at"]),
            deleted_by_id=row["deleted_by_id"],
        )

    @property
    def _get_query(self) -> str:
        return f"SELECT {_POST_COLUMNS} FROM posts WHERE id = ?"

    async def create(
        self,
        db: aiosqlite.Connection,
        author_id: int,
        raw: str,
        created_at: datetime,
        *,
        reply_to_post_id: Optional[int] = None,
    ) -> Post:
        cur = await db.execute(
            "INSERT INTO posts (author_id, reply_to_post_id, raw, created_at) VALUES (?, ?, ?, ?)",
            (int(author_id), reply_to_post_id, raw, to_iso(created_at)),
        )
        post = await self.get(db, int(cur.lastrowid))
        assert post is not None
        return post

    async def count_live_by_author(self, db: aiosqlite.Connection, author_id: int) -> int:
        count = await self._scalar(
            db,
            "SELECT COUNT(*) FROM posts WHERE author_id = ? AND deleted_at IS NULL",
            (int(author_id),),
        )
        return int(count or 0)

    async def live_by_author(self, db: aiosqlite.Connection, author_id: int, limit: int) -> list[Post]:
        return await self._fetchall(
            db,
            f"SELECT {_POST_COLUMNS} FROM posts WHERE author_id = ? AND deleted_at IS NULL ORDER BY id LIMIT ?",
            (int(author_id), int(limit)),
        )

    async def live_replies_to(self, db: aiosqlite.Connection, post_id: int) -> list[Post]:
        return await self._fetchall(
            db,
            f"SELECT {_POST_COLUMNS} FROM posts WHERE reply_to_post_id = ? AND deleted_at IS NULL ORDER BY id",
            (int(post_id),),
        )

    async def raw_by_author(self, db: aiosqlite.Connection, author_id: int) -> list[str]:
        async with db.execute("SELECT raw FROM posts WHERE author_id = ?", (int(author_id),)) as cur:
            rows = await cur.fetchall()
        return [str(r["raw"]) for r in rows]

    async def soft_delete(self, db: aiosqlite.Connection, post_id: int, deleted_by_id: int, now: datetime) -> bool:
        cur = await db.execute(
            "UPDATE posts SET deleted_at = ?, deleted_by_id = ? WHERE id = ? AND deleted_at IS NULL",
            (to_iso(now), int(deleted_by_id), int(post_id)),
        )
        return cur.rowcount > 0

    async def revise(self, db: aiosqlite.Connection, post_id: int, raw: str, now: datetime) -> bool:
        cur = await db.execute(
            "UPDATE posts SET raw = ?, updated_at = ? WHERE id = ?",
            (raw, to_iso(now), int(post_id)),
        )
        return cur.rowcount > 0

    async def reassign_author(self, db: aiosqlite.Connection, source_id: int, target_id: int) -> int:
        cur = await db.execute(
            "UPDATE posts SET author_id = ? WHERE author_id = ?",
            (int(target_id), int(source_id)),
        )
        return int(cur.rowcount)

    async def delete_by_author(self, db: aiosqlite.Connection, author_id: int) -> int:
        cur = await db.execute("DELETE FROM posts WHERE author_id = ?", (int(author_id),))
        return int(cur.rowcount)
