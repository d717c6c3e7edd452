from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, List, Optional, Sequence

import aiosqlite

# Author: Daniel Neugent

# Rows visible to a listing: anything in the requested scope, plus the
# owner's personal rows. A personal request is owner-only, so the first
# disjunct never matches personal rows.
_VISIBLE = """
    ((scope = ? AND scope != 'personal') OR (scope = 'personal' AND owner = ?))
"""

_PHOTO_COLUMNS = """
    id, owner, scope, date, orig_filename, storage_path, thumb_path,
    meta_path, created_at
"""


@dataclass
class PhotoRecord:
    id: str
    owner: str
    scope: str
    date: str
    orig_filename: str
    storage_path: str
    thumb_path: Optional[str]
    meta_path: str
    created_at: str


@dataclass
class CredentialRecord:
    username: str
    pass_hash: str


class Database:
    """aiosqlite-backed store for photo records and login credentials.

    Every operation opens its own connection, so concurrent requests never
    share a handle.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[aiosqlite.Connection]:
        async with aiosqlite.connect(self.db_path) as conn:
            conn.row_factory = aiosqlite.Row
            await conn.execute("PRAGMA busy_timeout = 5000;")
            yield conn

    async def initialize(self) -> None:
        """Create the database directory and the users/photos tables."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        async with self._connection() as conn:
            await conn.execute("PRAGMA journal_mode=WAL;")
            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    username TEXT PRIMARY KEY,
                    pass_hash TEXT NOT NULL
                )
                """
            )
            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS photos (
                    id TEXT PRIMARY KEY,
                    owner TEXT NOT NULL DEFAULT '',
                    scope TEXT NOT NULL CHECK (scope IN ('personal', 'shared')),
                    date TEXT NOT NULL,
                    orig_filename TEXT NOT NULL,
                    storage_path TEXT NOT NULL UNIQUE,
                    thumb_path TEXT,
                    meta_path TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            await conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_photos_date ON photos(date)"
            )
            await conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_photos_scope_owner ON photos(scope, owner)"
            )
            await conn.commit()

    async def fetch_one(
        self, query: str, params: Sequence[Any]
    ) -> Optional[aiosqlite.Row]:
        """Execute a single-row SELECT statement with given parameters."""
        async with self._connection() as conn:
            cursor = await conn.execute(query, params)
            row = await cursor.fetchone()
            await cursor.close()
            return row

    async def fetch_all(self, query: str, params: Sequence[Any]) -> List[aiosqlite.Row]:
        """Execute a SELECT statement and return every row."""
        async with self._connection() as conn:
            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return list(rows)

    async def fetch_credential(self, username: str) -> Optional[CredentialRecord]:
        """Find the stored password hash for a username."""
        row = await self.fetch_one(
            "SELECT username, pass_hash FROM users WHERE username = ? LIMIT 1",
            (username,),
        )
        return CredentialRecord(**row) if row else None

    async def upsert_credential(self, username: str, pass_hash: str) -> None:
        """Create a user or replace their password hash."""
        async with self._connection() as conn:
            await conn.execute(
                "INSERT OR REPLACE INTO users (username, pass_hash) VALUES (?, ?)",
                (username, pass_hash),
            )
            await conn.commit()

    async def insert_photo(self, record: PhotoRecord) -> None:
        """Insert one photo row; any failure (duplicate id included) raises."""
        async with self._connection() as conn:
            await conn.execute(
                f"""
                INSERT INTO photos ({_PHOTO_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.owner,
                    record.scope,
                    record.date,
                    record.orig_filename,
                    record.storage_path,
                    record.thumb_path,
                    record.meta_path,
                    record.created_at,
                ),
            )
            await conn.commit()

    async def delete_photo(self, photo_id: str) -> bool:
        """Remove the row for photo_id; returns False when nothing matched."""
        async with self._connection() as conn:
            cursor = await conn.execute("DELETE FROM photos WHERE id = ?", (photo_id,))
            await conn.commit()
            deleted = cursor.rowcount > 0
            await cursor.close()
        return deleted

    async def fetch_photo(self, photo_id: str) -> Optional[PhotoRecord]:
        """Retrieve a photo record directly from its primary key."""
        row = await self.fetch_one(
            f"SELECT {_PHOTO_COLUMNS} FROM photos WHERE id = ? LIMIT 1",
            (photo_id,),
        )
        return PhotoRecord(**row) if row else None

    async def list_dates(
        self, scope: str, owner: str, offset: int, limit: int
    ) -> List[str]:
        """Distinct dates visible to (scope, owner), newest first, paginated."""
        rows = await self.fetch_all(
            f"""
            SELECT DISTINCT date FROM photos
            WHERE {_VISIBLE}
            ORDER BY date DESC
            LIMIT ? OFFSET ?
            """,
            (scope, owner, limit, offset),
        )
        return [row["date"] for row in rows]

    async def list_photos_for_date(
        self, date: str, scope: str, owner: str
    ) -> List[PhotoRecord]:
        """Photos of one date visible to (scope, owner), newest first."""
        rows = await self.fetch_all(
            f"""
            SELECT {_PHOTO_COLUMNS} FROM photos
            WHERE date = ? AND {_VISIBLE}
            ORDER BY created_at DESC, rowid DESC
            """,
            (date, scope, owner),
        )
        return [PhotoRecord(**row) for row in rows]
