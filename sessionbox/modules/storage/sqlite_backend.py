"""
SQLite persistence backend.

One row per session: the token, its expiry as a UNIX timestamp, and the JSON
record. Saves are single-statement upserts so a record is always written whole.
"""

import json
import logging
from pathlib import Path
from typing import Optional

import aiosqlite

from ..errors import BackendError
from ..session.record import SessionRecord, utcnow

logger = logging.getLogger(__name__)


class SqliteBackend:
    """Session persistence in a local SQLite database."""

    def __init__(self, db_path: str = "sessions.db", table_name: str = "sessions"):
        self.db_path = db_path
        self.table_name = table_name
        self._db: Optional[aiosqlite.Connection] = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise BackendError("connect", "SQLite backend not initiated. Call initiate() first.")
        return self._db

    async def initiate(self) -> None:
        """Open the database and ensure the table exists."""
        try:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self._db = await aiosqlite.connect(self.db_path)
            await self._db.execute("PRAGMA journal_mode=WAL")
            await self._db.execute(
                f"""CREATE TABLE IF NOT EXISTS {self.table_name} (
                    id       TEXT PRIMARY KEY NOT NULL,
                    expires  REAL NOT NULL,
                    session  TEXT NOT NULL
                )"""
            )
            await self._db.execute(
                f"CREATE INDEX IF NOT EXISTS idx_{self.table_name}_expires "
                f"ON {self.table_name}(expires)"
            )
            await self._db.commit()
        except aiosqlite.Error as e:
            raise BackendError("connect", str(e), e) from e
        logger.info(f"SQLite session backend opened: {self.db_path}")

    async def load(self, token: str) -> Optional[SessionRecord]:
        try:
            cursor = await self.db.execute(
                f"SELECT session FROM {self.table_name} WHERE id = ? AND expires > ?",
                (token, utcnow().timestamp()),
            )
            row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise BackendError("load", str(e), e) from e

        if row is None:
            return None

        try:
            return SessionRecord.from_dict(json.loads(row[0]))
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise BackendError("load", f"corrupt session payload for {token}", e) from e

    async def save(self, record: SessionRecord) -> None:
        try:
            await self.db.execute(
                f"""INSERT INTO {self.table_name} (id, expires, session)
                    VALUES (?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        expires = excluded.expires,
                        session = excluded.session""",
                (record.token, record.expires.timestamp(), json.dumps(record.to_dict())),
            )
            await self.db.commit()
        except aiosqlite.Error as e:
            raise BackendError("save", str(e), e) from e

    async def delete(self, token: str) -> None:
        try:
            await self.db.execute(f"DELETE FROM {self.table_name} WHERE id = ?", (token,))
            await self.db.commit()
        except aiosqlite.Error as e:
            raise BackendError("delete", str(e), e) from e

    async def delete_all(self) -> None:
        try:
            await self.db.execute(f"DELETE FROM {self.table_name}")
            await self.db.commit()
        except aiosqlite.Error as e:
            raise BackendError("delete_all", str(e), e) from e

    async def delete_expired(self) -> int:
        try:
            cursor = await self.db.execute(
                f"DELETE FROM {self.table_name} WHERE expires <= ?",
                (utcnow().timestamp(),),
            )
            await self.db.commit()
            return cursor.rowcount
        except aiosqlite.Error as e:
            raise BackendError("delete_expired", str(e), e) from e

    async def count(self) -> int:
        try:
            cursor = await self.db.execute(
                f"SELECT COUNT(*) FROM {self.table_name} WHERE expires > ?",
                (utcnow().timestamp(),),
            )
            row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise BackendError("count", str(e), e) from e
        return int(row[0])

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None
