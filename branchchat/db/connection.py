"""Async SQLite connection wrapper with WAL mode and schema initialization."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import aiosqlite

from branchchat.db.schema import SCHEMA_SQL


class Database:
    """Thin async wrapper around aiosqlite with WAL mode and auto-schema.

    Statements auto-commit unless they run inside `transaction()`, which
    commits once at the end or rolls everything back on error.
    """

    def __init__(self, connection: aiosqlite.Connection) -> None:
        self._conn = connection
        self._in_transaction = False

    @classmethod
    async def connect(cls, path: str = "branchchat.db") -> "Database":
        """Create a connection with WAL mode, foreign keys, and schema init."""
        conn = await aiosqlite.connect(path)
        conn.row_factory = aiosqlite.Row
        await conn.execute("PRAGMA journal_mode=WAL")
        await conn.execute("PRAGMA foreign_keys=ON")
        await conn.execute("PRAGMA busy_timeout=5000")
        db = cls(conn)
        await db._ensure_schema()
        return db

    async def _ensure_schema(self) -> None:
        """Create tables if they don't exist. Idempotent."""
        await self._conn.executescript(SCHEMA_SQL)
        await self._conn.commit()

    async def execute(self, sql: str, params: tuple | None = None) -> aiosqlite.Cursor:
        """Execute a single SQL statement."""
        cursor = await self._conn.execute(sql, params or ())
        if not self._in_transaction:
            await self._conn.commit()
        return cursor

    async def fetchone(self, sql: str, params: tuple | None = None) -> aiosqlite.Row | None:
        """Execute and return a single row. The cursor is closed so no read stays open."""
        async with self._conn.execute(sql, params or ()) as cursor:
            return await cursor.fetchone()

    async def fetchall(self, sql: str, params: tuple | None = None) -> list[aiosqlite.Row]:
        """Execute and return all rows."""
        cursor = await self._conn.execute(sql, params or ())
        return list(await cursor.fetchall())

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """Group several statements into one atomic write."""
        if self._in_transaction:
            raise RuntimeError("Nested transactions are not supported")
        self._in_transaction = True
        try:
            yield
        except BaseException:
            await self._conn.rollback()
            raise
        else:
            await self._conn.commit()
        finally:
            self._in_transaction = False

    async def close(self) -> None:
        """Close the database connection."""
        await self._conn.close()
