"""
Database wrapper for Overwatch.

A thin layer over aiosqlite. Every statement runs under one lock so that
multi-statement transactions on the shared connection are never interleaved
with statements issued by other coroutines.
"""

import asyncio
import sqlite3
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, List, Optional, Sequence

import aiosqlite

from ..utils.errors import DatabaseError
from ..utils.logging import get_logger


logger = get_logger("overwatch.storage.database")


class Transaction:
    """Statement executor bound to an open transaction."""

    def __init__(self, connection: aiosqlite.Connection):
        self._connection = connection

    async def execute(self, sql: str, parameters: Sequence[Any] = ()) -> int:
        cursor = await self._connection.execute(sql, parameters)
        try:
            return cursor.rowcount
        finally:
            await cursor.close()

    async def fetchone(self, sql: str, parameters: Sequence[Any] = ()) -> Optional[aiosqlite.Row]:
        async with self._connection.execute(sql, parameters) as cursor:
            return await cursor.fetchone()

    async def fetchall(self, sql: str, parameters: Sequence[Any] = ()) -> List[aiosqlite.Row]:
        async with self._connection.execute(sql, parameters) as cursor:
            return list(await cursor.fetchall())


class Database:
    """Async SQLite database wrapper."""

    def __init__(
        self,
        db_path: Path | str,
        journal_mode: str = "WAL",
        synchronous: str = "NORMAL",
        busy_timeout_ms: int = 5000
    ):
        """
        Initialize database wrapper.

        Args:
            db_path: Path to the SQLite file, or ``:memory:``
            journal_mode: SQLite journal mode
            synchronous: SQLite synchronous setting
            busy_timeout_ms: How long SQLite waits on a locked database
        """
        self.db_path = Path(db_path)
        self.journal_mode = journal_mode
        self.synchronous = synchronous
        self.busy_timeout_ms = busy_timeout_ms
        self._connection: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    @property
    def is_memory(self) -> bool:
        return str(self.db_path) == ":memory:"

    @property
    def connection(self) -> Optional[aiosqlite.Connection]:
        return self._connection

    async def connect(self) -> None:
        """Open the database connection."""
        if self._connection is not None:
            return

        if not self.is_memory:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            self._connection = await aiosqlite.connect(
                str(self.db_path),
                isolation_level=None  # Autocommit; transactions are explicit
            )
            self._connection.row_factory = aiosqlite.Row
            await self._connection.execute("PRAGMA foreign_keys = ON")
            await self._connection.execute(f"PRAGMA journal_mode = {self.journal_mode}")
            await self._connection.execute(f"PRAGMA synchronous = {self.synchronous}")
            await self._connection.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_ms)}")
        except sqlite3.Error as e:
            self._connection = None
            raise DatabaseError(f"Failed to open database {self.db_path}: {e}", cause=e) from e

        logger.info("database_connected", path=str(self.db_path))

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None
            logger.info("database_closed", path=str(self.db_path))

    async def execute(self, sql: str, parameters: Sequence[Any] = ()) -> int:
        """
        Execute a single statement.

        Returns:
            Number of rows changed
        """
        async with self._lock:
            connection = await self._ensure_connection()
            cursor = await connection.execute(sql, parameters)
            try:
                return cursor.rowcount
            finally:
                await cursor.close()

    async def executescript(self, script: str) -> None:
        async with self._lock:
            connection = await self._ensure_connection()
            await connection.executescript(script)

    async def fetchone(self, sql: str, parameters: Sequence[Any] = ()) -> Optional[aiosqlite.Row]:
        async with self._lock:
            connection = await self._ensure_connection()
            async with connection.execute(sql, parameters) as cursor:
                return await cursor.fetchone()

    async def fetchall(self, sql: str, parameters: Sequence[Any] = ()) -> List[aiosqlite.Row]:
        async with self._lock:
            connection = await self._ensure_connection()
            async with connection.execute(sql, parameters) as cursor:
                return list(await cursor.fetchall())

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Transaction]:
        """
        Run statements atomically.

        The lock is held for the whole block; use the yielded Transaction for
        every statement inside it.
        """
        async with self._lock:
            connection = await self._ensure_connection()
            await connection.execute("BEGIN IMMEDIATE")
            try:
                yield Transaction(connection)
            except BaseException:
                await connection.execute("ROLLBACK")
                raise
            else:
                await connection.execute("COMMIT")

    async def _ensure_connection(self) -> aiosqlite.Connection:
        if self._connection is None:
            await self.connect()
        return self._connection

    async def __aenter__(self) -> 'Database':
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


__all__ = [
    'Database',
    'Transaction',
]
