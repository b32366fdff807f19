"""Async SQLite database handle shared by the host and all plugins."""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import aiosqlite

logger = logging.getLogger(__name__)


class Database:
    """Thin async wrapper around a single aiosqlite connection.

    One instance is shared read/write across the plugin manager and every
    plugin context. Rows are returned as plain dicts.
    """

    def __init__(self, path: Union[str, Path], timeout: float = 30.0):
        self.path = str(path)
        self.timeout = timeout
        self._conn: Optional[aiosqlite.Connection] = None

    @property
    def is_connected(self) -> bool:
        return self._conn is not None

    async def connect(self) -> None:
        """Open the connection (no-op if already open)."""
        if self._conn is not None:
            return
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(self.path, timeout=self.timeout)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA foreign_keys = ON")
        logger.info(f"Connected to database: {self.path}")

    async def close(self) -> None:
        """Close the connection."""
        if self._conn is not None:
            await self._conn.close()
            self._conn = None
            logger.info(f"Closed database: {self.path}")

    def _require_connection(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Database is not connected; call connect() first")
        return self._conn

    async def execute(self, query: str, params: Optional[Sequence[Any]] = None) -> int:
        """Execute a single statement and commit.

        Returns:
            Number of affected rows
        """
        conn = self._require_connection()
        params = list(params or [])
        logger.debug(f"SQL: {query} | Params: {params}")

        cursor = await conn.execute(query, params)
        await conn.commit()
        return cursor.rowcount

    async def execute_script(self, script: str) -> None:
        """Execute a multi-statement SQL script (e.g. a migration file)."""
        conn = self._require_connection()
        logger.debug(f"SQL script ({len(script)} chars)")
        await conn.executescript(script)
        await conn.commit()

    async def fetch_one(
        self, query: str, params: Optional[Sequence[Any]] = None
    ) -> Optional[Dict[str, Any]]:
        """Fetch a single row as a dict, or None."""
        conn = self._require_connection()
        params = list(params or [])
        logger.debug(f"SQL: {query} | Params: {params}")

        cursor = await conn.execute(query, params)
        row = await cursor.fetchone()
        return dict(row) if row else None

    async def fetch_all(
        self, query: str, params: Optional[Sequence[Any]] = None
    ) -> List[Dict[str, Any]]:
        """Fetch all rows as dicts."""
        conn = self._require_connection()
        params = list(params or [])
        logger.debug(f"SQL: {query} | Params: {params}")

        cursor = await conn.execute(query, params)
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]
