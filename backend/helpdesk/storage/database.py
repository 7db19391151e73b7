"""DuckDB connection wrapper shared by all repositories.

DuckDB connections are not safe for concurrent use, so every statement runs
on a single dedicated worker thread. From the event loop's point of view each
call is an awaitable suspension point; statements themselves never overlap.

Usage:
    db = Database(":memory:")
    rows = await db.fetch_all("SELECT * FROM users WHERE role = ?", ["agent"])
    db.close()
"""
import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from functools import partial
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

import duckdb

from .schema import ensure_schema

logger = logging.getLogger(__name__)

T = TypeVar("T")

Row = Dict[str, Any]


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in TIMESTAMP columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _rows_as_dicts(cursor: duckdb.DuckDBPyConnection) -> List[Row]:
    columns = [col[0] for col in cursor.description or []]
    return [dict(zip(columns, row)) for row in cursor.fetchall()]


class Database:
    """Owns the DuckDB connection and the worker thread that uses it.

    Attributes:
        clock: Callable returning the current naive UTC time. Injectable so
            tests can control watermark and message timestamps.
    """

    def __init__(
        self,
        db_path: str = ":memory:",
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._db_path = db_path
        self.clock = clock or utcnow
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="duckdb")
        self._connection: Optional[duckdb.DuckDBPyConnection] = duckdb.connect(db_path)
        ensure_schema(self._connection)
        logger.info("[Storage] DuckDB ready at %s", db_path)

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            raise RuntimeError("Database is closed")
        return self._connection

    async def run(self, fn: Callable[[duckdb.DuckDBPyConnection], T]) -> T:
        """Run ``fn(connection)`` on the database thread and await its result."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self._executor, partial(fn, self._get_connection())
        )

    async def transaction(self, fn: Callable[[duckdb.DuckDBPyConnection], T]) -> T:
        """Like run(), but wraps ``fn`` in BEGIN/COMMIT (ROLLBACK on error)."""

        def _wrapped(conn: duckdb.DuckDBPyConnection) -> T:
            conn.execute("BEGIN TRANSACTION")
            try:
                result = fn(conn)
            except Exception:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
            return result

        return await self.run(_wrapped)

    async def fetch_all(self, sql: str, params: Sequence[Any] = ()) -> List[Row]:
        def _query(conn: duckdb.DuckDBPyConnection) -> List[Row]:
            return _rows_as_dicts(conn.execute(sql, list(params)))

        return await self.run(_query)

    async def fetch_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[Row]:
        rows = await self.fetch_all(sql, params)
        return rows[0] if rows else None

    async def fetch_value(self, sql: str, params: Sequence[Any] = ()) -> Any:
        def _query(conn: duckdb.DuckDBPyConnection) -> Any:
            row = conn.execute(sql, list(params)).fetchone()
            return row[0] if row else None

        return await self.run(_query)

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> None:
        def _statement(conn: duckdb.DuckDBPyConnection) -> None:
            conn.execute(sql, list(params))

        await self.run(_statement)

    async def insert_returning_id(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Execute an ``INSERT ... RETURNING id`` and return the new id."""
        return int(await self.fetch_value(sql, params))

    def close(self) -> None:
        """Stop the worker thread, then close the connection."""
        self._executor.shutdown(wait=True)
        if self._connection is not None:
            self._connection.close()
            self._connection = None
