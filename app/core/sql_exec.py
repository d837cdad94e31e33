"""SQL execution with safety and timeout"""
import asyncio
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import asyncpg

from app.config import settings


# Server-side statement_timeout should normally fire first
CLIENT_TIMEOUT_GRACE_SECONDS = 0.5


def _unique_columns(names: List[str]) -> List[str]:
    """Postgres allows repeated output names; rows are keyed by name, so
    later repeats become ``name_2``, ``name_3``."""
    used = set()
    unique = []
    for name in names:
        candidate = name
        suffix = 1
        while candidate in used:
            suffix += 1
            candidate = f"{name}_{suffix}"
        used.add(candidate)
        unique.append(candidate)
    return unique


class SQLExecutionError(Exception):
    """Raised when SQL execution fails"""
    pass


@dataclass(frozen=True)
class QueryResult:
    sql: str
    columns: Tuple[str, ...]
    rows: Tuple[Dict[str, Any], ...]
    row_count: int
    execution_time_ms: float = 0.0


class SQLExecutor:
    """Execute validated read-only SQL on a pooled connection"""

    def __init__(self, pool, *, acquire_timeout: Optional[float] = None):
        """
        Args:
            pool: anything exposing ``acquire(timeout=...)`` as an async
                context manager yielding an asyncpg-like connection
                (``asyncpg.Pool`` or ``app.deps.DatabasePool``).
            acquire_timeout: seconds to wait for a free connection.
        """
        self.pool = pool
        self.acquire_timeout = (
            acquire_timeout if acquire_timeout is not None else settings.db_connect_timeout_seconds
        )

    async def execute(self, sql: str, *, timeout_ms: Optional[int] = None) -> QueryResult:
        """
        Run ``sql`` inside a read-only transaction bounded by ``timeout_ms``.

        ``SET LOCAL statement_timeout`` dies with the transaction, so the
        pooled connection goes back with its session defaults untouched.
        The same budget is enforced client-side in case the server never
        answers.
        """
        effective_ms = int(timeout_ms if timeout_ms is not None else settings.sql_timeout_ms)
        start_time = time.perf_counter()
        acquired = False

        try:
            async with self.pool.acquire(timeout=self.acquire_timeout) as conn:
                acquired = True
                async with conn.transaction(readonly=True):
                    await conn.execute(f"SET LOCAL statement_timeout = {effective_ms}")
                    columns, records = await asyncio.wait_for(
                        self._fetch(conn, sql),
                        timeout=effective_ms / 1000.0 + CLIENT_TIMEOUT_GRACE_SECONDS,
                    )
        except asyncio.TimeoutError:
            if not acquired:
                raise SQLExecutionError(
                    f"Timed out after {self.acquire_timeout} seconds waiting for a database connection"
                )
            raise SQLExecutionError(f"Query execution timeout after {effective_ms} ms")
        except asyncpg.exceptions.QueryCanceledError as e:
            raise SQLExecutionError(f"Query execution timeout after {effective_ms} ms: {e}")
        except asyncpg.PostgresError as e:
            raise SQLExecutionError(f"Database error: {e}")
        except (OSError, asyncpg.InterfaceError) as e:
            raise SQLExecutionError(f"Database connection failed: {e}")
        except Exception as e:
            raise SQLExecutionError(f"Execution failed: {e}")

        rows = tuple(dict(zip(columns, record)) for record in records)
        return QueryResult(
            sql=sql,
            columns=tuple(columns),
            rows=rows,
            row_count=len(rows),
            execution_time_ms=round((time.perf_counter() - start_time) * 1000, 2),
        )

    @staticmethod
    async def _fetch(conn, sql: str):
        # Prepared statement gives column names even for empty results
        stmt = await conn.prepare(sql)
        columns = _unique_columns([attr.name for attr in stmt.get_attributes()])
        records = await stmt.fetch()
        return columns, [tuple(record) for record in records]

    @staticmethod
    def format_rows_for_json(result: QueryResult) -> list:
        """Rows as plain dicts with JSON-safe values"""
        formatted = []
        for row in result.rows:
            formatted_row = {}
            for key, value in row.items():
                if value is None or isinstance(value, (str, int, float, bool)):
                    formatted_row[key] = value
                else:
                    formatted_row[key] = str(value)
            formatted.append(formatted_row)
        return formatted
