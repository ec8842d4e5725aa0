from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from agentrelay.logging import get_logger

logger = get_logger(__name__)


@dataclass
class QueryResult:
    rows: List[Dict[str, Any]] = field(default_factory=list)
    row_count: int = 0


class DatabaseClient:
    """Pooled Postgres access for database workers.

    The pool is opened lazily on first use and shared by every run in the
    process; psycopg pools are safe for concurrent callers.
    """

    def __init__(self, dsn: str, *, max_size: int = 5) -> None:
        self.dsn = dsn
        self.max_size = max(max_size, 1)
        self._pool: Optional[ConnectionPool] = None
        self._pool_lock = threading.Lock()

    def _get_pool(self) -> ConnectionPool:
        if self._pool is None:
            with self._pool_lock:
                if self._pool is None:
                    self._pool = ConnectionPool(
                        self.dsn,
                        min_size=1,
                        max_size=self.max_size,
                        kwargs={"row_factory": dict_row, "autocommit": True},
                    )
        return self._pool

    def _execute(self, sql: str) -> QueryResult:
        with self._get_pool().connection() as conn:
            cur = conn.execute(sql)
            rows = [dict(row) for row in cur.fetchall()] if cur.description else []
            count = cur.rowcount if cur.rowcount is not None and cur.rowcount >= 0 else len(rows)
        return QueryResult(rows=rows, row_count=count)

    async def query(self, sql: str) -> QueryResult:
        return await asyncio.to_thread(self._execute, sql)

    def close(self) -> None:
        with self._pool_lock:
            if self._pool is not None:
                self._pool.close()
                self._pool = None


__all__ = ["DatabaseClient", "QueryResult"]
