"""
Postgres History Store

Persists RunResult records into the query_exec_info table so ramp outcomes
can be compared across runs.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from overload.connectors.postgres_pool import PostgresConnectionPool, get_history_pool
from overload.models.run_result import RunResult

logger = logging.getLogger(__name__)

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS query_exec_info (
    id SERIAL PRIMARY KEY,
    query TEXT,
    created_at TIMESTAMPTZ DEFAULT now(),
    is_failed BOOLEAN,
    qps REAL,
    conns INT,
    comment TEXT,
    info JSONB
)
"""

_INSERT = """
INSERT INTO query_exec_info (query, is_failed, qps, conns, comment, info)
VALUES ($1, $2, $3, $4, $5, $6::jsonb)
"""

_SELECT_RECENT = """
SELECT id, query, created_at, is_failed, qps, conns, comment, info
FROM query_exec_info
ORDER BY created_at DESC, id DESC
LIMIT $1
"""


class HistoryStore:
    """Read/write access to query_exec_info."""

    def __init__(self, pool: Optional[PostgresConnectionPool] = None) -> None:
        self._pool = pool
        self._schema_ready = False

    @property
    def pool(self) -> PostgresConnectionPool:
        if self._pool is None:
            self._pool = get_history_pool()
        return self._pool

    async def ensure_schema(self) -> None:
        if self._schema_ready:
            return
        await self.pool.execute_query(_CREATE_TABLE)
        self._schema_ready = True

    async def save(self, result: RunResult) -> None:
        await self.ensure_schema()
        await self.pool.execute_query(
            _INSERT,
            result.query,
            result.is_failed,
            float(result.qps),
            int(result.worker_count),
            result.comment,
            json.dumps(result.info()),
        )

    async def recent(self, limit: int = 50) -> list[dict[str, Any]]:
        await self.ensure_schema()
        rows = await self.pool.fetch_all(_SELECT_RECENT, max(1, int(limit)))
        out: list[dict[str, Any]] = []
        for row in rows:
            info = row["info"]
            if isinstance(info, str):
                try:
                    info = json.loads(info)
                except ValueError:
                    logger.warning("Unparseable info JSON for history row %s", row["id"])
            created_at = row["created_at"]
            out.append(
                {
                    "id": row["id"],
                    "query": row["query"],
                    "created_at": created_at.isoformat() if created_at else None,
                    "is_failed": row["is_failed"],
                    "qps": row["qps"],
                    "conns": row["conns"],
                    "comment": row["comment"],
                    "info": info,
                }
            )
        return out
