"""
Database size reporter.

Polls pg_database_size() on an interval and logs how fast the database is
growing, e.g. while bulk loaders are running.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from overload.config import settings
from overload.core.log_context import LoggerLike, bind
from overload.core.measurer import ConnectFn

logger = logging.getLogger(__name__)

_SIZE_QUERY = "SELECT pg_database_size(current_database()), now()"


def humanize_bytes(b: int) -> str:
    """Human readable size: 1024 -> "1.0 KB", 12345 -> "12.1 KB"."""
    unit = 1024
    if b < unit:
        return "0 B"
    div, exp = unit, 0
    n = b // unit
    while n >= unit:
        div *= unit
        exp += 1
        n //= unit
    return f"{b / div:.1f} {'KMGTPE'[exp]}B"


@dataclass(frozen=True)
class SizeSnapshot:
    database_size: int
    timestamp: datetime


class DatabaseSizeReporter:
    """Logs database size growth every ``interval_seconds`` until stopped."""

    def __init__(
        self,
        connect: ConnectFn,
        *,
        interval_seconds: Optional[float] = None,
        logger: Optional[LoggerLike] = None,
    ) -> None:
        self._connect = connect
        self.interval_seconds = float(
            settings.SIZE_REPORT_INTERVAL_SECONDS
            if interval_seconds is None
            else interval_seconds
        )
        self._log = bind(logger, __name__, job="stats")
        self._conn = None
        self.last_snapshot: Optional[SizeSnapshot] = None

    async def _close(self) -> None:
        if self._conn is None:
            return
        conn, self._conn = self._conn, None
        try:
            await conn.close()
        except Exception as exc:
            self._log.error("failed to close connection: %s", exc)

    async def snapshot(self) -> SizeSnapshot:
        if self._conn is None:
            self._conn = await self._connect()
        row = await self._conn.fetchrow(_SIZE_QUERY)
        return SizeSnapshot(database_size=int(row[0]), timestamp=row[1])

    def report(self, snapshot: SizeSnapshot) -> Optional[str]:
        """Log growth since the previous snapshot; returns the speed string."""
        previous, self.last_snapshot = self.last_snapshot, snapshot
        if previous is None:
            return None

        size_diff = snapshot.database_size - previous.database_size
        time_diff = (snapshot.timestamp - previous.timestamp).total_seconds()
        if time_diff <= 0:
            return None

        speed = size_diff / time_diff
        if speed < 0:
            speed_human = "-" + humanize_bytes(int(-speed)) + "/s"
        else:
            speed_human = humanize_bytes(int(speed)) + "/s"
        self._log.info(
            "fetched: speed=%s size=%s",
            speed_human,
            humanize_bytes(snapshot.database_size),
        )
        return speed_human

    async def run(self, stop_signal: asyncio.Event) -> None:
        self._log.info("started")
        try:
            while not stop_signal.is_set():
                try:
                    await asyncio.wait_for(
                        stop_signal.wait(), timeout=self.interval_seconds
                    )
                    break
                except asyncio.TimeoutError:
                    pass

                try:
                    self.report(await self.snapshot())
                except Exception as exc:
                    self._log.error("failed to get stats snapshot: %s", exc)
                    await self._close()
        finally:
            await self._close()
