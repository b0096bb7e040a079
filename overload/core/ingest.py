"""
Bulk loaders for growing a test database.

Two interchangeable strategies fill a pgbench_history-shaped table as fast
as possible:
- ``CopyLoader`` generates random rows client-side and streams them with COPY.
- ``GenerateLoader`` has the server generate rows with generate_series(), so
  no row data crosses the network.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import random
import string
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Optional

from overload.config import settings
from overload.core.fan_out import make_connect, run_many
from overload.core.log_context import LoggerLike, bind
from overload.core.measurer import ConnectFn
from overload.core.size_reporter import DatabaseSizeReporter

logger = logging.getLogger(__name__)

COLUMNS = ("tid", "bid", "aid", "delta", "mtime", "filler")

_FILLER_CHARS = string.ascii_letters + string.digits


@dataclass
class IngestConfig:
    table_name: str = ""
    batch_size: int = 0
    progress_interval_seconds: float = 0.0

    def normalized(self) -> "IngestConfig":
        return IngestConfig(
            table_name=self.table_name or settings.INGEST_TABLE_NAME,
            batch_size=self.batch_size or settings.INGEST_BATCH_SIZE,
            progress_interval_seconds=self.progress_interval_seconds
            or settings.INGEST_PROGRESS_INTERVAL_SECONDS,
        )


def quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def create_table_sql(table_name: str) -> str:
    return f"""
        CREATE TABLE IF NOT EXISTS {quote_ident(table_name)} (
            tid int,
            bid int,
            aid int,
            delta int,
            mtime timestamp,
            filler char(22)
        )
    """


def random_row(now: Optional[datetime] = None) -> tuple[Any, ...]:
    now = now or datetime.now()
    return (
        random.randrange(100_000),
        random.randrange(10_000),
        random.randrange(10_000_000),
        random.randrange(1_000_000) - 500_000,
        now - timedelta(hours=random.randrange(30 * 24)),
        "".join(random.choices(_FILLER_CHARS, k=22)),
    )


class BulkLoader(abc.ABC):
    """Inserts batches into one table over one connection until stopped."""

    def __init__(
        self,
        connect: ConnectFn,
        config: Optional[IngestConfig] = None,
        *,
        logger: Optional[LoggerLike] = None,
    ) -> None:
        self._connect = connect
        self.config = (config or IngestConfig()).normalized()
        self._log = bind(logger, __name__)
        self.rows_inserted = 0

    @abc.abstractmethod
    async def insert_batch(self, conn: Any) -> int:
        """Insert one batch; returns the number of rows written."""

    @staticmethod
    async def _until_stopped(
        batch: Awaitable[int], stop_signal: asyncio.Event
    ) -> Optional[int]:
        """Await one batch; cancel it and return None if the stop signal fires first."""
        call = asyncio.ensure_future(batch)
        stopper = asyncio.ensure_future(stop_signal.wait())
        try:
            done, _ = await asyncio.wait(
                {call, stopper}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            stopper.cancel()
            if not call.done():
                call.cancel()
                await asyncio.gather(call, return_exceptions=True)
        if call in done:
            return call.result()
        return None

    async def load(self, stop_signal: asyncio.Event) -> int:
        cfg = self.config
        self._log.info(
            "ingest started: table=%s batch_size=%d", cfg.table_name, cfg.batch_size
        )
        conn = await self._connect()
        try:
            await conn.execute(create_table_sql(cfg.table_name))

            start = time.monotonic()
            last_report, last_rows = start, 0
            while not stop_signal.is_set():
                inserted = await self._until_stopped(self.insert_batch(conn), stop_signal)
                if inserted is None:
                    break
                self.rows_inserted += inserted

                now = time.monotonic()
                if now - last_report > cfg.progress_interval_seconds:
                    rate = (self.rows_inserted - last_rows) / (now - last_report)
                    self._log.info(
                        "ingest progress: rows_inserted=%d rows_per_second=%.0f elapsed=%.1fs",
                        self.rows_inserted,
                        rate,
                        now - start,
                    )
                    last_report, last_rows = now, self.rows_inserted
        finally:
            await conn.close()
            self._log.info("ingest finished: rows_inserted=%d", self.rows_inserted)
        return self.rows_inserted


def random_rows(count: int, now: Optional[datetime] = None) -> list[tuple[Any, ...]]:
    now = now or datetime.now()
    return [random_row(now) for _ in range(count)]


class CopyLoader(BulkLoader):
    async def insert_batch(self, conn: Any) -> int:
        # Row generation is CPU bound; keep it off the event loop.
        loop = asyncio.get_running_loop()
        records = await loop.run_in_executor(
            None, random_rows, self.config.batch_size, datetime.now()
        )
        try:
            await conn.copy_records_to_table(
                self.config.table_name, records=records, columns=list(COLUMNS)
            )
        except Exception as exc:
            raise RuntimeError(f"failed to copy data: {exc}") from exc
        return len(records)


class GenerateLoader(BulkLoader):
    def insert_sql(self) -> str:
        return f"""
            INSERT INTO {quote_ident(self.config.table_name)} (tid, bid, aid, delta, mtime, filler)
            SELECT
                (s % 100000)::int,
                (s % 10000)::int,
                (s % 10000000)::int,
                (s % 1000000 - 500000)::int,
                now() - ((s % 30) * interval '1 day'),
                lpad(s::text, 22, '0')
            FROM generate_series(1, $1::int) AS s
        """

    async def insert_batch(self, conn: Any) -> int:
        try:
            status = await conn.execute(self.insert_sql(), self.config.batch_size)
        except Exception as exc:
            raise RuntimeError(f"failed to insert data: {exc}") from exc
        # Status tag looks like "INSERT 0 1000000".
        try:
            return int(str(status).split()[-1])
        except (IndexError, ValueError):
            return self.config.batch_size


LOADERS: dict[str, type[BulkLoader]] = {
    "copy": CopyLoader,
    "generate": GenerateLoader,
}


async def run_ingest(
    connstr: str,
    config: Optional[IngestConfig] = None,
    *,
    workers: Optional[int] = None,
    strategy: Optional[str] = None,
    stop_signal: Optional[asyncio.Event] = None,
    connect: Optional[ConnectFn] = None,
    report_size: bool = True,
) -> int:
    """
    Fill the table from ``workers`` connections until ``stop_signal`` is set.

    Returns the total number of rows inserted by workers that finished cleanly.
    """
    workers = settings.INGEST_WORKERS if workers is None else int(workers)
    strategy = (strategy or settings.INGEST_STRATEGY).lower()
    loader_cls = LOADERS.get(strategy)
    if loader_cls is None:
        raise ValueError(f"unknown ingest strategy: {strategy!r}")

    stop_signal = stop_signal or asyncio.Event()
    connect = connect or make_connect(connstr)

    reporter_task: Optional[asyncio.Task] = None
    if report_size:
        reporter = DatabaseSizeReporter(connect)
        reporter_task = asyncio.create_task(reporter.run(stop_signal))

    async def _worker(worker_id: int) -> int:
        wlog = bind(None, __name__, worker=worker_id)
        return await loader_cls(connect, config, logger=wlog).load(stop_signal)

    try:
        outcomes = await run_many(workers, _worker)
    finally:
        if reporter_task is not None:
            stop_signal.set()
            await asyncio.gather(reporter_task, return_exceptions=True)

    return sum(o for o in outcomes if isinstance(o, int))
