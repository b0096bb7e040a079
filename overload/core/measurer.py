"""
Single-connection measurement loop.

A worker owns one connection for the life of a ramp step and executes the
target statement back-to-back until the step deadline passes, the stop
signal fires, or a statement fails.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional, Protocol

from overload.core.log_context import LoggerLike, bind
from overload.core.stats import LatencyAccumulator
from overload.models.query import ExecutionStats, Query

logger = logging.getLogger(__name__)


class WorkerConnection(Protocol):
    async def execute(self, query: str, *args: Any) -> Any: ...

    async def close(self) -> None: ...


ConnectFn = Callable[[], Awaitable[WorkerConnection]]


class _BudgetExhausted(Exception):
    """Deadline passed or stop signal fired while a call was in flight."""


class SingleWorkerMeasurer:
    """
    Measures one statement on one exclusive connection within a time budget.

    Budget expiry and the stop signal end the loop cleanly and keep the
    partial stats. Any statement (or connect) error discards the stats and
    is returned on the result instead.
    """

    def __init__(
        self,
        *,
        connect: ConnectFn,
        query: Query,
        deadline: float,
        stop_signal: Optional[asyncio.Event] = None,
        worker_id: int = 0,
        logger: Optional[LoggerLike] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Args:
            connect: Async factory returning a new connection owned by this worker
            query: Statement to execute
            deadline: Absolute ``clock()`` value at which measuring stops
            stop_signal: Shared cancellation token for the whole step
            worker_id: Identifier used in log context
            logger: Explicit logger handle; defaults to the module logger
            clock: Monotonic clock the deadline is expressed in
        """
        self._connect = connect
        self._query = query
        self._deadline = deadline
        self._stop_signal = stop_signal or asyncio.Event()
        self._worker_id = worker_id
        self._clock = clock
        self._log = bind(logger, __name__, worker=worker_id)

    def _remaining(self) -> float:
        return self._deadline - self._clock()

    def _should_stop(self) -> bool:
        return self._stop_signal.is_set() or self._remaining() <= 0

    async def _until_budget(
        self,
        make_call: Callable[[], Awaitable[Any]],
        on_late_result: Optional[Callable[[Any], Awaitable[None]]] = None,
    ) -> Any:
        """
        Await ``make_call()`` racing the deadline and the stop signal.

        Raises _BudgetExhausted (after cancelling the call) if either wins.
        Errors raised by the call itself propagate unchanged. A result that
        lands while the call is being cancelled is handed to ``on_late_result``.
        """
        if self._should_stop():
            raise _BudgetExhausted()

        call = asyncio.ensure_future(make_call())
        stopper = asyncio.ensure_future(self._stop_signal.wait())
        try:
            done, _ = await asyncio.wait(
                {call, stopper},
                timeout=max(0.0, self._remaining()),
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            stopper.cancel()
            if not call.done():
                call.cancel()
                await asyncio.gather(call, return_exceptions=True)
                if (
                    on_late_result is not None
                    and not call.cancelled()
                    and call.exception() is None
                ):
                    await on_late_result(call.result())

        if call in done:
            return call.result()
        raise _BudgetExhausted()

    async def _close(self, conn: WorkerConnection) -> None:
        try:
            await conn.close()
        except Exception as exc:
            self._log.warning("Failed to close connection: %s", exc)

    async def run(self) -> ExecutionStats:
        """Run the measurement window. Never raises for statement errors."""
        acc = LatencyAccumulator()
        conn: Optional[WorkerConnection] = None
        try:
            self._log.debug("connecting to database")
            conn = await self._until_budget(self._connect, on_late_result=self._close)

            while True:
                start = time.perf_counter()
                await self._until_budget(lambda: conn.execute(self._query.sql))
                elapsed_ms = (time.perf_counter() - start) * 1000.0

                acc.record(elapsed_ms)
                if acc.count == 1:
                    self._log.info("first query executed in %.1fms", elapsed_ms)

        except _BudgetExhausted:
            self._log.debug("query execution timed out or canceled")
            return acc.to_stats()
        except Exception as exc:
            self._log.warning("query execution failed: %s", exc)
            return ExecutionStats.failed(exc)
        finally:
            if conn is not None:
                await self._close(conn)
