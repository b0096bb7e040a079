"""Fan-out/fan-in of concurrent workers.

``run_many`` is the generic barrier: start ``n`` worker coroutines, wait for
every one of them, log each outcome. ``FanOutRunner`` builds on it to run one
SingleWorkerMeasurer per connection for a ramp step.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar

from overload.connectors.postgres_pool import connect_worker
from overload.core.log_context import LoggerLike, bind
from overload.core.measurer import ConnectFn, SingleWorkerMeasurer
from overload.models.query import ExecutionStats, Query

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def run_many(
    n: int,
    worker_factory: Callable[[int], Awaitable[T]],
    *,
    logger: Optional[LoggerLike] = None,
) -> list[T | BaseException]:
    """Run ``n`` workers concurrently and wait for all of them.

    Args:
        n: Number of workers
        worker_factory: Async function taking the worker id
        logger: Explicit logger handle

    Returns:
        One entry per worker, in worker id order: its return value, or the
        exception it raised. A failing worker never stops the others.
    """
    log = bind(logger, __name__)

    async def _one(worker_id: int) -> T:
        wlog = log.with_context(worker=worker_id)
        try:
            result = await worker_factory(worker_id)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            wlog.error("worker failed: %s", exc)
            raise
        wlog.debug("worker finished")
        return result

    tasks = [asyncio.create_task(_one(i)) for i in range(int(n))]
    if not tasks:
        return []
    try:
        return list(await asyncio.gather(*tasks, return_exceptions=True))
    except asyncio.CancelledError:
        # gather already cancelled the children; wait so they can release resources.
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


class FanOutRunner:
    """Runs ``n`` measurers concurrently, one exclusive connection each."""

    def __init__(
        self,
        *,
        connect: ConnectFn,
        logger: Optional[LoggerLike] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._connect = connect
        self._logger = logger
        self._log = bind(logger, __name__)
        self._clock = clock

    def _measurer(
        self,
        *,
        worker_id: int,
        query: Query,
        deadline: float,
        stop_signal: asyncio.Event,
    ) -> SingleWorkerMeasurer:
        return SingleWorkerMeasurer(
            connect=self._connect,
            query=query,
            deadline=deadline,
            stop_signal=stop_signal,
            worker_id=worker_id,
            logger=self._logger,
            clock=self._clock,
        )

    async def run(
        self,
        worker_count: int,
        query: Query,
        duration_seconds: float,
        stop_signal: Optional[asyncio.Event] = None,
    ) -> list[ExecutionStats]:
        """Measure ``query`` on ``worker_count`` connections for one step.

        Every worker shares the same deadline and stop signal. Returns exactly
        ``worker_count`` stats once all workers have finished.
        """
        if worker_count < 1:
            raise ValueError(f"worker_count must be positive, got {worker_count}")

        stop_signal = stop_signal or asyncio.Event()
        deadline = self._clock() + float(duration_seconds)

        self._log.info(
            "Launching %d workers for %.1fs", worker_count, float(duration_seconds)
        )

        async def _worker(worker_id: int) -> ExecutionStats:
            measurer = self._measurer(
                worker_id=worker_id,
                query=query,
                deadline=deadline,
                stop_signal=stop_signal,
            )
            return await measurer.run()

        outcomes = await run_many(worker_count, _worker, logger=self._logger)

        results: list[ExecutionStats] = []
        for outcome in outcomes:
            if isinstance(outcome, ExecutionStats):
                results.append(outcome)
            elif isinstance(outcome, asyncio.CancelledError):
                # A cancelled worker is a stop, not a failure.
                results.append(ExecutionStats.empty())
            elif isinstance(outcome, BaseException):
                results.append(ExecutionStats.failed(outcome))
            else:
                results.append(
                    ExecutionStats.failed(
                        TypeError(f"unexpected worker result: {outcome!r}")
                    )
                )
        return results


def make_connect(dsn: str, **connect_kwargs: Any) -> ConnectFn:
    """Connection factory opening a fresh Postgres connection per worker."""

    async def _connect():
        return await connect_worker(dsn, **connect_kwargs)

    return _connect
