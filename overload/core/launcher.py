"""
Query launcher.

Turns a query and a connection target into a finished ramp: runs the
RampController, derives RunResult records from every settled step, and
persists them to the history store.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional

from overload.config import settings
from overload.core.fan_out import FanOutRunner, make_connect
from overload.core.history_store import HistoryStore
from overload.core.log_context import LoggerLike, bind
from overload.core.measurer import ConnectFn
from overload.core.ramp import RampController
from overload.models.query import ExecutionStats, Query, RampStep
from overload.models.run_result import RunResult

logger = logging.getLogger(__name__)


@dataclass
class BatchReport:
    """Outcome of several queries launched together."""

    succeeded: list[RunResult] = field(default_factory=list)
    failed: list[RunResult] = field(default_factory=list)
    timed_out: list[RunResult] = field(default_factory=list)

    def add(self, result: RunResult) -> None:
        if result.comment.startswith("error"):
            self.failed.append(result)
        elif result.is_failed:
            self.timed_out.append(result)
        else:
            self.succeeded.append(result)

    def render(self) -> str:
        lines: list[str] = ["Successful queries:"]
        for r in self.succeeded:
            lines.append(f"  {r.qps:.1f} QPS @ {r.worker_count} conns: {r.query}")
        lines.append("Failed queries:")
        for r in self.failed:
            lines.append(f"  {r.comment}: {r.query}")
        for r in self.timed_out:
            lines.append(f"  never finished (timeout): {r.query}")
        return "\n".join(lines)


class Launcher:
    """Runs ramps against one connection target and records the outcomes."""

    def __init__(
        self,
        connstr: str,
        *,
        history: Optional[HistoryStore] = None,
        connect: Optional[ConnectFn] = None,
        controller_factory: Optional[Callable[..., RampController]] = None,
        logger: Optional[LoggerLike] = None,
        **ramp_options: Any,
    ) -> None:
        """
        Args:
            connstr: Connection URI of the database under test
            history: Where RunResults are persisted (None disables persistence)
            connect: Override for the per-worker connection factory
            controller_factory: Override for building RampControllers
            logger: Explicit logger handle
            **ramp_options: Passed to RampController (iteration_seconds, ...)
        """
        self.connstr = connstr
        self._history = history
        self._connect = connect or make_connect(connstr)
        self._controller_factory = controller_factory or RampController
        self._logger = logger
        self._log = bind(logger, __name__)
        self._ramp_options = ramp_options
        self._live: set[RampController] = set()

    @classmethod
    def from_settings(cls, connstr: Optional[str] = None, **kwargs: Any) -> "Launcher":
        connstr = connstr or settings.CONNSTR
        if not connstr:
            raise ValueError("no connection string: pass one or set CONNSTR")
        if "history" not in kwargs and settings.HISTORY_ENABLED:
            kwargs["history"] = HistoryStore()
        return cls(connstr, **kwargs)

    def build_controller(self, query: Query) -> RampController:
        runner = FanOutRunner(connect=self._connect, logger=self._logger)

        async def _record(step: RampStep) -> None:
            await self._persist(RunResult.from_step(query, step))

        return self._controller_factory(
            runner=runner,
            on_step=_record,
            logger=self._logger,
            **self._ramp_options,
        )

    async def _persist(self, result: RunResult) -> None:
        if self._history is None:
            return
        try:
            await self._history.save(result)
        except Exception as exc:
            self._log.warning("Failed to persist run result: %s", exc)

    def cancel_all(self) -> None:
        """Stop every ramp this launcher is currently running."""
        for controller in list(self._live):
            controller.cancel()

    async def run(
        self, query: Query, controller: Optional[RampController] = None
    ) -> RunResult:
        """Run the whole ramp for ``query`` and return the final record."""
        controller = controller or self.build_controller(query)
        self._live.add(controller)
        try:
            stats: ExecutionStats = await controller.run(query)
        finally:
            self._live.discard(controller)

        steps = controller.steps
        worker_count = steps[-1].worker_count if steps else 1
        result = RunResult.from_stats(
            query,
            worker_count,
            stats,
            step_num=steps[-1].step_num if steps else None,
            duration_seconds=controller.iteration_seconds,
        )
        self._log.info(
            "Query finished: %s (%d conns, %.1f QPS) %s",
            result.comment,
            result.worker_count,
            result.qps,
            query.preview(60),
        )
        return result

    async def run_many(self, queries: Iterable[Query]) -> BatchReport:
        """Ramp several queries concurrently and classify the outcomes."""
        queries = list(queries)
        results = await asyncio.gather(
            *(self.run(q) for q in queries), return_exceptions=True
        )

        report = BatchReport()
        for query, outcome in zip(queries, results):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                self._log.error("failed to execute query %s: %s", query.preview(60), outcome)
                outcome = RunResult.from_stats(query, 1, ExecutionStats.failed(outcome))
            report.add(outcome)
        return report
