"""
Concurrency ramp for a single statement.

The controller first measures the statement on one connection (baseline).
If it completes at least once without error, the controller runs a fixed
number of steps at geometrically growing worker counts, merging each
step's per-worker stats into one aggregate.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional, Union

from overload.config import settings
from overload.core.fan_out import FanOutRunner
from overload.core.log_context import LoggerLike, bind
from overload.core.stats import merge_stats
from overload.models.query import ExecutionStats, Query, RampStep

logger = logging.getLogger(__name__)

StepCallback = Callable[[RampStep], Union[None, Awaitable[None]]]


class RampState(str, Enum):
    """Ramp controller state."""

    PENDING = "pending"
    BASELINE = "baseline"
    RAMPING = "ramping"
    DONE = "done"


def worker_progression(base: int, growth_factor: int, steps: int) -> list[int]:
    """Worker counts for each ramp step, e.g. 50, 100, 200, 400."""
    if base < 1:
        raise ValueError("base worker count must be at least 1")
    if growth_factor < 2:
        raise ValueError("growth factor must be at least 2")
    return [int(base) * int(growth_factor) ** i for i in range(int(steps))]


class RampController:
    """
    Drives Baseline -> Ramping -> Done for one query.

    Only the final step's aggregate is returned; every settled step is kept
    in ``steps`` and handed to ``on_step`` as soon as it completes.
    """

    def __init__(
        self,
        *,
        runner: FanOutRunner,
        iteration_seconds: Optional[float] = None,
        base_workers: Optional[int] = None,
        growth_factor: Optional[int] = None,
        ramp_steps: Optional[int] = None,
        stop_on_failure: Optional[bool] = None,
        on_step: Optional[StepCallback] = None,
        logger: Optional[LoggerLike] = None,
    ) -> None:
        self._runner = runner
        self.iteration_seconds = float(
            settings.RAMP_ITERATION_SECONDS
            if iteration_seconds is None
            else iteration_seconds
        )
        self.worker_counts = worker_progression(
            settings.RAMP_BASE_WORKERS if base_workers is None else base_workers,
            settings.RAMP_GROWTH_FACTOR if growth_factor is None else growth_factor,
            settings.RAMP_STEPS if ramp_steps is None else ramp_steps,
        )
        self.stop_on_failure = bool(
            settings.RAMP_STOP_ON_FAILURE if stop_on_failure is None else stop_on_failure
        )
        self._on_step = on_step
        self._logger = logger

        self._stop_signal = asyncio.Event()
        self._steps: list[RampStep] = []
        self.state = RampState.PENDING

    @property
    def steps(self) -> list[RampStep]:
        return list(self._steps)

    @property
    def stop_signal(self) -> asyncio.Event:
        return self._stop_signal

    @property
    def cancelled(self) -> bool:
        return self._stop_signal.is_set()

    def cancel(self) -> None:
        """Stop in-flight workers promptly and skip any remaining steps."""
        self._stop_signal.set()

    async def _run_step(
        self, step_num: int, worker_count: int, query: Query, log
    ) -> ExecutionStats:
        label = "Baseline" if step_num == 0 else f"Step {step_num}"
        log.info(
            "RAMP: %s - testing %d workers for %.0fs...",
            label,
            worker_count,
            self.iteration_seconds,
        )

        results = await self._runner.run(
            worker_count, query, self.iteration_seconds, self._stop_signal
        )
        stats = merge_stats(results)

        step = RampStep(
            step_num=step_num,
            worker_count=worker_count,
            duration_seconds=self.iteration_seconds,
            stats=stats,
        )
        self._steps.append(step)

        if stats.error is not None:
            log.warning(
                "RAMP: %s complete - %d workers failed: %s",
                label,
                worker_count,
                stats.error,
            )
        else:
            log.info(
                "RAMP: %s complete - %d workers: count=%d, avg=%.2fms, qps=%.1f",
                label,
                worker_count,
                stats.count,
                stats.avg_latency_ms,
                stats.qps,
            )

        if self._on_step is not None:
            maybe = self._on_step(step)
            if inspect.isawaitable(maybe):
                await maybe
        return stats

    async def run(self, query: Query) -> ExecutionStats:
        """Run the full ramp and return the last computed aggregate."""
        if self.state is not RampState.PENDING:
            raise RuntimeError("RampController.run() can only be called once")

        log = bind(self._logger, __name__, query=query.preview(40))

        self.state = RampState.BASELINE
        stats = await self._run_step(0, 1, query, log)

        if stats.error is not None or stats.count == 0:
            # A statement that cannot complete once is not worth ramping.
            reason = "failed" if stats.error is not None else "timed out"
            log.info("RAMP: baseline %s, skipping ramp", reason)
            self.state = RampState.DONE
            return stats

        self.state = RampState.RAMPING
        for step_num, worker_count in enumerate(self.worker_counts, start=1):
            if self.cancelled:
                log.info("RAMP: cancelled before step %d", step_num)
                break

            stats = await self._run_step(step_num, worker_count, query, log)

            if self.stop_on_failure and (stats.error is not None or stats.count == 0):
                log.info("RAMP: step %d did not succeed, stopping ramp", step_num)
                break

        self.state = RampState.DONE
        log.info("RAMP: done after %d steps", len(self._steps))
        return stats
