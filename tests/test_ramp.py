#!/usr/bin/env python3
"""
Unit tests for the RampController state machine.

Most tests drive the controller with a scripted runner so no timing is
involved; the last ones run real FanOutRunners over fake connections.
"""

import asyncio
import time
from typing import Callable

import pytest

from overload.core.fan_out import FanOutRunner
from overload.core.ramp import RampController, RampState, worker_progression
from overload.models import ExecutionStats, Query

QUERY = Query(sql="SELECT count(*) FROM accounts WHERE aid < 1000")


def _ok(count: int, avg_ms: float) -> ExecutionStats:
    return ExecutionStats(
        min_latency_ms=avg_ms, avg_latency_ms=avg_ms, max_latency_ms=avg_ms, count=count
    )


class ScriptedRunner:
    """Returns per-worker stats from ``script(step_index, worker_count)``."""

    def __init__(self, script: Callable[[int, int], list[ExecutionStats]]):
        self._script = script
        self.calls: list[tuple[int, float]] = []

    async def run(self, worker_count, query, duration_seconds, stop_signal=None):
        self.calls.append((worker_count, duration_seconds))
        return self._script(len(self.calls) - 1, worker_count)


def _controller(runner, **kwargs) -> RampController:
    kwargs.setdefault("iteration_seconds", 60.0)
    kwargs.setdefault("base_workers", 50)
    kwargs.setdefault("growth_factor", 2)
    kwargs.setdefault("ramp_steps", 4)
    kwargs.setdefault("stop_on_failure", False)
    return RampController(runner=runner, **kwargs)


def test_worker_progression_doubles():
    assert worker_progression(50, 2, 4) == [50, 100, 200, 400]


def test_worker_progression_rejects_slow_growth():
    with pytest.raises(ValueError):
        worker_progression(50, 1, 4)
    with pytest.raises(ValueError):
        worker_progression(0, 2, 4)


@pytest.mark.asyncio
async def test_successful_baseline_runs_four_growing_steps():
    runner = ScriptedRunner(lambda i, n: [_ok(10, 100.0)] * n)
    controller = _controller(runner)

    await controller.run(QUERY)

    counts = [c for c, _ in runner.calls]
    assert counts[0] == 1
    ramp = counts[1:]
    assert len(ramp) == 4
    for prev, cur in zip(ramp, ramp[1:]):
        assert cur > prev
        assert cur >= 2 * prev
    assert all(d == 60.0 for _, d in runner.calls)
    assert controller.state is RampState.DONE
    assert [s.step_num for s in controller.steps] == [0, 1, 2, 3, 4]


@pytest.mark.asyncio
async def test_returns_last_step_aggregate():
    def script(i, n):
        if i == 0:
            return [_ok(10, 100.0)]
        return [_ok(5, 90.0)] * n

    runner = ScriptedRunner(script)
    controller = _controller(runner, base_workers=100)

    final = await controller.run(QUERY)

    step1 = controller.steps[1]
    assert step1.worker_count == 100
    assert step1.stats.count == 500
    assert step1.stats.avg_latency_ms == pytest.approx(90.0)
    assert final.count == 800 * 5
    assert final.avg_latency_ms == pytest.approx(90.0)


@pytest.mark.asyncio
async def test_baseline_error_prevents_ramp():
    err = RuntimeError('syntax error at or near "SELEC"')
    runner = ScriptedRunner(lambda i, n: [ExecutionStats.failed(err)] * n)
    controller = _controller(runner)

    final = await controller.run(QUERY)

    assert final.error is err
    assert len(runner.calls) == 1
    assert len(controller.steps) == 1
    assert controller.steps[0].is_baseline
    assert controller.state is RampState.DONE


@pytest.mark.asyncio
async def test_baseline_timeout_prevents_ramp():
    runner = ScriptedRunner(lambda i, n: [ExecutionStats.empty()] * n)
    controller = _controller(runner)

    final = await controller.run(QUERY)

    assert final.count == 0
    assert final.error is None
    assert len(controller.steps) == 1


@pytest.mark.asyncio
async def test_mid_ramp_failure_does_not_abort_remaining_steps():
    err = RuntimeError("too many connections")

    def script(i, n):
        if i == 2:
            return [ExecutionStats.failed(err)] * n
        return [_ok(4, 20.0)] * n

    runner = ScriptedRunner(script)
    controller = _controller(runner)

    final = await controller.run(QUERY)

    assert len(controller.steps) == 5
    assert controller.steps[2].stats.error is not None
    assert final.error is None
    assert final.count == 400 * 4


@pytest.mark.asyncio
async def test_stop_on_failure_short_circuits():
    def script(i, n):
        if i == 2:
            return [ExecutionStats.empty()] * n
        return [_ok(4, 20.0)] * n

    runner = ScriptedRunner(script)
    controller = _controller(runner, stop_on_failure=True)

    final = await controller.run(QUERY)

    assert len(controller.steps) == 3
    assert final.count == 0


@pytest.mark.asyncio
async def test_on_step_receives_every_settled_step():
    seen = []

    async def on_step(step):
        seen.append((step.step_num, step.worker_count))

    runner = ScriptedRunner(lambda i, n: [_ok(1, 5.0)] * n)
    controller = _controller(runner, base_workers=3, on_step=on_step)

    await controller.run(QUERY)

    assert seen == [(0, 1), (1, 3), (2, 6), (3, 12), (4, 24)]


@pytest.mark.asyncio
async def test_run_only_once():
    runner = ScriptedRunner(lambda i, n: [ExecutionStats.empty()] * n)
    controller = _controller(runner)
    await controller.run(QUERY)
    with pytest.raises(RuntimeError):
        await controller.run(QUERY)


@pytest.mark.asyncio
async def test_ramp_over_fake_connections(connection_factory):
    factory = connection_factory(latency=0.01)
    controller = _controller(
        FanOutRunner(connect=factory),
        iteration_seconds=0.1,
        base_workers=2,
        ramp_steps=2,
    )

    final = await controller.run(QUERY)

    assert [s.worker_count for s in controller.steps] == [1, 2, 4]
    assert final.error is None
    assert final.count > 0
    assert len(factory.connections) == 1 + 2 + 4
    assert all(c.closed for c in factory.connections)


@pytest.mark.asyncio
async def test_cancel_mid_step_returns_promptly_without_error(connection_factory):
    factory = connection_factory(latency=0.02)
    controller = _controller(
        FanOutRunner(connect=factory),
        iteration_seconds=30.0,
        base_workers=4,
        ramp_steps=4,
    )

    task = asyncio.create_task(controller.run(QUERY))
    await asyncio.sleep(0.1)
    started = time.monotonic()
    controller.cancel()
    final = await asyncio.wait_for(task, timeout=2.0)

    assert time.monotonic() - started < 0.5
    assert final.error is None
    # Cancelled during the baseline: no ramp step starts afterwards.
    assert len(controller.steps) == 1
    assert controller.state is RampState.DONE
    assert all(c.closed for c in factory.connections)
