#!/usr/bin/env python3
"""
Unit tests for run_many and FanOutRunner.
"""

import asyncio
import time

import pytest

from overload.core.fan_out import FanOutRunner, run_many
from overload.core.stats import merge_stats
from overload.models import ExecutionStats, Query

pytestmark = pytest.mark.asyncio

QUERY = Query(sql="UPDATE t SET v = v + 1 WHERE id = 1")


async def test_run_many_collects_every_outcome():
    async def worker(worker_id: int) -> int:
        await asyncio.sleep(0.01 * (5 - worker_id))
        if worker_id == 2:
            raise RuntimeError("worker 2 broke")
        return worker_id * 10

    outcomes = await run_many(5, worker)

    assert len(outcomes) == 5
    assert outcomes[0] == 0
    assert outcomes[4] == 40
    assert isinstance(outcomes[2], RuntimeError)


async def test_run_many_zero_workers():
    async def worker(worker_id: int) -> int:
        return worker_id

    assert await run_many(0, worker) == []


async def test_returns_exactly_n_results(connection_factory):
    factory = connection_factory(latency=0.01)
    runner = FanOutRunner(connect=factory)

    results = await runner.run(12, QUERY, 0.15)

    assert len(results) == 12
    assert all(isinstance(r, ExecutionStats) for r in results)
    assert all(r.error is None and r.count > 0 for r in results)
    # One exclusive connection per worker, all released.
    assert len(factory.connections) == 12
    assert all(c.closed for c in factory.connections)


async def test_workers_run_concurrently(connection_factory):
    factory = connection_factory(latency=0.05)
    runner = FanOutRunner(connect=factory)

    started = time.monotonic()
    results = await runner.run(20, QUERY, 0.3)
    elapsed = time.monotonic() - started

    # Serial execution of 20 workers would take 20 * 0.3s.
    assert elapsed < 1.5
    assert merge_stats(results).count >= 20


async def test_failing_workers_do_not_block_barrier(connection_factory):
    err = RuntimeError("deadlock detected")
    factory = connection_factory(latency=0.01, error=err, fail_after=2)
    runner = FanOutRunner(connect=factory)

    results = await runner.run(4, QUERY, 5.0)

    assert len(results) == 4
    assert all(r.error is err for r in results)
    assert all(r.count == 0 for r in results)


async def test_unexpected_worker_crash_becomes_failed_stats(monkeypatch, connection_factory):
    runner = FanOutRunner(connect=connection_factory())

    class _Exploding:
        async def run(self):
            raise KeyError("bug")

    monkeypatch.setattr(runner, "_measurer", lambda **_: _Exploding())

    results = await runner.run(3, QUERY, 0.1)

    assert len(results) == 3
    assert all(isinstance(r.error, KeyError) for r in results)


async def test_stop_signal_reaches_every_worker(connection_factory):
    factory = connection_factory(latency=0.05)
    runner = FanOutRunner(connect=factory)
    stop = asyncio.Event()

    task = asyncio.create_task(runner.run(10, QUERY, 60.0, stop))
    await asyncio.sleep(0.1)
    started = time.monotonic()
    stop.set()
    results = await asyncio.wait_for(task, timeout=2.0)

    assert time.monotonic() - started < 0.5
    assert len(results) == 10
    assert merge_stats(results).error is None
    assert all(c.closed for c in factory.connections)


async def test_parent_cancellation_propagates(connection_factory):
    factory = connection_factory(latency=0.05)
    runner = FanOutRunner(connect=factory)

    task = asyncio.create_task(runner.run(6, QUERY, 60.0))
    await asyncio.sleep(0.1)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert len(factory.connections) == 6
    assert all(c.closed for c in factory.connections)


async def test_rejects_non_positive_worker_count(connection_factory):
    runner = FanOutRunner(connect=connection_factory())
    with pytest.raises(ValueError):
        await runner.run(0, QUERY, 1.0)


async def test_individually_cancelled_worker_is_not_an_error(monkeypatch, connection_factory):
    runner = FanOutRunner(connect=connection_factory())

    class _Worker:
        def __init__(self, worker_id):
            self.worker_id = worker_id

        async def run(self):
            if self.worker_id == 1:
                raise asyncio.CancelledError()
            return ExecutionStats(
                min_latency_ms=1.0, avg_latency_ms=1.0, max_latency_ms=1.0, count=3
            )

    monkeypatch.setattr(runner, "_measurer", lambda **kw: _Worker(kw["worker_id"]))

    results = await runner.run(3, QUERY, 0.1)

    assert len(results) == 3
    assert results[1] == ExecutionStats.empty()
    assert results[1].error is None
    merged = merge_stats(results)
    assert merged.error is None
    assert merged.count == 6
