#!/usr/bin/env python3
"""
Route handler tests for /api/runs, called directly without an HTTP client.
"""

import asyncio

import pytest
from fastapi import HTTPException

from overload.api.routes import runs as runs_routes
from overload.core.launcher import Launcher
from overload.core.run_registry import RunRegistry
from overload.models import RunStatus

pytestmark = pytest.mark.asyncio


@pytest.fixture
def fake_registry(monkeypatch, connection_factory):
    factory = connection_factory(latency=0.005)

    def _launcher(connstr: str) -> Launcher:
        return Launcher(
            connstr or "postgres://unused",
            connect=factory,
            iteration_seconds=0.05,
            base_workers=2,
            ramp_steps=1,
        )

    reg = RunRegistry(launcher_factory=_launcher)
    monkeypatch.setattr(runs_routes, "registry", reg)
    return reg


async def _wait_finished(reg: RunRegistry, run_id: str) -> None:
    run = await reg.get(run_id)
    await asyncio.wait_for(run.task, timeout=2.0)


async def test_create_and_get_run(fake_registry):
    resp = await runs_routes.create_run(runs_routes.RunCreateRequest(sql="SELECT 1"))
    assert resp.status == RunStatus.RUNNING.value

    await _wait_finished(fake_registry, resp.run_id)
    body = await runs_routes.get_run(resp.run_id)

    assert body["status"] == "completed"
    assert body["state"] == "done"
    assert [s["worker_count"] for s in body["steps"]] == [1, 2]
    assert body["result"]["comment"] == "ok"
    assert body["result"]["worker_count"] == 2


async def test_create_run_rejects_empty_sql(fake_registry):
    with pytest.raises(HTTPException) as exc:
        await runs_routes.create_run(runs_routes.RunCreateRequest(sql="   "))
    assert exc.value.status_code == 400


async def test_unknown_run_is_404(fake_registry):
    with pytest.raises(HTTPException) as exc:
        await runs_routes.get_run("missing")
    assert exc.value.status_code == 404

    with pytest.raises(HTTPException) as exc:
        await runs_routes.stop_run("missing")
    assert exc.value.status_code == 404


async def test_stop_run_cancels(monkeypatch, connection_factory):
    factory = connection_factory(latency=0.01)
    reg = RunRegistry(
        launcher_factory=lambda connstr: Launcher(
            "postgres://unused", connect=factory, iteration_seconds=30.0, base_workers=2
        )
    )
    monkeypatch.setattr(runs_routes, "registry", reg)

    resp = await runs_routes.create_run(runs_routes.RunCreateRequest(sql="SELECT 1"))
    await asyncio.sleep(0.1)
    await runs_routes.stop_run(resp.run_id)
    await _wait_finished(reg, resp.run_id)

    body = await runs_routes.get_run(resp.run_id)
    assert body["status"] == "cancelled"
    assert len(body["steps"]) == 1
    assert all(c.closed for c in factory.connections)


async def test_history_errors_become_500(monkeypatch):
    class _Broken:
        async def recent(self, limit):
            raise ConnectionError("history database down")

    monkeypatch.setattr(runs_routes, "history_store", _Broken())

    with pytest.raises(HTTPException) as exc:
        await runs_routes.list_history(limit=10)
    assert exc.value.status_code == 500
    assert "history database down" in exc.value.detail


async def test_history_returns_rows(monkeypatch):
    class _Store:
        async def recent(self, limit):
            return [{"id": 1, "query": "SELECT 1", "comment": "ok"}][:limit]

    monkeypatch.setattr(runs_routes, "history_store", _Store())

    rows = await runs_routes.list_history(limit=1)
    assert rows[0]["comment"] == "ok"
