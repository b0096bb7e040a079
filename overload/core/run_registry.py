"""
Run Registry

Runs ramps in-process on behalf of the HTTP API and provides:
- lifecycle management (start/stop)
- status snapshots of settled steps and the final result
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Callable, Optional
from uuid import uuid4

from overload.config import settings
from overload.core.launcher import Launcher
from overload.core.ramp import RampController
from overload.models.query import Query
from overload.models.run_result import RunResult, RunStatus

logger = logging.getLogger(__name__)


@dataclass
class RunningRamp:
    run_id: str
    query: Query
    controller: RampController
    task: Optional[asyncio.Task] = None
    status: RunStatus = RunStatus.PENDING
    result: Optional[RunResult] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: Optional[datetime] = None

    def snapshot(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "query": self.query.sql,
            "status": self.status.value,
            "state": self.controller.state.value,
            "created_at": self.created_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "steps": [
                RunResult.from_step(self.query, s).model_dump(mode="json")
                for s in self.controller.steps
            ],
            "result": self.result.model_dump(mode="json") if self.result else None,
            "error": self.error,
        }


class RunRegistry:
    def __init__(
        self,
        launcher_factory: Optional[Callable[[str], Launcher]] = None,
        *,
        max_finished: Optional[int] = None,
    ) -> None:
        self._runs: dict[str, RunningRamp] = {}
        self._lock = asyncio.Lock()
        self._launcher_factory = launcher_factory or (
            lambda connstr: Launcher.from_settings(connstr or None)
        )
        self.max_finished = int(
            settings.RUN_REGISTRY_MAX_FINISHED if max_finished is None else max_finished
        )

    def _evict_finished(self) -> None:
        """Drop the oldest finished runs beyond ``max_finished``; live runs stay."""
        finished = [r for r in self._runs.values() if r.finished_at is not None]
        excess = len(finished) - self.max_finished
        if excess <= 0:
            return
        finished.sort(key=lambda r: r.finished_at)
        for run in finished[:excess]:
            del self._runs[run.run_id]
            logger.debug("Run %s evicted from registry", run.run_id)

    async def start(self, sql: str, connstr: Optional[str] = None) -> RunningRamp:
        if not sql or not sql.strip():
            raise ValueError("sql must not be empty")

        query = Query(sql=sql.strip())
        launcher = self._launcher_factory(connstr or "")
        controller = launcher.build_controller(query)
        run = RunningRamp(run_id=str(uuid4()), query=query, controller=controller)

        async with self._lock:
            self._runs[run.run_id] = run

        run.status = RunStatus.RUNNING
        run.task = asyncio.create_task(self._execute(run, launcher))
        logger.info("Run %s started: %s", run.run_id, query.preview(60))
        return run

    async def _execute(self, run: RunningRamp, launcher: Launcher) -> None:
        try:
            run.result = await launcher.run(run.query, controller=run.controller)
            if run.controller.cancelled:
                run.status = RunStatus.CANCELLED
            elif run.result.is_failed:
                run.status = RunStatus.FAILED
            else:
                run.status = RunStatus.COMPLETED
        except asyncio.CancelledError:
            run.status = RunStatus.CANCELLED
            raise
        except Exception as exc:
            logger.exception("Run %s crashed", run.run_id)
            run.status = RunStatus.FAILED
            run.error = str(exc)
        finally:
            run.finished_at = datetime.now(UTC)
            self._evict_finished()

    async def get(self, run_id: str) -> RunningRamp:
        async with self._lock:
            run = self._runs.get(run_id)
        if run is None:
            raise KeyError(run_id)
        return run

    async def all_runs(self) -> list[RunningRamp]:
        async with self._lock:
            return list(self._runs.values())

    async def stop(self, run_id: str) -> RunningRamp:
        run = await self.get(run_id)
        run.controller.cancel()
        logger.info("Run %s stop requested", run_id)
        return run

    async def shutdown(self, *, timeout_seconds: float = 5.0) -> None:
        """Cancel every live run and wait briefly for workers to release connections."""
        runs = await self.all_runs()
        for run in runs:
            run.controller.cancel()
        tasks = [r.task for r in runs if r.task is not None and not r.task.done()]
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=timeout_seconds)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(
                "Timed out waiting for %d runs to stop after %.1fs",
                len(pending),
                timeout_seconds,
            )
            await asyncio.gather(*pending, return_exceptions=True)


registry = RunRegistry()
