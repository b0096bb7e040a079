"""
API routes for ramp run control.
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Query as QueryParam, status
from pydantic import BaseModel, Field

from overload.api.error_handling import http_exception
from overload.core.history_store import HistoryStore
from overload.core.run_registry import registry

router = APIRouter()

history_store = HistoryStore()


class RunCreateRequest(BaseModel):
    sql: str = Field(..., description="Statement to ramp")
    connstr: Optional[str] = Field(
        None, description="Target connection URI (defaults to CONNSTR)"
    )


class RunActionResponse(BaseModel):
    run_id: str
    status: str


@router.post(
    "", response_model=RunActionResponse, status_code=status.HTTP_202_ACCEPTED
)
async def create_run(request: RunCreateRequest) -> RunActionResponse:
    """
    Start a ramp for one statement in the background.
    """
    try:
        run = await registry.start(request.sql, request.connstr)
        return RunActionResponse(run_id=run.run_id, status=run.status.value)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        raise http_exception("create run", e)


@router.get("/history")
async def list_history(
    limit: int = QueryParam(50, ge=1, le=1000),
) -> list[dict[str, Any]]:
    """
    Most recent persisted run results.
    """
    try:
        return await history_store.recent(limit)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        raise http_exception("list history", e)


@router.get("/{run_id}")
async def get_run(run_id: str) -> dict[str, Any]:
    """
    Status, settled steps and final result of a run.
    """
    try:
        run = await registry.get(run_id)
        return run.snapshot()
    except KeyError:
        raise HTTPException(status_code=404, detail="Run not found")
    except Exception as e:
        raise http_exception("get run", e)


@router.post(
    "/{run_id}/stop",
    response_model=RunActionResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def stop_run(run_id: str) -> RunActionResponse:
    """
    Signal every in-flight worker of a run to stop.
    """
    try:
        run = await registry.stop(run_id)
        return RunActionResponse(run_id=run.run_id, status=run.status.value)
    except KeyError:
        raise HTTPException(status_code=404, detail="Run not found")
    except Exception as e:
        raise http_exception("stop run", e)
