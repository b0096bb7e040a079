"""
Run Result Models

Defines Pydantic models for the reporting records derived from settled
ramp statistics.
"""

from enum import Enum
from typing import Optional, Dict, Any
from datetime import UTC, datetime

from pydantic import BaseModel, Field

from overload.models.query import ExecutionStats, Query, RampStep


class RunStatus(str, Enum):
    """Ramp run status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


def _comment_for(stats: ExecutionStats) -> str:
    if stats.error is not None:
        return f"error: {stats.error}"
    if stats.count == 0 or stats.avg_latency_ms == 0:
        return "timeout"
    return "ok"


class RunResult(BaseModel):
    """
    Reporting record for one query at one worker count.

    Always derived from a settled ExecutionStats via ``from_stats``.
    """

    query: str = Field(..., description="SQL text that was executed")
    worker_count: int = Field(..., description="Concurrent connections")
    is_failed: bool = Field(..., description="Error, timeout or zero latency")
    qps: float = Field(0.0, description="Per-connection statements per second")
    comment: str = Field(..., description="ok, timeout or error: <message>")
    stats: Dict[str, Any] = Field(
        default_factory=dict, description="Raw aggregated statistics"
    )
    step_num: Optional[int] = Field(None, description="Ramp step (0 = baseline)")
    duration_seconds: Optional[float] = Field(None, description="Step budget")
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def from_stats(
        cls,
        query: Query,
        worker_count: int,
        stats: ExecutionStats,
        *,
        step_num: Optional[int] = None,
        duration_seconds: Optional[float] = None,
    ) -> "RunResult":
        return cls(
            query=query.sql,
            worker_count=worker_count,
            is_failed=stats.is_failed,
            qps=stats.qps,
            comment=_comment_for(stats),
            stats=stats.to_dict(),
            step_num=step_num,
            duration_seconds=duration_seconds,
        )

    @classmethod
    def from_step(cls, query: Query, step: RampStep) -> "RunResult":
        return cls.from_stats(
            query,
            step.worker_count,
            step.stats,
            step_num=step.step_num,
            duration_seconds=step.duration_seconds,
        )

    def info(self) -> Dict[str, Any]:
        """JSON payload persisted alongside the flat columns."""
        payload = dict(self.stats)
        payload["step"] = self.step_num
        payload["duration_seconds"] = self.duration_seconds
        return payload
