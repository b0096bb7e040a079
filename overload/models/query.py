"""
Core value types for ramp measurements.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass(frozen=True)
class Query:
    """A single SQL statement to benchmark."""

    sql: str

    def preview(self, max_chars: int = 80) -> str:
        text = " ".join(self.sql.split())
        if len(text) > max_chars:
            return text[:max_chars] + "..."
        return text


@dataclass(frozen=True)
class ExecutionStats:
    """
    Latency summary over a set of successful executions.

    ``count == 0`` with no error means the budget ran out before any statement
    completed (a timeout). Any ``error`` marks the stats as failed.
    """

    min_latency_ms: float = math.inf
    avg_latency_ms: float = 0.0
    max_latency_ms: float = 0.0
    count: int = 0
    error: Optional[BaseException] = field(default=None, compare=False)

    @classmethod
    def empty(cls) -> "ExecutionStats":
        return cls()

    @classmethod
    def failed(cls, error: BaseException) -> "ExecutionStats":
        return cls(error=error)

    @property
    def is_timeout(self) -> bool:
        return self.error is None and self.count == 0

    @property
    def is_failed(self) -> bool:
        return self.error is not None or self.count == 0 or self.avg_latency_ms == 0

    @property
    def qps(self) -> float:
        """Statements per second of a single connection at this latency."""
        if self.avg_latency_ms > 0:
            return 1000.0 / self.avg_latency_ms
        return 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "count": self.count,
            "min_latency_ms": None
            if math.isinf(self.min_latency_ms)
            else self.min_latency_ms,
            "avg_latency_ms": self.avg_latency_ms,
            "max_latency_ms": self.max_latency_ms,
            "error": str(self.error) if self.error is not None else None,
        }


@dataclass(frozen=True)
class RampStep:
    """Result of one ramp iteration at a fixed worker count."""

    step_num: int
    worker_count: int
    duration_seconds: float
    stats: ExecutionStats

    @property
    def is_baseline(self) -> bool:
        return self.step_num == 0
