"""
Latency statistics: per-worker accumulation and population-level merging.
"""

from __future__ import annotations

import math
from typing import Iterable, Optional

from overload.models.query import ExecutionStats


class WorkerErrors(Exception):
    """Several worker failures reported as one error, none dropped."""

    def __init__(self, errors: Iterable[BaseException]) -> None:
        flat: list[BaseException] = []
        for err in errors:
            if isinstance(err, WorkerErrors):
                flat.extend(err.errors)
            else:
                flat.append(err)
        self.errors = flat
        super().__init__("; ".join(str(e) or type(e).__name__ for e in flat))

    @property
    def messages(self) -> list[str]:
        return [str(e) or type(e).__name__ for e in self.errors]


def join_errors(errors: Iterable[Optional[BaseException]]) -> Optional[BaseException]:
    """Combine errors; None for none, the error itself for exactly one."""
    present = [e for e in errors if e is not None]
    if not present:
        return None
    if len(present) == 1:
        return present[0]
    return WorkerErrors(present)


class LatencyAccumulator:
    """Running min/max/sum/count over individual execution latencies."""

    def __init__(self) -> None:
        self.min_ms = math.inf
        self.max_ms = 0.0
        self.sum_ms = 0.0
        self.count = 0

    def record(self, elapsed_ms: float) -> None:
        self.count += 1
        self.sum_ms += elapsed_ms
        if elapsed_ms < self.min_ms:
            self.min_ms = elapsed_ms
        if elapsed_ms > self.max_ms:
            self.max_ms = elapsed_ms

    def to_stats(self) -> ExecutionStats:
        if self.count == 0:
            return ExecutionStats.empty()
        return ExecutionStats(
            min_latency_ms=self.min_ms,
            avg_latency_ms=self.sum_ms / self.count,
            max_latency_ms=self.max_ms,
            count=self.count,
        )


def merge_stats(results: Iterable[ExecutionStats]) -> ExecutionStats:
    """
    Merge per-worker stats into one combined value.

    The combined average is weighted by each worker's count; min and max are
    the true extremes over every worker that completed at least one
    execution. All worker errors are kept on the result.
    """
    total = 0
    weighted_sum = 0.0
    min_ms = math.inf
    max_ms = 0.0
    errors: list[BaseException] = []

    for st in results:
        if st.error is not None:
            errors.append(st.error)
        if st.count <= 0:
            continue
        total += st.count
        weighted_sum += st.avg_latency_ms * st.count
        min_ms = min(min_ms, st.min_latency_ms)
        max_ms = max(max_ms, st.max_latency_ms)

    error = join_errors(errors)
    if total == 0:
        return ExecutionStats(error=error)

    return ExecutionStats(
        min_latency_ms=min_ms,
        avg_latency_ms=weighted_sum / total,
        max_latency_ms=max_ms,
        count=total,
        error=error,
    )
