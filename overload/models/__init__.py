"""
Data models for ramp measurements and their reporting records.
"""

from .query import ExecutionStats, Query, RampStep
from .run_result import RunResult, RunStatus

__all__ = [
    "ExecutionStats",
    "Query",
    "RampStep",
    "RunResult",
    "RunStatus",
]
