"""
Ramp execution core.

Usage:
    from overload.core import FanOutRunner, RampController, make_connect

    runner = FanOutRunner(connect=make_connect(dsn))
    stats = await RampController(runner=runner).run(Query(sql="SELECT 1"))
"""

from .fan_out import FanOutRunner, make_connect, run_many
from .measurer import SingleWorkerMeasurer
from .ramp import RampController, RampState, worker_progression
from .stats import LatencyAccumulator, WorkerErrors, join_errors, merge_stats

__all__ = [
    "FanOutRunner",
    "LatencyAccumulator",
    "RampController",
    "RampState",
    "SingleWorkerMeasurer",
    "WorkerErrors",
    "join_errors",
    "make_connect",
    "merge_stats",
    "run_many",
    "worker_progression",
]
