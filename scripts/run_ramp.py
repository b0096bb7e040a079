#!/usr/bin/env python3
"""Ramp one or more SQL statements against a database and report QPS."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from overload.config import settings
from overload.connectors import postgres_pool
from overload.core.history_store import HistoryStore
from overload.core.launcher import Launcher
from overload.core.log_context import configure_logging
from overload.models import Query

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Measure a statement's latency under a growing number of connections."
    )
    parser.add_argument(
        "--connstr",
        default=settings.CONNSTR,
        help="Target connection URI (default: $CONNSTR).",
    )
    parser.add_argument(
        "--sql",
        action="append",
        default=[],
        help="Statement to ramp. May be given several times.",
    )
    parser.add_argument(
        "--sql-file",
        action="append",
        default=[],
        type=Path,
        help="File holding one statement to ramp. May be given several times.",
    )
    parser.add_argument(
        "--iteration-seconds",
        type=float,
        default=settings.RAMP_ITERATION_SECONDS,
        help="Time budget of every ramp step.",
    )
    parser.add_argument(
        "--base-workers",
        type=int,
        default=settings.RAMP_BASE_WORKERS,
        help="Worker count of the first ramp step.",
    )
    parser.add_argument(
        "--growth-factor",
        type=int,
        default=settings.RAMP_GROWTH_FACTOR,
        help="Worker count multiplier between steps (>= 2).",
    )
    parser.add_argument(
        "--steps",
        type=int,
        default=settings.RAMP_STEPS,
        help="Number of ramp steps after the baseline.",
    )
    parser.add_argument(
        "--stop-on-failure",
        action="store_true",
        default=settings.RAMP_STOP_ON_FAILURE,
        help="End the ramp at the first failed or timed out step.",
    )
    parser.add_argument(
        "--no-history",
        action="store_true",
        help="Do not persist results to query_exec_info.",
    )
    return parser


def _collect_queries(args: argparse.Namespace) -> list[Query]:
    queries = [Query(sql=s.strip()) for s in args.sql if s.strip()]
    for path in args.sql_file:
        text = path.read_text(encoding="utf-8").strip()
        if text:
            queries.append(Query(sql=text))
    return queries


async def _run(args: argparse.Namespace) -> int:
    if not args.connstr:
        logger.error("--connstr (or $CONNSTR) is required")
        return 1
    queries = _collect_queries(args)
    if not queries:
        logger.error("at least one --sql or --sql-file is required")
        return 1

    history = None
    if not args.no_history and settings.HISTORY_ENABLED:
        history = HistoryStore()

    launcher = Launcher(
        args.connstr,
        history=history,
        iteration_seconds=args.iteration_seconds,
        base_workers=args.base_workers,
        growth_factor=args.growth_factor,
        ramp_steps=args.steps,
        stop_on_failure=args.stop_on_failure,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, launcher.cancel_all)
        except NotImplementedError:
            pass

    try:
        report = await launcher.run_many(queries)
    finally:
        await postgres_pool.close_all_pools()

    print(report.render())
    return 1 if report.failed else 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    configure_logging(settings.LOG_LEVEL)
    try:
        return asyncio.run(_run(args))
    except KeyboardInterrupt:
        print("[ramp] interrupted", file=sys.stderr)
        return 130
    except ValueError as e:
        print(f"[ramp] {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
