#!/usr/bin/env python3
"""Fill a table with generated rows from many connections until interrupted."""

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
from overload.core.ingest import LOADERS, IngestConfig, run_ingest
from overload.core.log_context import configure_logging

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Bulk-load generated rows and report database growth."
    )
    parser.add_argument("--connstr", default=settings.CONNSTR, help="Target URI.")
    parser.add_argument(
        "--table", default=settings.INGEST_TABLE_NAME, help="Table to fill."
    )
    parser.add_argument(
        "--batch-size", type=int, default=settings.INGEST_BATCH_SIZE
    )
    parser.add_argument("--workers", type=int, default=settings.INGEST_WORKERS)
    parser.add_argument(
        "--strategy",
        choices=sorted(LOADERS),
        default=settings.INGEST_STRATEGY,
        help="copy: client-side rows via COPY; generate: server-side INSERT.",
    )
    parser.add_argument(
        "--duration",
        type=float,
        default=0.0,
        help="Stop after this many seconds (0 = until interrupted).",
    )
    return parser


async def _run(args: argparse.Namespace) -> int:
    if not args.connstr:
        logger.error("--connstr (or $CONNSTR) is required")
        return 1

    stop_signal = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_signal.set)
        except NotImplementedError:
            pass
    if args.duration > 0:
        loop.call_later(args.duration, stop_signal.set)

    rows = await run_ingest(
        args.connstr,
        IngestConfig(table_name=args.table, batch_size=args.batch_size),
        workers=args.workers,
        strategy=args.strategy,
        stop_signal=stop_signal,
    )
    logger.info("Ingest done: %d rows", rows)
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    configure_logging(settings.LOG_LEVEL)
    try:
        return asyncio.run(_run(args))
    except KeyboardInterrupt:
        print("[ingest] interrupted", file=sys.stderr)
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
