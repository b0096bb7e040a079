"""
Logging helpers shared by the app and the command line tools.

Components take an explicit logger handle; ``WorkerLoggerAdapter`` carries
per-worker context (worker id, query preview) on every record so concurrent
workers stay distinguishable in one console stream.
"""

from __future__ import annotations

import logging
from typing import Any, MutableMapping

from uvicorn.logging import DefaultFormatter

LoggerLike = logging.Logger | logging.LoggerAdapter


class WorkerLoggerAdapter(logging.LoggerAdapter):
    """Prefix messages with bracketed context, e.g. ``[worker=3] message``."""

    def __init__(self, logger: LoggerLike, **context: Any) -> None:
        merged: dict[str, Any] = {}
        if isinstance(logger, logging.LoggerAdapter) and logger.extra:
            merged.update(logger.extra)
            logger = logger.logger
        merged.update({k: v for k, v in context.items() if v is not None})
        super().__init__(logger, merged)

    def with_context(self, **context: Any) -> "WorkerLoggerAdapter":
        return WorkerLoggerAdapter(self, **context)

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        extra = dict(self.extra or {})
        if "extra" in kwargs:
            extra.update(kwargs["extra"])
        kwargs["extra"] = extra
        if not self.extra:
            return msg, kwargs
        prefix = " ".join(f"[{k}={v}]" for k, v in self.extra.items())
        return f"{prefix} {msg}", kwargs


def bind(
    logger: LoggerLike | None, default_name: str, **context: Any
) -> WorkerLoggerAdapter:
    """Return an adapter over ``logger`` (or the ``default_name`` logger) with extra context."""
    base = logger if logger is not None else logging.getLogger(default_name)
    return WorkerLoggerAdapter(base, **context)


def configure_logging(level: str = "INFO") -> None:
    # Use uvicorn's colored "LEVEL:" format for all loggers.
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(
        DefaultFormatter(fmt="%(levelprefix)s %(asctime)s - %(message)s", use_colors=True)
    )

    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        handlers=[console_handler],
        force=True,
    )

    # Connection handshake details are noise at ramp scale.
    logging.getLogger("asyncpg").setLevel(logging.WARNING)
