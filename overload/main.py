"""
Overload - Main Application Entry Point

FastAPI application for launching concurrency ramps and browsing their history.
"""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI

from overload import __version__
from overload.api.routes import runs
from overload.config import settings
from overload.connectors import postgres_pool
from overload.core.log_context import configure_logging
from overload.core.run_registry import registry

configure_logging(settings.LOG_LEVEL)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Overload API starting (version %s)", __version__)
    yield
    logger.info("Shutting down: stopping live runs and closing pools...")
    await registry.shutdown()
    await postgres_pool.close_all_pools()


app = FastAPI(title="Overload", version=__version__, lifespan=lifespan)
app.include_router(runs.router, prefix="/api/runs", tags=["runs"])


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok", "version": __version__}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "overload.main:app",
        host=settings.APP_HOST,
        port=settings.APP_PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )
