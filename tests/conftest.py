"""
Shared fakes for tests that would otherwise need a live Postgres.
"""

import asyncio
import sys
from pathlib import Path
from typing import Any, Callable, Optional

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import pytest


class FakeConnection:
    """Stands in for an asyncpg connection: each execute() sleeps ``latency``."""

    def __init__(
        self,
        *,
        latency: float = 0.01,
        error: Optional[BaseException] = None,
        fail_after: Optional[int] = None,
        close_error: Optional[BaseException] = None,
    ) -> None:
        self.latency = latency
        self.error = error
        self.fail_after = fail_after
        self.close_error = close_error
        self.executed = 0
        self.cancelled = 0
        self.closed = False
        self.statements: list[str] = []

    async def execute(self, query: str, *args: Any) -> str:
        self.statements.append(query)
        if self.error is not None and (
            self.fail_after is None or self.executed >= self.fail_after
        ):
            raise self.error
        try:
            await asyncio.sleep(self.latency)
        except asyncio.CancelledError:
            self.cancelled += 1
            raise
        self.executed += 1
        return "SELECT 1"

    async def close(self) -> None:
        self.closed = True
        if self.close_error is not None:
            raise self.close_error


class ConnectionFactory:
    """Async connect() that hands out FakeConnections and remembers them."""

    def __init__(
        self,
        build: Callable[[], FakeConnection],
        *,
        connect_delay: float = 0.0,
        connect_error: Optional[BaseException] = None,
    ) -> None:
        self._build = build
        self.connect_delay = connect_delay
        self.connect_error = connect_error
        self.connections: list[FakeConnection] = []

    async def __call__(self) -> FakeConnection:
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        if self.connect_error is not None:
            raise self.connect_error
        conn = self._build()
        self.connections.append(conn)
        return conn


@pytest.fixture
def connection_factory():
    """Build a ConnectionFactory; kwargs not used by the factory go to FakeConnection."""

    def _make(
        *,
        connect_delay: float = 0.0,
        connect_error: Optional[BaseException] = None,
        **conn_kwargs: Any,
    ) -> ConnectionFactory:
        return ConnectionFactory(
            lambda: FakeConnection(**conn_kwargs),
            connect_delay=connect_delay,
            connect_error=connect_error,
        )

    return _make
