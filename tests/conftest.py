"""Pytest configuration and fixtures for clouds testing.

Nodes created through ``make_server`` share one in-memory broker and are
torn down automatically, so tests never leave tasks running.
"""

from collections.abc import AsyncGenerator, Callable
from typing import Any

import pytest
import pytest_asyncio
from loguru import logger

from clouds.core.config import CloudsSettings
from clouds.server import CloudsServer
from tests.memory_broker import MemoryHub

TEST_HEARTBEAT = 0.05


class AsyncTestContext:
    """Context manager for async test operations with automatic cleanup."""

    def __init__(self) -> None:
        self.servers: list[CloudsServer] = []

    async def __aenter__(self) -> "AsyncTestContext":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        for server in self.servers:
            if not server.started:
                continue
            try:
                await server.exit()
            except Exception as e:
                logger.warning(f"Error stopping node {server.id}: {e}")
        self.servers.clear()


@pytest_asyncio.fixture
async def test_context() -> AsyncGenerator[AsyncTestContext, None]:
    """Provides a clean async test context with automatic resource cleanup."""
    async with AsyncTestContext() as ctx:
        yield ctx


@pytest.fixture
def hub() -> MemoryHub:
    return MemoryHub()


@pytest.fixture
def make_server(
    hub: MemoryHub, test_context: AsyncTestContext
) -> Callable[..., CloudsServer]:
    """Factory for nodes wired to the shared in-memory broker.

    Example Usage:
        async def test_echo(make_server):
            server = make_server()
            server.register("echo", lambda x: x)
            await server.start()
    """

    def factory(**overrides: Any) -> CloudsServer:
        options: dict[str, Any] = {"prefix": "test", "heartbeat": TEST_HEARTBEAT}
        options.update(overrides)
        server = CloudsServer(
            settings=CloudsSettings(**options), connection_factory=hub.connect
        )
        test_context.servers.append(server)
        return server

    return factory
