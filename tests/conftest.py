"""
Pytest Configuration and Fixtures

This module provides shared fixtures and configuration for all tests.
"""

import asyncio
import socket
import pytest
import pytest_asyncio
from contextlib import closing
from typing import AsyncGenerator

from kv_operator.config.settings import Settings
from kv_operator.network.pool import ClientPool
from kv_operator.protocol.parser import ProtocolParser
from kv_operator.reconcile.pipeline import Reconciler
from tests.fakes import FakeNetwork, FakeNode, FakePlatform, serve_node


def find_free_port() -> int:
    """Find an available port for testing."""
    with closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as s:
        s.bind(('', 0))
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        return s.getsockname()[1]


# ============================================================================
# Settings Fixtures
# ============================================================================

@pytest.fixture
def fast_settings() -> Settings:
    """Settings with every wait shortened so reconcile passes run instantly."""
    return Settings(
        NAMESPACE="default",
        COMMAND_TIMEOUT=1.0,
        REPLICATE_RETRY_ATTEMPTS=3,
        REPLICATE_RETRY_DELAY=0.0,
        MIGRATION_SETTLE_DELAY=0.0,
        READINESS_TIMEOUT=0.2,
        REQUEUE_MIN_DELAY=0.01,
        REQUEUE_MAX_DELAY=0.05,
    )


# ============================================================================
# Protocol Fixtures
# ============================================================================

@pytest.fixture
def parser() -> ProtocolParser:
    """Create a ProtocolParser instance."""
    return ProtocolParser()


# ============================================================================
# Simulated Cluster Fixtures
# ============================================================================

@pytest.fixture
def network() -> FakeNetwork:
    """An empty simulated node network."""
    return FakeNetwork()


@pytest.fixture
def platform(network: FakeNetwork) -> FakePlatform:
    """In-memory platform whose pods are backed by simulated nodes."""
    return FakePlatform(network)


@pytest_asyncio.fixture
async def pool(network: FakeNetwork, fast_settings: Settings) -> AsyncGenerator[ClientPool, None]:
    """Client pool that connects to simulated nodes instead of sockets."""
    clients = ClientPool(fast_settings, connection_factory=network.connection_factory)
    yield clients
    await clients.close()


@pytest.fixture
def reconciler(platform: FakePlatform, pool: ClientPool, fast_settings: Settings) -> Reconciler:
    """Reconciler wired to the in-memory platform and simulated nodes."""
    return Reconciler(platform, pool, fast_settings)


# ============================================================================
# Node Server Fixtures
# ============================================================================

@pytest.fixture
def server_port() -> int:
    """Get a free port for server testing."""
    return find_free_port()


@pytest_asyncio.fixture
async def node_server(server_port: int) -> AsyncGenerator[FakeNode, None]:
    """
    Serve one simulated node over real TCP.

    This fixture:
    1. Creates a FakeNode on 127.0.0.1 and a free port
    2. Starts an asyncio server speaking RESP on its behalf
    3. Yields the node for testing
    4. Cleans up after the test
    """
    node = FakeNetwork().add_node('127.0.0.1', server_port)

    srv = await asyncio.start_server(
        lambda r, w: serve_node(node, r, w), '127.0.0.1', server_port
    )

    yield node

    srv.close()
    await srv.wait_closed()


# ============================================================================
# Pytest Configuration
# ============================================================================

def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )


# Configure asyncio mode for pytest-asyncio
pytest_plugins = ['pytest_asyncio']
