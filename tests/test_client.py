"""
Tests for the Node Client

These tests run NodeClient over real TCP against a simulated node:
- Introspection (MYID, INFO, NODES)
- Benign and fatal command errors
- REPLICATE retried while the primary is unknown
- Connection failures

Run with: python -m pytest tests/test_client.py -v
"""

import pytest
import pytest_asyncio

from kv_operator.errors import CommandError, NodeConnectionError, RetryExhaustedError
from kv_operator.network.client import NodeClient, is_unknown_node_error
from kv_operator.network.connection import NodeConnection
from kv_operator.protocol.commands import Command
from tests.conftest import find_free_port


@pytest_asyncio.fixture
async def client(node_server, server_port, fast_settings):
    """NodeClient connected to the node_server fixture."""
    node_client = NodeClient(NodeConnection('127.0.0.1', server_port, timeout=1.0),
                             name="node-0", config=fast_settings)
    await node_client.connect()
    yield node_client
    await node_client.close()


@pytest.mark.asyncio
class TestIntrospection:
    """Test read-only commands."""

    async def test_myid(self, client, node_server):
        assert await client.myid() == node_server.id

    async def test_cluster_info(self, client, node_server):
        node_server.config_epoch = 3
        info = await client.cluster_info()
        assert info.current_epoch == 3
        assert info.known_nodes == 1

    async def test_myself(self, client, node_server):
        await client.add_slots_range(0, 99)
        me = await client.myself()
        assert me.id == node_server.id
        assert me.is_primary
        assert me.slots == [0, 99]

    async def test_shards(self, client):
        await client.add_slots_range(0, 16383)
        shards = await client.shards()
        assert shards[0].slots == [0, 16383]
        assert shards[0].nodes[0].role == "primary"


@pytest.mark.asyncio
class TestCommandErrors:
    """Test how error replies surface."""

    async def test_forget_unknown_is_benign(self, client):
        """Forgetting an id the node never knew returns False."""
        assert await client.forget("f" * 40) is False

    async def test_forget_myself_raises(self, client, node_server):
        """Any other FORGET error is fatal."""
        with pytest.raises(CommandError) as exc_info:
            await client.forget(node_server.id)
        assert exc_info.value.message == "I tried hard but I can't forget myself..."

    async def test_set_epoch_twice_raises(self, client):
        await client.set_config_epoch(1)
        with pytest.raises(CommandError) as exc_info:
            await client.set_config_epoch(2)
        assert "SET-CONFIG-EPOCH" in exc_info.value.command

    async def test_reset_changes_id(self, client, node_server):
        """A hard reset gives the node a new identity."""
        old = await client.myid()
        await client.reset(hard=True)
        assert await client.myid() != old

    async def test_migrate_to_unreachable_host_raises(self, client, node_server):
        """MIGRATE to an unreachable host surfaces the node's error."""
        await client.add_slots_range(0, 10)
        with pytest.raises(CommandError):
            await client.migrate_slots_range("10.9.9.9", 6379, 0, 10)


@pytest.mark.asyncio
class TestReplicate:
    """Test REPLICATE retries during gossip lag."""

    async def test_retries_until_known(self, client, node_server):
        """Unknown-node errors are retried until the primary is visible."""
        primary = node_server.network.add_node('10.0.0.9')
        node_server.network.gossip(node_server, primary)
        node_server.replicate_lag = 2

        await client.replicate(primary.id)
        assert node_server.master_id == primary.id
        assert node_server.replicate_lag == 0

    async def test_retries_exhausted(self, client, node_server, fast_settings):
        """A primary that never becomes known exhausts the budget."""
        with pytest.raises(RetryExhaustedError) as exc_info:
            await client.replicate("a" * 40)
        assert is_unknown_node_error(exc_info.value.last_error)

    async def test_other_errors_are_not_retried(self, client, node_server):
        """A node that owns slots refuses at once."""
        primary = node_server.network.add_node('10.0.0.9')
        node_server.network.gossip(node_server, primary)
        await client.add_slots_range(0, 10)

        with pytest.raises(CommandError):
            await client.replicate(primary.id)


@pytest.mark.asyncio
class TestConnection:
    """Test connection handling."""

    async def test_connect_refused(self):
        connection = NodeConnection('127.0.0.1', find_free_port(), timeout=0.5)
        with pytest.raises(NodeConnectionError):
            await connection.connect()
        assert not connection.is_connected

    async def test_command_to_closed_port_raises(self):
        """A command that cannot connect fails instead of retrying."""
        connection = NodeConnection('127.0.0.1', find_free_port(), timeout=0.5)
        with pytest.raises(NodeConnectionError):
            await connection.execute(Command.myid())

    async def test_reconnects_lazily(self, client, node_server):
        """A closed connection is re-established on the next command."""
        await client.close()
        assert not client.is_connected
        assert await client.myid() == node_server.id
        assert client.is_connected


class TestUnknownNodeMatcher:
    """Test recognising unknown-node errors."""

    def test_markers(self):
        assert is_unknown_node_error(CommandError("CLUSTER FORGET x", "ERR Unknown node x"))
        assert is_unknown_node_error(CommandError("CLUSTER FORGET x", "Unknown node x"))
        assert is_unknown_node_error(CommandError("CLUSTER REPLICATE x", "ERR I don't know about node x"))
        assert not is_unknown_node_error(CommandError("CLUSTER FORGET x", "ERR Can't forget my master!"))
        assert not is_unknown_node_error(ValueError("Unknown node"))
