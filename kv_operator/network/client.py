"""
Node Client Module

Typed surface over the administrative commands of one cluster node.

Commands whose success the reconciler depends on (set-epoch, add-slots,
meet, replicate, detach, migrate) raise CommandError on anything but OK.
Forgetting a node the peer never heard of is benign.
"""

import logging
from typing import List, Optional

from ..config.settings import Settings, settings as default_settings
from ..errors import CommandError
from ..protocol.commands import ClusterInfo, Command, LiveNode, Reply, Shard
from ..protocol.parser import ProtocolParser
from ..retry import retry_async
from .connection import NodeConnection

logger = logging.getLogger(__name__)

# Error fragments nodes use when a referenced node id is not in their table
UNKNOWN_NODE_MARKERS = ("unknown node", "don't know about node")

# MIGRATE reports NOKEY when the range held no keys; the slots still move
MIGRATE_OK_REPLIES = ("OK", "NOKEY")


def is_unknown_node_error(error: BaseException) -> bool:
    """True if ``error`` is a node saying it does not know the referenced id."""
    if not isinstance(error, CommandError):
        return False
    message = error.message.lower()
    return any(marker in message for marker in UNKNOWN_NODE_MARKERS)


class NodeClient:
    """
    Administrative client for a single cluster node.

    Attributes:
        name: Human readable identity used in logs (pod name)
        connection: The underlying node connection
    """

    def __init__(self, connection: NodeConnection, name: str = "", config: Optional[Settings] = None):
        self.connection = connection
        self.name = name or f"{connection.host}:{connection.port}"
        self.settings = config or default_settings
        self.parser = ProtocolParser()

    @property
    def is_connected(self) -> bool:
        return self.connection.is_connected

    async def connect(self) -> None:
        await self.connection.connect()

    async def close(self) -> None:
        await self.connection.close()

    async def execute(self, command: Command) -> Reply:
        """Send a command and return the raw reply."""
        logger.debug(f"[{self.name}] {command.name}")
        reply = await self.connection.execute(command)
        if reply.is_error:
            logger.debug(f"[{self.name}] {command.name} -> error: {reply.message}")
        return reply

    async def _ensure_ok(self, command: Command, accepted=("OK",)) -> Reply:
        reply = await self.execute(command)
        if reply.is_error:
            raise CommandError(command.name, reply.message)
        if not reply.is_ok and reply.text not in accepted:
            raise CommandError(command.name, f"unexpected reply {reply.text!r}")
        return reply

    async def _ensure_value(self, command: Command) -> Reply:
        reply = await self.execute(command)
        if reply.is_error:
            raise CommandError(command.name, reply.message)
        return reply

    # ------------------------------------------------------------------
    # Membership and ownership
    # ------------------------------------------------------------------

    async def reset(self, hard: bool = True) -> str:
        """
        Reset the node's cluster view.

        The reply is informational only; an error reply is logged, not raised.
        """
        reply = await self.execute(Command.cluster_reset(hard))
        if reply.is_error:
            logger.warning(f"[{self.name}] cluster reset replied: {reply.message}")
        return reply.text

    async def set_config_epoch(self, epoch: int) -> None:
        await self._ensure_ok(Command.set_config_epoch(epoch))

    async def add_slots_range(self, start: int, end: int) -> None:
        await self._ensure_ok(Command.add_slots_range(start, end))

    async def meet(self, address: str, port: int) -> None:
        """Introduce the node at ``address:port`` to this node's cluster."""
        await self._ensure_ok(Command.meet(address, port))

    async def replicate(self, primary_id: str, attempts: Optional[int] = None, delay: Optional[float] = None) -> None:
        """
        Attach this node as a replica of ``primary_id``.

        Retried while the node does not know the primary yet (gossip lag).

        Raises:
            RetryExhaustedError: the primary never became known
            CommandError: the node refused for any other reason
        """
        await retry_async(
            lambda: self._ensure_ok(Command.replicate(primary_id)),
            should_retry=is_unknown_node_error,
            attempts=attempts or self.settings.REPLICATE_RETRY_ATTEMPTS,
            delay=self.settings.REPLICATE_RETRY_DELAY if delay is None else delay,
            description=f"[{self.name}] replicate {primary_id}",
        )

    async def detach(self) -> None:
        """Stop replicating (``REPLICAOF NO ONE``)."""
        await self._ensure_ok(Command.detach())

    async def forget(self, node_id: str) -> bool:
        """
        Remove ``node_id`` from this node's membership table.

        Returns:
            True if the node forgot the id, False if it never knew it
        """
        try:
            await self._ensure_ok(Command.forget(node_id))
        except CommandError as exc:
            if is_unknown_node_error(exc):
                logger.info(f"[{self.name}] does not know node {node_id}, nothing to forget")
                return False
            raise
        return True

    async def migrate_slots_range(self, host: str, port: int, start: int, end: int, timeout_ms: Optional[int] = None) -> None:
        """Move slots [start, end] from this node to the node at host:port."""
        await self._ensure_ok(
            Command.migrate_slots_range(host, port, start, end, timeout_ms or self.settings.MIGRATE_TIMEOUT_MS),
            accepted=MIGRATE_OK_REPLIES,
        )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    async def myid(self) -> str:
        reply = await self._ensure_value(Command.myid())
        return reply.text.strip()

    async def cluster_info(self) -> ClusterInfo:
        reply = await self._ensure_value(Command.info())
        return self.parser.parse_cluster_info(reply.text)

    async def nodes(self) -> List[LiveNode]:
        reply = await self._ensure_value(Command.nodes())
        return self.parser.parse_cluster_nodes(reply.text)

    async def myself(self) -> LiveNode:
        """The node's own ``CLUSTER NODES`` record (live slots and master id)."""
        for node in await self.nodes():
            if node.is_myself:
                return node
        raise CommandError(Command.nodes().name, "reply has no myself record")

    async def shards(self) -> List[Shard]:
        reply = await self._ensure_value(Command.shards())
        return self.parser.parse_cluster_shards(reply.value)
