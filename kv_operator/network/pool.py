"""
Client Pool Module

Caches one NodeClient per (pod, namespace). Nodes are addressed through
their stable per-pod DNS name under the cluster's headless service.
"""

import logging
from typing import Callable, Dict, Optional

from ..cluster.models import Node
from ..config.settings import Settings, settings as default_settings
from .client import NodeClient
from .connection import NodeConnection

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[[str, int], NodeConnection]


class ClientPool:
    """
    Cached node clients with transparent reconnect.

    Args:
        config: Settings (cluster domain, command timeout)
        connection_factory: Builds a connection for (host, port); tests inject
            in-memory connections here
    """

    def __init__(self, config: Optional[Settings] = None, connection_factory: Optional[ConnectionFactory] = None):
        self.settings = config or default_settings
        self._factory = connection_factory or self._default_factory
        self._clients: Dict[str, NodeClient] = {}

    def _default_factory(self, host: str, port: int) -> NodeConnection:
        return NodeConnection(host, port, timeout=self.settings.COMMAND_TIMEOUT)

    @staticmethod
    def key(pod_name: str, namespace: str) -> str:
        return f"{pod_name}_{namespace}"

    def host_for(self, address: str, namespace: str) -> str:
        return f"{address}.{namespace}.svc.{self.settings.CLUSTER_DOMAIN}"

    async def get(self, node: Node) -> NodeClient:
        """Return a connected client for ``node``, reusing the cached one."""
        return await self.get_for(node.address, node.port or self.settings.NODE_PORT, node.namespace, node.pod_name)

    async def get_for(self, address: str, port: int, namespace: str, pod_name: str) -> NodeClient:
        key = self.key(pod_name, namespace)

        client = self._clients.get(key)
        if client is not None:
            if not client.is_connected:
                logger.info(f"Reconnecting cached client for {namespace}/{pod_name}")
                await client.connect()
            return client

        host = self.host_for(address, namespace)
        logger.info(f"Connecting to node {namespace}/{pod_name} at {host}:{port}")

        client = NodeClient(self._factory(host, port), name=pod_name, config=self.settings)
        await client.connect()
        self._clients[key] = client
        return client

    async def discard(self, pod_name: str, namespace: str) -> None:
        """Close and drop the cached client of a removed pod."""
        client = self._clients.pop(self.key(pod_name, namespace), None)
        if client is not None:
            await client.close()

    async def close(self) -> None:
        """Close every cached client."""
        clients, self._clients = list(self._clients.values()), {}
        for client in clients:
            await client.close()
