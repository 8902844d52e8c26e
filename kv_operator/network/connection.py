"""
Node Connection Module

A single persistent connection to one cluster node, built on the
``redis.asyncio`` client. Requests are serialised: one command in flight per
connection.
"""

import asyncio
import logging
from typing import Optional

import redis.asyncio as redis
from redis.asyncio.retry import Retry
from redis.backoff import NoBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError, TimeoutError as RedisTimeoutError

from ..errors import NodeConnectionError
from ..protocol.commands import Command, Reply

logger = logging.getLogger(__name__)


class NodeConnection:
    """
    Async connection to a cluster node.

    Opened lazily on the first command; a failed exchange drops the client so
    the next command reconnects. The client never retries on its own, a
    failed command fails the reconcile pass.
    """

    def __init__(self, host: str, port: int, timeout: float = 10.0):
        """
        Initialize the connection.

        Args:
            host: DNS name or IP of the node
            port: Node port
            timeout: Seconds allowed for connecting and for each reply
        """
        self.host = host
        self.port = port
        self.timeout = timeout
        self._redis: Optional[redis.Redis] = None
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self._redis is not None

    def _new_client(self) -> redis.Redis:
        return redis.Redis(
            host=self.host,
            port=self.port,
            socket_timeout=self.timeout,
            socket_connect_timeout=self.timeout,
            decode_responses=True,
            single_connection_client=True,
            retry=Retry(NoBackoff(), 0),
            lib_name=None,
            lib_version=None,
        )

    async def connect(self) -> None:
        """Open the connection."""
        client = self._new_client()
        try:
            await client.initialize()
        except (RedisConnectionError, RedisTimeoutError, OSError) as exc:
            await client.aclose()
            raise NodeConnectionError(f"cannot connect to {self.host}:{self.port}: {exc}") from exc
        self._redis = client
        logger.debug(f"Connected to {self.host}:{self.port}")

    async def execute(self, command: Command) -> Reply:
        """
        Send one command and read its reply.

        Args:
            command: The command to send

        Returns:
            The decoded reply (error replies are returned, not raised)

        Raises:
            NodeConnectionError: the node is unreachable or the exchange broke
        """
        async with self._lock:
            if not self.is_connected:
                await self.connect()

            try:
                value = await self._redis.execute_command(*command.args)
            except ResponseError as exc:
                return Reply.error(str(exc))
            except RedisTimeoutError as exc:
                await self._abort()
                raise NodeConnectionError(f"timeout waiting for {command.name} on {self.host}:{self.port}") from exc
            except (RedisConnectionError, OSError) as exc:
                await self._abort()
                raise NodeConnectionError(f"{command.name} on {self.host}:{self.port} failed: {exc}") from exc
            return Reply.ok(value)

    async def _abort(self) -> None:
        client, self._redis = self._redis, None
        if client is not None:
            try:
                await client.aclose()
            except (RedisConnectionError, OSError) as exc:
                logger.debug(f"Error closing connection to {self.host}:{self.port}: {exc}")

    async def close(self) -> None:
        """Close the connection if open."""
        async with self._lock:
            await self._abort()
