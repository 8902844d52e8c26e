"""Network module: connections and command clients for cluster nodes."""

from .client import NodeClient
from .connection import NodeConnection
from .pool import ClientPool

__all__ = ["ClientPool", "NodeClient", "NodeConnection"]
