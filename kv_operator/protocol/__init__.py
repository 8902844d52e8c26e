"""Protocol module for the node administrative protocol."""

from .commands import (
    ClusterInfo,
    Command,
    CommandType,
    LiveNode,
    Reply,
    ReplyStatus,
    Shard,
    ShardNode,
)
from .parser import ProtocolParser

__all__ = [
    "ClusterInfo",
    "Command",
    "CommandType",
    "LiveNode",
    "Reply",
    "ReplyStatus",
    "Shard",
    "ShardNode",
    "ProtocolParser",
]
