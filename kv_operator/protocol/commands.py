"""
Administrative Command and Reply Definitions

This module defines the data structures for the node administrative protocol:
the commands the operator issues to a cluster node and the replies it reads
back.
"""

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, List, Optional, Tuple


class CommandType(Enum):
    """Enumeration of supported administrative commands."""
    CLUSTER_RESET = auto()
    SET_CONFIG_EPOCH = auto()
    ADD_SLOTS_RANGE = auto()
    MEET = auto()
    REPLICATE = auto()
    REPLICAOF = auto()
    FORGET = auto()
    MYID = auto()
    INFO = auto()
    NODES = auto()
    SHARDS = auto()
    MIGRATE = auto()
    UNKNOWN = auto()


class ReplyStatus(Enum):
    """Enumeration of reply statuses."""
    OK = "OK"
    ERROR = "ERROR"


@dataclass
class Command:
    """
    Represents one administrative command.

    Attributes:
        type: The kind of command
        args: Wire arguments, command name included
    """
    type: CommandType
    args: Tuple[str, ...] = ()

    @property
    def name(self) -> str:
        """Human readable command line, used in logs and errors."""
        return " ".join(self.args)

    @classmethod
    def cluster_reset(cls, hard: bool = True) -> "Command":
        return cls(CommandType.CLUSTER_RESET, ("CLUSTER", "RESET", "HARD" if hard else "SOFT"))

    @classmethod
    def set_config_epoch(cls, epoch: int) -> "Command":
        return cls(CommandType.SET_CONFIG_EPOCH, ("CLUSTER", "SET-CONFIG-EPOCH", str(epoch)))

    @classmethod
    def add_slots_range(cls, start: int, end: int) -> "Command":
        return cls(CommandType.ADD_SLOTS_RANGE, ("CLUSTER", "ADDSLOTSRANGE", str(start), str(end)))

    @classmethod
    def meet(cls, address: str, port: int) -> "Command":
        return cls(CommandType.MEET, ("CLUSTER", "MEET", address, str(port)))

    @classmethod
    def replicate(cls, primary_id: str) -> "Command":
        return cls(CommandType.REPLICATE, ("CLUSTER", "REPLICATE", primary_id))

    @classmethod
    def detach(cls) -> "Command":
        return cls(CommandType.REPLICAOF, ("REPLICAOF", "NO", "ONE"))

    @classmethod
    def forget(cls, node_id: str) -> "Command":
        return cls(CommandType.FORGET, ("CLUSTER", "FORGET", node_id))

    @classmethod
    def myid(cls) -> "Command":
        return cls(CommandType.MYID, ("CLUSTER", "MYID"))

    @classmethod
    def info(cls) -> "Command":
        return cls(CommandType.INFO, ("CLUSTER", "INFO"))

    @classmethod
    def nodes(cls) -> "Command":
        return cls(CommandType.NODES, ("CLUSTER", "NODES"))

    @classmethod
    def shards(cls) -> "Command":
        return cls(CommandType.SHARDS, ("CLUSTER", "SHARDS"))

    @classmethod
    def migrate_slots_range(
            cls,
            host: str,
            port: int,
            start: int,
            end: int,
            timeout_ms: int,
            db: int = 0,
    ) -> "Command":
        return cls(
            CommandType.MIGRATE,
            ("MIGRATE", host, str(port), "", str(db), str(timeout_ms), "SLOTSRANGE", str(start), str(end)),
        )


@dataclass
class Reply:
    """
    Represents a node reply.

    Attributes:
        status: OK or ERROR
        value: Decoded payload (str, int, list or None) for OK replies
        message: Error text for ERROR replies
    """
    status: ReplyStatus
    value: Any = None
    message: str = ""

    @classmethod
    def ok(cls, value: Any = "OK") -> "Reply":
        """Create a successful reply."""
        return cls(status=ReplyStatus.OK, value=value)

    @classmethod
    def error(cls, message: str) -> "Reply":
        """Create an error reply."""
        return cls(status=ReplyStatus.ERROR, message=message)

    @property
    def is_ok(self) -> bool:
        """True for a plain ``+OK`` acknowledgement."""
        return self.status == ReplyStatus.OK and self.value in ("OK", True)

    @property
    def is_error(self) -> bool:
        return self.status == ReplyStatus.ERROR

    @property
    def text(self) -> str:
        """Payload as text, or the error message."""
        if self.is_error:
            return self.message
        if self.value is None:
            return ""
        return str(self.value)


@dataclass
class ClusterInfo:
    """Parsed ``CLUSTER INFO`` counters."""
    state: str = ""
    slots_assigned: int = 0
    slots_ok: int = 0
    slots_pfail: int = 0
    slots_fail: int = 0
    known_nodes: int = 0
    size: int = 0
    current_epoch: int = 0
    my_epoch: int = 0


@dataclass
class LiveNode:
    """One record of ``CLUSTER NODES`` as the node itself reports it."""
    id: str
    ip_address: str = ""
    port: int = 0
    hostname: str = ""
    flags: List[str] = field(default_factory=list)
    master_id: Optional[str] = None
    ping_sent: int = 0
    pong_received: int = 0
    config_epoch: int = 0
    link_state: str = ""
    slots: List[int] = field(default_factory=list)

    @property
    def is_myself(self) -> bool:
        return "myself" in self.flags

    @property
    def is_primary(self) -> bool:
        return "master" in self.flags

    @property
    def is_replica(self) -> bool:
        return "slave" in self.flags or "replica" in self.flags

    def owns_slot(self, slot: int) -> bool:
        for i in range(0, len(self.slots), 2):
            if self.slots[i] <= slot <= self.slots[i + 1]:
                return True
        return False


@dataclass
class ShardNode:
    """A node entry inside a ``CLUSTER SHARDS`` shard."""
    id: str
    port: int = 0
    address: str = ""
    role: str = ""
    replication_offset: int = 0
    health: str = ""


@dataclass
class Shard:
    """One shard of ``CLUSTER SHARDS``: slot pairs plus member nodes."""
    slots: List[int] = field(default_factory=list)
    nodes: List[ShardNode] = field(default_factory=list)
