"""
Cluster Model Module

In-memory representation of every node the operator tracks, its role, the
slot ranges it owns and the primary -> replica-count index. Everything here
is plain data with derived views; no I/O happens in this module.

The status document persisted on the managed resource is the serialised form
of ClusterStatus (camelCase keys, roles as lower-case strings).
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..config.settings import LABEL_CLUSTER_ID, LABEL_MANAGED_BY, OPERATOR_NAME, STATUS_TRUE
from ..errors import InvalidSpecError


class Role(Enum):
    """
    Node role state machine.

    none -> primary | replica                  (bootstrap / configure)
    replica -> promoting -> primary            (scale-down compensation)
    primary | replica -> leaving -> [removed]  (scale-down target)
    primary -> demoting -> replica             (surplus empty primary reused as replica)
    """
    NONE = "none"
    PRIMARY = "primary"
    REPLICA = "replica"
    LEAVING = "leaving"
    PROMOTING = "promoting"
    DEMOTING = "demoting"


@dataclass
class ClusterSpec:
    """Desired state of a managed cluster."""
    number_of_primaries: int = 1
    replication_factor: int = 1
    service_name: Optional[str] = None
    image: Optional[str] = None
    additional_labels: Dict[str, str] = field(default_factory=dict)
    additional_args: List[str] = field(default_factory=list)

    @property
    def required_pod_count(self) -> int:
        return self.number_of_primaries * (1 + self.replication_factor)

    @property
    def required_replica_count(self) -> int:
        return self.number_of_primaries * self.replication_factor

    def validate(self, total_slots: int) -> None:
        """Raise InvalidSpecError if the spec cannot be satisfied."""
        if self.number_of_primaries < 1:
            raise InvalidSpecError("numberOfPrimaries must be at least 1")
        if self.number_of_primaries > total_slots:
            raise InvalidSpecError(f"numberOfPrimaries cannot exceed {total_slots}")
        if self.replication_factor < 0:
            raise InvalidSpecError("replicationFactor cannot be negative")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClusterSpec":
        data = data or {}
        return cls(
            number_of_primaries=int(data.get("numberOfPrimaries", 1)),
            replication_factor=int(data.get("replicationFactor", 1)),
            service_name=data.get("serviceName"),
            image=data.get("image"),
            additional_labels=dict(data.get("additionalLabels") or {}),
            additional_args=list(data.get("additionalArgs") or []),
        )

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "numberOfPrimaries": self.number_of_primaries,
            "replicationFactor": self.replication_factor,
        }
        if self.service_name:
            result["serviceName"] = self.service_name
        if self.image:
            result["image"] = self.image
        if self.additional_labels:
            result["additionalLabels"] = dict(self.additional_labels)
        if self.additional_args:
            result["additionalArgs"] = list(self.additional_args)
        return result


@dataclass
class Node:
    """
    One tracked cluster node, backed by exactly one pod.

    Attributes:
        id: Cluster-protocol node id; empty until the node was contacted
        role: Position in the role state machine
        slots: Flattened [min, max, min, max, ...] owned slot ranges
        primary_id: Id of the primary this node replicates (replicas only)
        config_epoch: Epoch assigned when the node was configured
    """
    pod_uid: str
    pod_name: str = ""
    namespace: str = ""
    host_name: str = ""
    address: str = ""
    port: int = 0
    pod_ip: str = ""
    id: str = ""
    role: Role = Role.NONE
    slots: List[int] = field(default_factory=list)
    primary_id: str = ""
    config_epoch: int = 0

    def num_slots(self) -> int:
        """Total number of slots covered by the owned ranges."""
        return sum(self.slots[i + 1] - self.slots[i] + 1 for i in range(0, len(self.slots) - 1, 2))

    def get_slots(self) -> List[int]:
        """Every owned slot, expanded from the ranges."""
        result: List[int] = []
        for i in range(0, len(self.slots) - 1, 2):
            result.extend(range(self.slots[i], self.slots[i + 1] + 1))
        return result

    def owns_slot(self, slot: int) -> bool:
        return any(self.slots[i] <= slot <= self.slots[i + 1] for i in range(0, len(self.slots) - 1, 2))

    @property
    def meet_address(self) -> str:
        """Address other nodes use to reach this one."""
        return self.pod_ip or self.address

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role.value,
            "podUid": self.pod_uid,
            "podName": self.pod_name,
            "namespace": self.namespace,
            "nodeHostName": self.host_name,
            "address": self.address,
            "port": self.port,
            "podIp": self.pod_ip,
            "slots": list(self.slots),
            "primaryId": self.primary_id,
            "configEpoch": self.config_epoch,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Node":
        return cls(
            id=data.get("id") or "",
            role=Role(data.get("role") or Role.NONE.value),
            pod_uid=data.get("podUid") or "",
            pod_name=data.get("podName") or "",
            namespace=data.get("namespace") or "",
            host_name=data.get("nodeHostName") or "",
            address=data.get("address") or "",
            port=int(data.get("port") or 0),
            pod_ip=data.get("podIp") or "",
            slots=[int(s) for s in data.get("slots") or []],
            primary_id=data.get("primaryId") or "",
            config_epoch=int(data.get("configEpoch") or 0),
        )


@dataclass
class Cluster:
    """Aggregate of tracked nodes keyed by backing pod uid."""
    nodes: Dict[str, Node] = field(default_factory=dict)
    replica_count_by_primary: Dict[str, int] = field(default_factory=dict)

    def _with_role(self, role: Role) -> List[Node]:
        return [n for n in self.nodes.values() if n.role == role]

    def primaries(self) -> List[Node]:
        return self._with_role(Role.PRIMARY)

    def replicas(self) -> List[Node]:
        return self._with_role(Role.REPLICA)

    def leaving(self) -> List[Node]:
        return self._with_role(Role.LEAVING)

    def promoting(self) -> List[Node]:
        return self._with_role(Role.PROMOTING)

    def demoting(self) -> List[Node]:
        return self._with_role(Role.DEMOTING)

    def orphans(self) -> List[Node]:
        return self._with_role(Role.NONE)

    def active(self) -> List[Node]:
        """Every node that is not on its way out."""
        return [n for n in self.nodes.values() if n.role != Role.LEAVING]

    def node_by_id(self, node_id: str) -> Optional[Node]:
        if not node_id:
            return None
        for node in self.nodes.values():
            if node.id == node_id:
                return node
        return None

    def node_by_uid(self, pod_uid: str) -> Optional[Node]:
        return self.nodes.get(pod_uid)

    def replicas_of(self, primary: Node) -> List[Node]:
        return [n for n in self.replicas() if primary.id and n.primary_id == primary.id]

    def remove_node(self, pod_uid: str) -> Optional[Node]:
        """Drop a node and its replica-count entry; returns the removed node."""
        self.replica_count_by_primary.pop(pod_uid, None)
        return self.nodes.pop(pod_uid, None)

    def release_replica(self, node: Node) -> None:
        """Decrement the replica count of the primary ``node`` replicates."""
        primary = self.node_by_id(node.primary_id)
        if primary is not None and primary.pod_uid in self.replica_count_by_primary:
            self.replica_count_by_primary[primary.pod_uid] = max(
                0, self.replica_count_by_primary[primary.pod_uid] - 1)

    def check_invariants(self) -> List[str]:
        """Return a description of every violated invariant (empty when sound)."""
        problems = []

        replicas = self.replicas()
        primary_ids = {n.id for n in self.primaries() if n.id}
        counted = sum(self.replica_count_by_primary.values())
        attached = len([r for r in replicas if r.primary_id in primary_ids])
        if counted != attached:
            problems.append(f"replica index counts {counted} replicas, {attached} attached")

        for replica in replicas:
            if replica.primary_id not in primary_ids:
                problems.append(f"replica {replica.pod_name} points at unknown primary {replica.primary_id!r}")

        for node in self.leaving():
            if node.slots:
                problems.append(f"leaving node {node.pod_name} still owns slots")
            if node.id and any(r.primary_id == node.id for r in replicas):
                problems.append(f"replicas still point at leaving node {node.pod_name}")

        for node in self.nodes.values():
            if node.role != Role.PRIMARY and node.role != Role.LEAVING and node.slots:
                problems.append(f"{node.role.value} node {node.pod_name} owns slots")

        return problems

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodes": {uid: node.to_dict() for uid, node in self.nodes.items()},
            "numberOfReplicasPerPrimary": dict(self.replica_count_by_primary),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Cluster":
        data = data or {}
        nodes = {}
        for uid, raw in (data.get("nodes") or {}).items():
            node = Node.from_dict(raw)
            node.pod_uid = node.pod_uid or uid
            nodes[uid] = node
        return cls(
            nodes=nodes,
            replica_count_by_primary={k: int(v) for k, v in (data.get("numberOfReplicasPerPrimary") or {}).items()},
        )


def _utcnow() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class Condition:
    """A named status condition (at most one per type)."""
    type: str
    status: str
    reason: str = ""
    message: str = ""
    last_transition_time: str = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "status": self.status,
            "reason": self.reason,
            "message": self.message,
            "lastTransitionTime": self.last_transition_time,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Condition":
        return cls(
            type=data.get("type", ""),
            status=data.get("status", ""),
            reason=data.get("reason") or "",
            message=data.get("message") or "",
            last_transition_time=data.get("lastTransitionTime") or _utcnow(),
        )


@dataclass
class ClusterStatus:
    """The status sub-document of a managed cluster resource."""
    cluster: Cluster = field(default_factory=Cluster)
    conditions: List[Condition] = field(default_factory=list)
    last_epoch: int = 0
    start_time: str = field(default_factory=_utcnow)

    def get_condition(self, type_: str) -> Optional[Condition]:
        for condition in self.conditions:
            if condition.type == type_:
                return condition
        return None

    def is_condition_true(self, type_: str) -> bool:
        condition = self.get_condition(type_)
        return condition is not None and condition.status == STATUS_TRUE

    def set_condition(self, type_: str, status: str, reason: str = "", message: str = "") -> bool:
        """
        Upsert a condition, keeping at most one entry per type.

        Returns False (and keeps the old transition time) when the condition
        already has this status, reason and message.
        """
        existing = self.get_condition(type_)
        if existing is not None and (existing.status, existing.reason, existing.message) == (status, reason, message):
            return False

        self.conditions = [c for c in self.conditions if c.type != type_]
        self.conditions.append(Condition(type=type_, status=status, reason=reason, message=message))
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cluster": self.cluster.to_dict(),
            "conditions": [c.to_dict() for c in self.conditions],
            "lastEpoch": self.last_epoch,
            "startTime": self.start_time,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["ClusterStatus"]:
        if not data or "cluster" not in data:
            return None
        return cls(
            cluster=Cluster.from_dict(data.get("cluster")),
            conditions=[Condition.from_dict(c) for c in data.get("conditions") or []],
            last_epoch=int(data.get("lastEpoch") or 0),
            start_time=data.get("startTime") or _utcnow(),
        )


@dataclass
class ManagedCluster:
    """The custom resource the operator reconciles."""
    name: str
    namespace: str
    uid: str = ""
    spec: ClusterSpec = field(default_factory=ClusterSpec)
    status: Optional[ClusterStatus] = None
    resource_version: str = ""
    generation: int = 0

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def service_name(self) -> str:
        return self.spec.service_name or self.name

    @property
    def headless_service_name(self) -> str:
        return f"{self.service_name}-headless"

    def pod_address(self, pod_ip: str) -> str:
        """Stable per-pod DNS label under the headless service."""
        return f"{pod_ip.replace('.', '-')}.{self.headless_service_name}"

    def selector(self) -> Dict[str, str]:
        return {LABEL_MANAGED_BY: OPERATOR_NAME, LABEL_CLUSTER_ID: self.uid}

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "ManagedCluster":
        metadata = obj.get("metadata") or {}
        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace", ""),
            uid=metadata.get("uid", ""),
            spec=ClusterSpec.from_dict(obj.get("spec") or {}),
            status=ClusterStatus.from_dict(obj.get("status")),
            resource_version=str(metadata.get("resourceVersion") or ""),
            generation=int(metadata.get("generation") or 0),
        )


def group_by(nodes: List[Node], key: Callable[[Node], str]) -> Dict[str, List[Node]]:
    """Group nodes by ``key`` preserving first-seen order."""
    groups: Dict[str, List[Node]] = {}
    for node in nodes:
        groups.setdefault(key(node), []).append(node)
    return groups
