"""
Protocol Parser Module

This module turns the replies of the cluster introspection commands into
typed records. The wire format itself is handled by the redis client.

- parse_cluster_info(): ``key:value`` lines of CLUSTER INFO
- parse_cluster_nodes(): one record per line of CLUSTER NODES
- parse_cluster_shards(): nested arrays of CLUSTER SHARDS
"""

from typing import Any, Dict, List

from .commands import ClusterInfo, LiveNode, Shard, ShardNode


class ProtocolParser:
    """
    Parser for the introspection replies.

    Stateless; one instance can be shared.
    """

    def parse_cluster_info(self, text: str) -> ClusterInfo:
        """
        Parse the ``key:value`` lines of ``CLUSTER INFO``.

        Missing keys keep their defaults.
        """
        values: Dict[str, str] = {}
        for line in text.splitlines():
            key, sep, value = line.strip().partition(":")
            if sep:
                values[key] = value

        def as_int(key: str) -> int:
            try:
                return int(values.get(key, 0))
            except ValueError:
                return 0

        return ClusterInfo(
            state=values.get("cluster_state", ""),
            slots_assigned=as_int("cluster_slots_assigned"),
            slots_ok=as_int("cluster_slots_ok"),
            slots_pfail=as_int("cluster_slots_pfail"),
            slots_fail=as_int("cluster_slots_fail"),
            known_nodes=as_int("cluster_known_nodes"),
            size=as_int("cluster_size"),
            current_epoch=as_int("cluster_current_epoch"),
            my_epoch=as_int("cluster_my_epoch"),
        )

    def parse_cluster_nodes(self, text: str) -> List[LiveNode]:
        """Parse the newline-delimited records of ``CLUSTER NODES``."""
        return [self.parse_node_line(line) for line in text.splitlines() if line.strip()]

    def parse_node_line(self, line: str) -> LiveNode:
        """
        Parse one ``CLUSTER NODES`` record.

        Format:
            <id> <ip:port@cport[,hostname]> <flags> <master|-> <ping-sent>
            <pong-recv> <config-epoch> <link-state> <slot> <slot> ...

        Single slots ("42") expand to the pair [42, 42]; importing/migrating
        markers ("[42->-<id>]") are skipped.
        """
        parts = line.split()
        if len(parts) < 8:
            raise ValueError(f"malformed CLUSTER NODES record: {line!r}")

        address, _, hostname = parts[1].partition(",")
        endpoint = address.split("@")[0]
        ip, _, port = endpoint.rpartition(":")

        slots: List[int] = []
        for token in parts[8:]:
            if token.startswith("["):
                continue
            start, _, end = token.partition("-")
            slots.extend([int(start), int(end or start)])

        return LiveNode(
            id=parts[0],
            ip_address=ip,
            port=int(port) if port else 0,
            hostname=hostname,
            flags=parts[2].split(","),
            master_id=None if parts[3] == "-" else parts[3],
            ping_sent=int(parts[4]),
            pong_received=int(parts[5]),
            config_epoch=int(parts[6]),
            link_state=parts[7],
            slots=slots,
        )

    def parse_cluster_shards(self, value: Any) -> List[Shard]:
        """
        Parse the nested array reply of ``CLUSTER SHARDS``.

        Each shard is a flat key/value array holding "slots" (start/end pairs)
        and "nodes" (one key/value array per node).
        """
        shards = []
        for raw_shard in value or []:
            shard_fields = _pairs(raw_shard)
            shard = Shard(slots=[int(s) for s in shard_fields.get("slots") or []])
            for raw_node in shard_fields.get("nodes") or []:
                node_fields = _pairs(raw_node)
                shard.nodes.append(ShardNode(
                    id=str(node_fields.get("id", "")),
                    port=int(node_fields.get("port") or 0),
                    address=str(node_fields.get("ip") or node_fields.get("endpoint")
                                or node_fields.get("address") or ""),
                    role=_normalize_role(str(node_fields.get("role", ""))),
                    replication_offset=int(node_fields.get("replication-offset") or 0),
                    health=str(node_fields.get("health", "")),
                ))
            shards.append(shard)
        return shards


def _pairs(items: Any) -> Dict[str, Any]:
    """Turn a flat [key, value, key, value, ...] array into a dict."""
    if isinstance(items, dict):
        return items
    items = list(items or [])
    return {str(items[i]).lower(): items[i + 1] for i in range(0, len(items) - 1, 2)}


def _normalize_role(role: str) -> str:
    role = role.lower()
    if role in ("master", "primary"):
        return "primary"
    if role in ("slave", "replica"):
        return "replica"
    return role
