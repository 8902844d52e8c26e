"""
Tests for the Scaling Policy

These tests verify victim selection on a scale-down:
- The busiest host gives way first
- Replicas of leaving primaries are preferred
- Surplus replicas leave or get promoted depending on the pod budget

Run with: python -m pytest tests/test_scaling.py -v
"""

import pytest

from kv_operator.cluster.models import ClusterSpec, ClusterStatus, ManagedCluster, Node, Role
from kv_operator.reconcile.context import ReconcileContext, StatusStore
from kv_operator.reconcile.scaling import (
    has_surplus_roles,
    mark_surplus_replicas,
    pick_from_busiest_host,
    pick_surplus_replica,
)


def node(uid, host, role=Role.PRIMARY, node_id=None, primary_id=""):
    return Node(pod_uid=uid, pod_name=uid, host_name=host, id=node_id or f"id-{uid}",
                role=role, primary_id=primary_id)


def context(platform, pool, settings, nodes, counts, primaries=2, factor=1):
    resource = ManagedCluster(name="demo", namespace="default",
                              spec=ClusterSpec(number_of_primaries=primaries, replication_factor=factor))
    obj = platform.add_resource("demo", primaries=primaries, replication_factor=factor)
    resource.generation = 1
    resource.resource_version = obj["metadata"]["resourceVersion"]
    ctx = ReconcileContext(resource, platform, pool, StatusStore(platform, settings), settings)
    ctx.status = ClusterStatus()
    ctx.cluster.nodes = {n.pod_uid: n for n in nodes}
    ctx.cluster.replica_count_by_primary = dict(counts)
    return ctx


class TestPickFromBusiestHost:
    """Test the host-spread victim rule."""

    def test_busiest_host_wins(self):
        """Hosts {A: 2, B: 1} -> a node on A."""
        nodes = [node("b1", "B"), node("a1", "A"), node("a2", "A")]
        assert pick_from_busiest_host(nodes).host_name == "A"

    def test_tie_goes_to_first_host(self):
        nodes = [node("b1", "B"), node("a1", "A")]
        assert pick_from_busiest_host(nodes).pod_uid == "b1"

    def test_empty(self):
        assert pick_from_busiest_host([]) is None


@pytest.mark.asyncio
class TestSurplusReplicas:
    """Test surplus replica handling."""

    async def test_replica_of_leaving_primary_first(self, platform, pool, fast_settings):
        """A replica whose primary is leaving goes before the busiest host's."""
        nodes = [
            node("p1", "A"), node("p2", "B", role=Role.LEAVING),
            node("r1", "C", Role.REPLICA, primary_id="id-p1"),
            node("r2", "C", Role.REPLICA, primary_id="id-p1"),
            node("r3", "A", Role.REPLICA, primary_id="id-p2"),
        ]
        ctx = context(platform, pool, fast_settings, nodes, {"p1": 2})
        assert pick_surplus_replica(ctx).pod_uid == "r3"

    async def test_surplus_replica_leaves_when_pods_exceed_budget(self, platform, pool, fast_settings):
        """With more active nodes than required the replica is removed."""
        nodes = [
            node("p1", "A"),
            node("r1", "B", Role.REPLICA, primary_id="id-p1"),
            node("r2", "C", Role.REPLICA, primary_id="id-p1"),
        ]
        ctx = context(platform, pool, fast_settings, nodes, {"p1": 2}, primaries=1, factor=1)
        assert has_surplus_roles(ctx)

        await mark_surplus_replicas(ctx)
        assert [n.role for n in ctx.cluster.nodes.values()].count(Role.LEAVING) == 1
        assert ctx.cluster.replica_count_by_primary["p1"] == 1

    async def test_surplus_replica_promoted_on_reshape(self, platform, pool, fast_settings):
        """2x2 -> 3x1 keeps six pods: the extra replica becomes a primary."""
        nodes = [
            node("p1", "A"), node("p2", "B"),
            node("r1", "C", Role.REPLICA, primary_id="id-p1"),
            node("r2", "A", Role.REPLICA, primary_id="id-p2"),
            node("r3", "B", Role.REPLICA, primary_id="id-p1"),
            node("r4", "C", Role.REPLICA, primary_id="id-p2"),
        ]
        ctx = context(platform, pool, fast_settings, nodes, {"p1": 2, "p2": 2}, primaries=3, factor=1)
        assert has_surplus_roles(ctx)

        await mark_surplus_replicas(ctx)
        promoting = ctx.cluster.promoting()
        assert len(promoting) == 1
        assert promoting[0].host_name == "C"
        assert ctx.cluster.leaving() == []
        assert sum(ctx.cluster.replica_count_by_primary.values()) == 3
