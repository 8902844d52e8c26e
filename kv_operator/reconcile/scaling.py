"""
Scaling Policy Module

Decides when the cluster needs more or fewer pods and which nodes give way
on a scale-down. Victims are taken from the host carrying the most nodes of
the affected role so the survivors stay spread across hosts.
"""

import logging
from typing import List, Optional

from ..cluster.models import Node, Role, group_by
from ..config.settings import (
    CONDITION_SCALING,
    SCALING_DOWN_MESSAGE,
    SCALING_DOWN_REASON,
    SCALING_UP_MESSAGE,
    SCALING_UP_REASON,
    STATUS_TRUE,
)
from .cleanup import remove_leaving
from .context import ReconcileContext
from .inventory import node_for_pod
from .rebalance import rebalance_slots

logger = logging.getLogger(__name__)


def needs_more_pods(ctx: ReconcileContext) -> bool:
    """True if fewer pods back the cluster than the resource spec requires."""
    return len(ctx.pods) < ctx.spec.required_pod_count


def needs_less_pods(ctx: ReconcileContext) -> bool:
    """True if more pods back the cluster than the resource spec requires."""
    return len(ctx.pods) > ctx.spec.required_pod_count


def has_surplus_roles(ctx: ReconcileContext) -> bool:
    """
    True if the role mix overshoots the resource spec even though the pod count may not.

    Happens on a reshape with the same pod total, e.g. 2x2 -> 3x1.
    """
    return (len(ctx.cluster.primaries()) > ctx.spec.number_of_primaries
            or len(ctx.cluster.replicas()) > ctx.spec.required_replica_count)


def pick_from_busiest_host(nodes: List[Node]) -> Optional[Node]:
    """
    First node on the host holding the most of ``nodes``.

    Ties go to the host seen first.

    Examples:
        Hosts {A: 2, B: 1} -> a node on A
    """
    if not nodes:
        return None
    groups = group_by(nodes, lambda n: n.host_name)
    busiest = max(groups.values(), key=len)
    return busiest[0]


def pick_surplus_replica(ctx: ReconcileContext) -> Optional[Node]:
    """Replicas of leaving primaries go first, then the busiest-host rule."""
    candidates = ctx.cluster.replicas()
    leaving_ids = {n.id for n in ctx.cluster.leaving() if n.id}
    orphaned = [n for n in candidates if n.primary_id in leaving_ids]
    return pick_from_busiest_host(orphaned or candidates)


async def scale_up(ctx: ReconcileContext) -> None:
    """Create the missing pods and track each as an unassigned node."""
    await ctx.set_condition(CONDITION_SCALING, STATUS_TRUE, SCALING_UP_REASON, SCALING_UP_MESSAGE)

    required = ctx.spec.required_pod_count
    missing = required - len(ctx.pods)
    logger.info(f"[{ctx.name}] scaling up from {len(ctx.pods)} to {required} pods")

    for _ in range(missing):
        pod = await ctx.platform.create_pod(ctx.resource)
        ctx.pods[pod.uid] = pod
        if pod.uid not in ctx.cluster.nodes:
            ctx.cluster.nodes[pod.uid] = node_for_pod(ctx, pod)
        await ctx.commit()


async def mark_surplus_primaries(ctx: ReconcileContext) -> None:
    """Mark primaries Leaving until no more than the resource spec asks for remain."""
    while len(ctx.cluster.primaries()) > ctx.spec.number_of_primaries:
        node = pick_from_busiest_host(ctx.cluster.primaries())
        logger.info(f"[{ctx.name}] marking primary {node.namespace}/{node.pod_name} for removal")
        node.role = Role.LEAVING
        ctx.cluster.replica_count_by_primary.pop(node.pod_uid, None)
        await ctx.commit()


async def mark_surplus_replicas(ctx: ReconcileContext) -> None:
    """
    Retire or repurpose replicas beyond the resource spec.

    While there are still more active nodes than pods required the replica
    leaves; otherwise its capacity is needed as a primary and it is marked
    Promoting instead.
    """
    required_pods = ctx.spec.required_pod_count
    while len(ctx.cluster.replicas()) > ctx.spec.required_replica_count:
        node = pick_surplus_replica(ctx)
        ctx.cluster.release_replica(node)

        if len(ctx.cluster.active()) > required_pods:
            logger.info(f"[{ctx.name}] marking replica {node.namespace}/{node.pod_name} for removal")
            node.role = Role.LEAVING
        else:
            logger.info(f"[{ctx.name}] marking replica {node.namespace}/{node.pod_name} for promotion")
            node.role = Role.PROMOTING
        await ctx.commit()


async def scale_down(ctx: ReconcileContext) -> None:
    """
    Shrink the cluster to the resource spec.

    Surplus primaries are marked first and drained of their slots before
    surplus replicas are marked; nodes that ended up Leaving with no slots are
    then removed.
    """
    await ctx.set_condition(CONDITION_SCALING, STATUS_TRUE, SCALING_DOWN_REASON, SCALING_DOWN_MESSAGE)
    logger.info(f"[{ctx.name}] scaling down")

    await mark_surplus_primaries(ctx)
    if ctx.cluster.leaving():
        await rebalance_slots(ctx)
    await mark_surplus_replicas(ctx)
    await remove_leaving(ctx)
