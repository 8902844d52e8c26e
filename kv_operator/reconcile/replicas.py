"""
Replica Rebalance Module

Evens out replicas across primaries once membership has converged: replicas
whose primary is gone are re-homed, then primaries holding more replicas than
the replication factor hand the excess to primaries holding fewer.
"""

import logging
import random
from typing import List, Optional

from ..cluster.models import Node, Role
from .context import ReconcileContext

logger = logging.getLogger(__name__)


def under_replicated(ctx: ReconcileContext, exclude: Optional[Node] = None) -> List[Node]:
    """Primaries below the replication factor, least-loaded first."""
    counts = ctx.cluster.replica_count_by_primary
    factor = ctx.spec.replication_factor
    candidates = [
        p for p in ctx.cluster.primaries()
        if p.id and counts.get(p.pod_uid, 0) < factor and (exclude is None or p.pod_uid != exclude.pod_uid)
    ]
    return sorted(candidates, key=lambda p: counts.get(p.pod_uid, 0))


def pick_target(ctx: ReconcileContext, replica: Node, exclude: Optional[Node] = None) -> Optional[Node]:
    """
    Least-loaded under-replicated primary, preferring another host.

    Falls back to the least-loaded candidate regardless of host.
    """
    candidates = under_replicated(ctx, exclude)
    if not candidates:
        return None
    off_host = [p for p in candidates if p.host_name != replica.host_name]
    return (off_host or candidates)[0]


async def move_replica(ctx: ReconcileContext, replica: Node, target: Node) -> None:
    """
    Re-attach ``replica`` to ``target`` and update the replica index.

    A replica whose old primary is no longer tracked was skipped when that
    primary was forgotten cluster-wide, so it forgets the id itself here.
    """
    stale_id = replica.primary_id
    old_primary = ctx.cluster.node_by_id(stale_id)
    logger.info(f"[{ctx.name}] moving replica {replica.pod_name} to {target.pod_name}")

    client = await ctx.client(replica)
    live = await client.myself()
    if live.master_id:
        await client.detach()
    await client.replicate(target.id)
    if old_primary is None and stale_id:
        await client.forget(stale_id)

    counts = ctx.cluster.replica_count_by_primary
    if old_primary is not None and old_primary.pod_uid in counts:
        counts[old_primary.pod_uid] = max(0, counts[old_primary.pod_uid] - 1)
    counts[target.pod_uid] = counts.get(target.pod_uid, 0) + 1

    replica.role = Role.REPLICA
    replica.primary_id = target.id
    await ctx.commit()


async def rehome_detached(ctx: ReconcileContext) -> None:
    """Attach replicas whose primary is no longer an active primary."""
    primary_ids = {p.id for p in ctx.cluster.primaries() if p.id}
    for replica in ctx.cluster.replicas():
        if replica.primary_id in primary_ids:
            continue
        target = pick_target(ctx, replica)
        if target is None:
            logger.warning(f"[{ctx.name}] no primary can take replica {replica.pod_name}")
            continue
        await move_replica(ctx, replica, target)


async def rebalance_replicas(ctx: ReconcileContext) -> None:
    """Move excess replicas from overloaded to under-replicated primaries."""
    logger.info(f"[{ctx.name}] rebalancing replicas")
    await rehome_detached(ctx)

    factor = ctx.spec.replication_factor
    counts = ctx.cluster.replica_count_by_primary
    for pod_uid in [uid for uid, count in counts.items() if count > factor]:
        source = ctx.cluster.node_by_uid(pod_uid)
        while source is not None and counts.get(pod_uid, 0) > factor:
            movable = [r for r in ctx.cluster.replicas_of(source) if r.role != Role.DEMOTING]
            if not movable:
                break
            replica = random.choice(movable)

            target = pick_target(ctx, replica, exclude=source)
            if target is None:
                break
            await move_replica(ctx, replica, target)
