"""
Membership Module

Turns unassigned nodes into primaries and replicas.

bootstrap():
    Runs until the Initialized condition is set. The first primary gets
    epoch 1 and the first slot range; every further primary gets the next
    epoch and the next contiguous range, then is met by the first primary.

configure():
    Runs on every pass after bootstrap. Fills missing primaries (Promoting
    nodes before fresh orphans) and missing replicas (least-loaded primary
    first, replicate retried through gossip lag).

Every step is persisted before the next so a crashed pass resumes where it
stopped.
"""

import logging
from typing import Iterable, Optional, Set

from ..cluster.models import Node, Role
from ..cluster.slots import target_ranges
from ..config.settings import (
    CONDITION_INITIALIZED,
    INITIALIZED_MESSAGE,
    INITIALIZED_REASON,
    INITIALIZING_MESSAGE,
    INITIALIZING_REASON,
    STATUS_FALSE,
    STATUS_TRUE,
)
from .context import ReconcileContext

logger = logging.getLogger(__name__)


async def forget_everywhere(ctx: ReconcileContext, node_id: str, exclude: Optional[Iterable[Node]] = None) -> None:
    """
    Make every configured tracked node forget ``node_id``.

    Nodes that replicate ``node_id`` and nodes in ``exclude`` are skipped;
    peers that never knew the id are fine.
    """
    if not node_id:
        return

    logger.info(f"[{ctx.name}] forgetting node {node_id}")
    skipped: Set[str] = {n.pod_uid for n in exclude or []}
    for peer in list(ctx.cluster.nodes.values()):
        if peer.pod_uid in skipped or not peer.id or peer.id == node_id or peer.primary_id == node_id:
            continue
        client = await ctx.client(peer)
        await client.forget(node_id)


def slot_range_for(ctx: ReconcileContext, index: int):
    """The bootstrap slot range of the ``index``-th primary."""
    return target_ranges(ctx.spec.number_of_primaries, ctx.settings.TOTAL_SLOTS)[index]


async def _make_primary(ctx: ReconcileContext, node: Node, epoch: int, index: int) -> None:
    """Reset ``node`` and hand it the epoch and slot range of primary ``index``."""
    slot_range = slot_range_for(ctx, index)
    client = await ctx.client(node)

    await client.reset(hard=True)
    await client.set_config_epoch(epoch)
    await client.add_slots_range(slot_range.min, slot_range.max)

    node.id = await client.myid()
    node.role = Role.PRIMARY
    node.slots = slot_range.to_list()
    node.primary_id = ""
    node.config_epoch = epoch
    ctx.cluster.replica_count_by_primary[node.pod_uid] = 0
    ctx.status.last_epoch = max(ctx.status.last_epoch, epoch)


async def bootstrap(ctx: ReconcileContext) -> None:
    """Form the initial cluster of ``numberOfPrimaries`` slot-owning primaries."""
    if ctx.status.is_condition_true(CONDITION_INITIALIZED):
        return

    logger.info(f"[{ctx.name}] initializing cluster")
    await ctx.set_condition(CONDITION_INITIALIZED, STATUS_FALSE, INITIALIZING_REASON, INITIALIZING_MESSAGE)

    if not ctx.cluster.primaries():
        orphans = ctx.available_orphans()
        if not orphans:
            logger.info(f"[{ctx.name}] no ready pod to bootstrap from yet")
            return
        first = orphans[0]
        logger.info(f"[{ctx.name}] pod {first.namespace}/{first.pod_name} is the first primary")
        await _make_primary(ctx, first, epoch=1, index=0)
        await ctx.commit()

    init_primary = sorted(ctx.cluster.primaries(), key=lambda n: n.config_epoch)[0]
    init_client = await ctx.client(init_primary)

    while len(ctx.cluster.primaries()) < ctx.spec.number_of_primaries:
        orphans = ctx.available_orphans()
        if not orphans:
            logger.info(f"[{ctx.name}] waiting for more ready pods to add primaries")
            return

        node = orphans[0]
        logger.info(f"[{ctx.name}] adding pod {node.namespace}/{node.pod_name} as primary")

        info = await init_client.cluster_info()
        epoch = ctx.next_epoch(info.current_epoch)
        await _make_primary(ctx, node, epoch=epoch, index=len(ctx.cluster.primaries()))
        await init_client.meet(node.meet_address, node.port)
        await ctx.commit()

    await ctx.set_condition(CONDITION_INITIALIZED, STATUS_TRUE, INITIALIZED_REASON, INITIALIZED_MESSAGE)


async def _add_primary(ctx: ReconcileContext, anchor: Node) -> bool:
    anchor_client = await ctx.client(anchor)
    promoting = [n for n in ctx.cluster.promoting() if ctx.is_ready(n)]

    if promoting:
        node = promoting[0]
        client = await ctx.client(node)
        logger.info(f"[{ctx.name}] promoting pod {node.namespace}/{node.pod_name} to primary")
        await client.detach()
        await anchor_client.meet(node.meet_address, node.port)
    else:
        orphans = ctx.available_orphans()
        if not orphans:
            return False
        node = orphans[0]
        client = await ctx.client(node)
        logger.info(f"[{ctx.name}] adding pod {node.namespace}/{node.pod_name} as primary")

        info = await anchor_client.cluster_info()
        epoch = ctx.next_epoch(info.current_epoch)
        await client.reset(hard=True)
        await client.set_config_epoch(epoch)
        node.id = await client.myid()
        node.config_epoch = epoch
        ctx.status.last_epoch = epoch
        await anchor_client.meet(node.meet_address, node.port)

    node.role = Role.PRIMARY
    node.primary_id = ""
    ctx.cluster.replica_count_by_primary[node.pod_uid] = 0
    await ctx.commit()
    return True


async def _replica_candidate(ctx: ReconcileContext) -> Optional[Node]:
    """
    Next node to turn into a replica.

    Resumes an interrupted demotion first, then takes an orphan. Without
    orphans a primary beyond numberOfPrimaries is demoted, picking the one
    with the fewest slots; it must own none, otherwise the slot rebalance has
    to drain it first.
    """
    demoting = [n for n in ctx.cluster.demoting() if ctx.is_ready(n)]
    if demoting:
        return demoting[0]

    orphans = ctx.available_orphans()
    if orphans:
        return orphans[0]

    primaries = ctx.cluster.primaries()
    if len(primaries) <= ctx.spec.number_of_primaries:
        return None

    surplus = min(primaries, key=lambda n: n.num_slots())
    if surplus.slots:
        logger.info(f"[{ctx.name}] surplus primary {surplus.pod_name} still owns slots, not demoting")
        return None

    logger.info(f"[{ctx.name}] demoting surplus primary {surplus.namespace}/{surplus.pod_name}")
    surplus.role = Role.DEMOTING
    ctx.cluster.replica_count_by_primary.pop(surplus.pod_uid, None)
    await ctx.commit()
    return surplus


def least_loaded_primary(ctx: ReconcileContext, exclude: Node) -> Optional[Node]:
    """Active primary with the fewest replicas (first found on ties)."""
    candidates = [p for p in ctx.cluster.primaries() if p.pod_uid != exclude.pod_uid and p.id]
    if not candidates:
        return None
    counts = ctx.cluster.replica_count_by_primary
    return min(candidates, key=lambda p: counts.get(p.pod_uid, 0))


async def _add_replica(ctx: ReconcileContext) -> bool:
    node = await _replica_candidate(ctx)
    if node is None:
        return False

    primary = least_loaded_primary(ctx, exclude=node)
    if primary is None:
        return False

    logger.info(f"[{ctx.name}] adding pod {node.namespace}/{node.pod_name} as replica of {primary.pod_name}")

    client = await ctx.client(node)
    primary_client = await ctx.client(primary)
    info = await primary_client.cluster_info()
    epoch = ctx.next_epoch(info.current_epoch)

    # Drop whatever membership the node had before the reset gives it a new id
    stale_id = node.id or await client.myid()
    await forget_everywhere(ctx, stale_id, exclude=[node])

    await client.reset(hard=True)
    await client.set_config_epoch(epoch)
    await client.meet(primary.meet_address, primary.port)
    await client.replicate(primary.id)

    node.id = await client.myid()
    node.role = Role.REPLICA
    node.primary_id = primary.id
    node.slots = []
    node.config_epoch = epoch
    ctx.status.last_epoch = epoch
    counts = ctx.cluster.replica_count_by_primary
    counts[primary.pod_uid] = counts.get(primary.pod_uid, 0) + 1
    await ctx.commit()
    return True


async def configure(ctx: ReconcileContext) -> None:
    """Fill missing primaries, then missing replicas."""
    if not ctx.status.is_condition_true(CONDITION_INITIALIZED):
        return

    primaries = ctx.cluster.primaries()
    if not primaries:
        return

    logger.info(f"[{ctx.name}] configuring cluster")
    anchor = sorted(primaries, key=lambda n: n.config_epoch)[0]

    while len(ctx.cluster.primaries()) < ctx.spec.number_of_primaries:
        if not await _add_primary(ctx, anchor):
            logger.info(f"[{ctx.name}] no node available for a missing primary")
            break

    while len(ctx.cluster.replicas()) < ctx.spec.required_replica_count:
        if not await _add_replica(ctx):
            logger.info(f"[{ctx.name}] no node available for a missing replica")
            break
