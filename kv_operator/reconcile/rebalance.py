"""
Slot Rebalance Module

Executes the migration plan computed by cluster/slots.py. Tracked slot
ownership is always overwritten from what the nodes report after a move,
never from the plan, because migration completes asynchronously on the node
side.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Set

from ..cluster.models import Node
from ..cluster.slots import (
    SlotMigration,
    SlotRange,
    assign_targets,
    compress_slots,
    plan_migrations,
    unowned_slots,
)
from ..config.settings import CONDITION_INITIALIZED
from .context import ReconcileContext
from .membership import forget_everywhere

logger = logging.getLogger(__name__)


def slot_sources(ctx: ReconcileContext) -> List[Node]:
    """Primaries plus leaving nodes that still hold slots."""
    return ctx.cluster.primaries() + [n for n in ctx.cluster.leaving() if n.slots]


def targets_for(ctx: ReconcileContext) -> Dict[str, SlotRange]:
    return assign_targets(ctx.cluster.primaries(), ctx.spec.number_of_primaries, ctx.settings.TOTAL_SLOTS)


def plan(ctx: ReconcileContext, targets: Optional[Dict[str, SlotRange]] = None) -> List[SlotMigration]:
    """Migrations that bring the current primaries to an even partition."""
    if targets is None:
        targets = targets_for(ctx)
    return plan_migrations(slot_sources(ctx), targets, ctx.cluster.nodes)


async def _refresh_slots(ctx: ReconcileContext, node: Node) -> None:
    client = await ctx.client(node)
    node.slots = list((await client.myself()).slots)


async def execute_migration(ctx: ReconcileContext, migration: SlotMigration) -> None:
    """Apply one (source, destination) migration range by range."""
    source = ctx.cluster.node_by_id(migration.from_id)
    destination = migration.to_node
    source_client = await ctx.client(source)
    destination_client = await ctx.client(destination)

    for slot_range in migration.get_slot_ranges():
        live = await destination_client.myself()
        if live.owns_slot(slot_range.min) or live.owns_slot(slot_range.max):
            logger.info(f"[{ctx.name}] slots [{slot_range.min} {slot_range.max}] already on "
                        f"{destination.pod_name}, skipping")
        else:
            logger.info(f"[{ctx.name}] moving slots [{slot_range.min} {slot_range.max}] "
                        f"from {source.pod_name} to {destination.pod_name}")
            await source_client.migrate_slots_range(
                destination.meet_address, destination.port, slot_range.min, slot_range.max)
            await asyncio.sleep(ctx.settings.MIGRATION_SETTLE_DELAY)
            logger.info(f"[{ctx.name}] moved slots [{slot_range.min} {slot_range.max}] to {destination.pod_name}")

        await _refresh_slots(ctx, destination)
        await _refresh_slots(ctx, source)
        await ctx.commit()


def tracked_unowned_slots(ctx: ReconcileContext) -> Set[int]:
    """Slots no tracked node owns; their owner was pruned together with its pod."""
    owned: Set[int] = set()
    for node in ctx.cluster.nodes.values():
        owned.update(node.get_slots())
    return {s for r in unowned_slots(owned, ctx.settings.TOTAL_SLOTS) for s in range(r.min, r.max + 1)}


async def claim_unowned_slots(ctx: ReconcileContext, targets: Optional[Dict[str, SlotRange]] = None) -> None:
    """
    Assign slots whose tracked owner is gone to their target owner.

    Each target first checks its own view of the cluster: slots a tracked
    member still holds there are left alone, and a holder that is no longer
    tracked is forgotten so the slots become free. ``targets`` should be the
    assignment the preceding migrations worked towards.
    """
    lost = tracked_unowned_slots(ctx)
    if not lost:
        return

    if targets is None:
        targets = targets_for(ctx)
    tracked_ids = {n.id for n in ctx.cluster.nodes.values() if n.id}
    for pod_uid, target in targets.items():
        node = ctx.cluster.nodes.get(pod_uid)
        if node is None:
            continue
        wanted = {s for s in lost if target.contains(s)}
        if not wanted:
            continue

        node_client = await ctx.client(node)
        for live in await node_client.nodes():
            held = {s for s in wanted if live.owns_slot(s)}
            if not held:
                continue
            if live.id in tracked_ids:
                logger.info(f"[{ctx.name}] {node.pod_name} sees {len(held)} slots on {live.id}, not claiming them")
                wanted -= held
            else:
                logger.info(f"[{ctx.name}] stale owner {live.id} still holds {len(held)} slots")
                await forget_everywhere(ctx, live.id)

        for slot_range in compress_slots(wanted):
            logger.info(f"[{ctx.name}] claiming unowned slots [{slot_range.min} {slot_range.max}] "
                        f"on {node.pod_name}")
            await node_client.add_slots_range(slot_range.min, slot_range.max)
        await _refresh_slots(ctx, node)
        await ctx.commit()


async def rebalance_slots(ctx: ReconcileContext) -> None:
    """Move slots until the primaries own an even contiguous partition."""
    # Slot ranges still being handed out by bootstrap must not be claimed here
    if not ctx.status.is_condition_true(CONDITION_INITIALIZED) or not ctx.cluster.primaries():
        return

    logger.info(f"[{ctx.name}] rebalancing primaries")
    targets = targets_for(ctx)
    for migration in plan(ctx, targets):
        await execute_migration(ctx, migration)
    await claim_unowned_slots(ctx, targets)
