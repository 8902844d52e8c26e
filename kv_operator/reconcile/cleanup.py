"""
Cleanup Module

Removes what no longer belongs in the cluster:
- ghost members: ids the live cluster knows that no tracked node carries
- leaving nodes: forgotten by every peer, pod deleted, then untracked
"""

import logging

from ..cluster.models import Node
from ..errors import NotFoundError
from .context import ReconcileContext
from .membership import forget_everywhere

logger = logging.getLogger(__name__)


async def forget_ghosts(ctx: ReconcileContext) -> None:
    """Forget live members that are not in the tracked node map."""
    primaries = ctx.cluster.primaries()
    if not primaries:
        return

    client = await ctx.client(primaries[0])
    tracked = {n.id for n in ctx.cluster.nodes.values() if n.id}
    for live in await client.nodes():
        if live.id in tracked:
            continue
        logger.info(f"[{ctx.name}] forgetting ghost node {live.id} ({live.ip_address}:{live.port})")
        await forget_everywhere(ctx, live.id)


async def remove_node(ctx: ReconcileContext, node: Node) -> None:
    """Forget a leaving node cluster-wide, delete its pod and stop tracking it."""
    await forget_everywhere(ctx, node.id, exclude=[node])

    try:
        await ctx.platform.delete_pod(node.namespace, node.pod_name)
        logger.info(f"[{ctx.name}] removed pod {node.namespace}/{node.pod_name}")
    except NotFoundError:
        logger.info(f"[{ctx.name}] pod {node.namespace}/{node.pod_name} has already been deleted")

    ctx.cluster.remove_node(node.pod_uid)
    ctx.pods.pop(node.pod_uid, None)
    await ctx.clients.discard(node.pod_name, node.namespace)
    await ctx.commit()


async def remove_leaving(ctx: ReconcileContext) -> None:
    """Remove every leaving node whose slots have been migrated away."""
    for node in ctx.cluster.leaving():
        if node.slots:
            logger.info(f"[{ctx.name}] leaving node {node.pod_name} still owns {node.num_slots()} slots, keeping it")
            continue
        logger.info(f"[{ctx.name}] removing leaving node {node.namespace}/{node.pod_name}")
        await remove_node(ctx, node)


async def cleanup(ctx: ReconcileContext) -> None:
    logger.info(f"[{ctx.name}] cleaning up cluster")
    await forget_ghosts(ctx)
    await remove_leaving(ctx)
