"""
Inventory Module

Brings the tracked node map in line with the pods that actually exist:
- ensure_status(): create the status document on first contact
- refresh_pods(): list backing pods, prune nodes whose pod vanished
- reconcile_services(): create or repair the routable and headless services
- wait_for_readiness(): block until every pod is ready (bounded)
"""

import asyncio
import logging
from contextlib import aclosing

from ..cluster.models import ClusterStatus, Node, Role
from ..errors import NotFoundError
from ..platform.base import Pod, desired_services
from .context import ReconcileContext

logger = logging.getLogger(__name__)


async def ensure_status(ctx: ReconcileContext) -> None:
    """Create and persist an empty status if the resource has none."""
    if ctx.status is not None:
        return
    logger.info(f"[{ctx.name}] initializing cluster status")
    ctx.status = ClusterStatus()
    await ctx.commit()


def node_for_pod(ctx: ReconcileContext, pod: Pod) -> Node:
    """A fresh, unassigned node backed by ``pod``."""
    node = Node(pod_uid=pod.uid, pod_name=pod.name, namespace=pod.namespace,
                port=ctx.settings.NODE_PORT, role=Role.NONE)
    update_node(ctx, node, pod)
    return node


def update_node(ctx: ReconcileContext, node: Node, pod: Pod) -> None:
    """Copy placement and addressing from the pod onto its node."""
    node.pod_name = pod.name
    node.namespace = pod.namespace
    if pod.host_name:
        node.host_name = pod.host_name
    if pod.pod_ip:
        node.pod_ip = pod.pod_ip
        node.address = ctx.resource.pod_address(pod.pod_ip)


async def refresh_pods(ctx: ReconcileContext) -> None:
    """
    Load the backing pods and drop tracked nodes without one.

    Pruning keeps the replica-count index consistent: a pruned primary loses
    its entry, a pruned replica is released from its primary.
    """
    pods = await ctx.platform.list_pods(ctx.resource.namespace, ctx.resource.selector())
    ctx.pods = {pod.uid: pod for pod in pods}
    logger.info(f"[{ctx.name}] cluster has {len(pods)} pods")

    for uid, node in list(ctx.cluster.nodes.items()):
        if uid in ctx.pods:
            continue
        logger.info(f"[{ctx.name}] pod {node.namespace}/{node.pod_name} is gone, dropping {node.role.value} node")
        if node.role == Role.REPLICA:
            ctx.cluster.release_replica(node)
        ctx.cluster.remove_node(uid)
        await ctx.clients.discard(node.pod_name, node.namespace)

    await ctx.commit()


async def reconcile_services(ctx: ReconcileContext) -> None:
    """Create missing services and replace drifted ones."""
    for desired in desired_services(ctx.resource, ctx.settings.NODE_PORT):
        try:
            existing = await ctx.platform.read_service(desired.namespace, desired.name)
        except NotFoundError:
            logger.info(f"[{ctx.name}] creating service {desired.name}")
            await ctx.platform.create_service(desired, ctx.resource)
            continue

        if not existing.matches(desired):
            logger.info(f"[{ctx.name}] service {desired.name} drifted, replacing")
            await ctx.platform.replace_service(desired, ctx.resource)


async def refresh_inventory(ctx: ReconcileContext) -> None:
    """Pod refresh and service reconciliation are independent; run both at once."""
    await asyncio.gather(refresh_pods(ctx), reconcile_services(ctx))


def _track_ready_pod(ctx: ReconcileContext, pod: Pod) -> None:
    node = ctx.cluster.node_by_uid(pod.uid)
    if node is None:
        ctx.cluster.nodes[pod.uid] = node_for_pod(ctx, pod)
    else:
        update_node(ctx, node, pod)


def all_ready(ctx: ReconcileContext) -> bool:
    return all(pod.ready for pod in ctx.pods.values())


async def wait_for_readiness(ctx: ReconcileContext) -> None:
    """
    Wait until every backing pod reports ready.

    Returns at once when they already are. Otherwise consumes the platform's
    pod watch until all are ready or READINESS_TIMEOUT passes; a timeout is
    not an error, later stages only use ready nodes.
    """
    logger.info(f"[{ctx.name}] waiting for pods to become ready")

    if not all_ready(ctx):
        try:
            await asyncio.wait_for(_watch_until_ready(ctx), timeout=ctx.settings.READINESS_TIMEOUT)
        except asyncio.TimeoutError:
            pending = sorted(p.name for p in ctx.pods.values() if not p.ready)
            logger.warning(f"[{ctx.name}] pods not ready after {ctx.settings.READINESS_TIMEOUT}s: {pending}")

    for pod in ctx.pods.values():
        if pod.ready:
            _track_ready_pod(ctx, pod)

    if all_ready(ctx):
        logger.info(f"[{ctx.name}] all pods are ready")
    await ctx.commit()


async def _watch_until_ready(ctx: ReconcileContext) -> None:
    pods = ctx.platform.watch_pods(ctx.resource.namespace, ctx.resource.selector(), ctx.settings.READINESS_TIMEOUT)
    async with aclosing(pods):
        async for pod in pods:
            if pod.uid not in ctx.pods:
                continue
            ctx.pods[pod.uid] = pod
            if all_ready(ctx):
                return
