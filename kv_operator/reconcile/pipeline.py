"""
Reconcile Pipeline Module

The ordered stages of one reconcile pass and the Reconciler that runs them.

Each stage persists what it changed before the next one starts, so a pass
that fails or is cancelled at any point resumes from the last committed
status on the next pass.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

from ..cluster.models import ManagedCluster
from ..config.settings import CONDITION_SCALING, STATUS_FALSE, Settings, settings as default_settings
from ..errors import RequeueRequested
from ..network.pool import ClientPool
from ..platform.base import Platform
from . import cleanup, inventory, membership, rebalance, replicas, scaling
from .context import ReconcileContext, StatusStore

logger = logging.getLogger(__name__)


@dataclass
class Stage:
    """A named step of the pass."""
    name: str
    run: Callable[[ReconcileContext], Awaitable[None]]
    description: str = ""


async def reconcile_pods(ctx: ReconcileContext) -> None:
    """Wait for readiness, then grow or shrink the pod set."""
    needs_more = scaling.needs_more_pods(ctx)
    needs_less = scaling.needs_less_pods(ctx) or scaling.has_surplus_roles(ctx)

    await inventory.wait_for_readiness(ctx)

    if needs_more:
        logger.info(f"[{ctx.name}] cluster needs more pods")
        await scaling.scale_up(ctx)
        await inventory.wait_for_readiness(ctx)
    elif needs_less:
        logger.info(f"[{ctx.name}] cluster needs less pods")
        await scaling.scale_down(ctx)
        await inventory.wait_for_readiness(ctx)


async def check_converged(ctx: ReconcileContext) -> None:
    """Requeue while role counts differ from the resource spec; clear Scaling otherwise."""
    primaries = len(ctx.cluster.primaries())
    replica_count = len(ctx.cluster.replicas())
    if primaries != ctx.spec.number_of_primaries or replica_count != ctx.spec.required_replica_count:
        raise RequeueRequested(
            f"{primaries}/{ctx.spec.number_of_primaries} primaries, "
            f"{replica_count}/{ctx.spec.required_replica_count} replicas"
        )
    await ctx.set_condition(CONDITION_SCALING, STATUS_FALSE)


STAGES: List[Stage] = [
    Stage("ensure-status", inventory.ensure_status,
          "post: the resource carries a status document"),
    Stage("inventory", inventory.refresh_inventory,
          "post: tracked nodes all have a backing pod; both services exist"),
    Stage("pods", reconcile_pods,
          "post: pod count matches the resource spec; surplus nodes are leaving or promoting"),
    Stage("initialize", membership.bootstrap,
          "runs until Initialized; post: numberOfPrimaries slot-owning primaries"),
    Stage("configure", membership.configure,
          "pre: Initialized; post: missing primaries and replicas filled where nodes allow"),
    Stage("converged", check_converged,
          "requeues unless role counts match the resource spec; post: Scaling is False"),
    Stage("rebalance-slots", rebalance.rebalance_slots,
          "post: primaries own an even contiguous partition of the slot space"),
    Stage("rebalance-replicas", replicas.rebalance_replicas,
          "post: every primary has replicationFactor replicas"),
    Stage("cleanup", cleanup.cleanup,
          "post: no ghost members; leaving nodes forgotten and deleted"),
]


class Reconciler:
    """
    Runs reconcile passes for managed cluster resources.

    Args:
        platform: Orchestration platform adapter
        clients: Shared node client pool (connections survive across passes)
        config: Settings
        stages: Override the stage list (tests)
    """

    def __init__(
            self,
            platform: Platform,
            clients: Optional[ClientPool] = None,
            config: Optional[Settings] = None,
            stages: Optional[List[Stage]] = None,
    ):
        self.platform = platform
        self.settings = config or default_settings
        self.clients = clients if clients is not None else ClientPool(self.settings)
        self.store = StatusStore(platform, self.settings)
        self.stages = stages if stages is not None else STAGES

    async def load(self, namespace: str, name: str) -> ManagedCluster:
        resource = ManagedCluster.from_dict(await self.platform.get_resource(namespace, name))
        resource.spec.validate(self.settings.TOTAL_SLOTS)
        return resource

    async def reconcile(self, namespace: str, name: str) -> ReconcileContext:
        """
        Run one full pass over the named resource.

        Raises:
            NotFoundError: the resource no longer exists
            InvalidSpecError: the resource asks for an impossible shape
            RequeueRequested: the cluster needs another pass to converge
            StatusConflictError: the resource changed during the pass
            OperatorError: any failure; the pass is abandoned
        """
        resource = await self.load(namespace, name)
        ctx = ReconcileContext(resource, self.platform, self.clients, self.store, self.settings)

        logger.info(f"Reconciling {resource.key}")
        for stage in self.stages:
            logger.debug(f"[{resource.key}] stage {stage.name}")
            await stage.run(ctx)
        logger.info(f"Reconciled {resource.key}")
        return ctx
