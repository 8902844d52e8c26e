"""
Reconcile Context Module

Per-pass state shared by every stage, and the status store that persists the
tracked cluster on the managed resource with optimistic concurrency.
"""

import copy
import logging
from typing import Any, Dict, List, Optional

from ..cluster.models import Cluster, ClusterSpec, ClusterStatus, ManagedCluster, Node
from ..config.settings import Settings, settings as default_settings
from ..errors import ConflictError, StatusConflictError
from ..network.client import NodeClient
from ..network.pool import ClientPool
from ..platform.base import Platform, Pod

logger = logging.getLogger(__name__)


class StatusStore:
    """
    Version-checked persistence of the status document.

    Every write carries the resource version the pass loaded (then the
    version of its own previous write). Any other writer in between, a spec
    edit or a foreign status update, makes the write fail with
    StatusConflictError; the pass is abandoned and the next one starts from
    a fresh read.
    """

    def __init__(self, platform: Platform, config: Optional[Settings] = None):
        self.platform = platform
        self.settings = config or default_settings

    async def save(self, resource: ManagedCluster, status: Dict[str, Any]) -> None:
        """
        Write ``status`` onto ``resource``.

        Args:
            resource: The resource as loaded at the start of the pass; its
                resource_version is advanced on success
            status: Serialised ClusterStatus

        Raises:
            StatusConflictError: the resource changed since it was read
        """
        try:
            updated = await self.platform.replace_status(
                resource.namespace, resource.name, resource.resource_version, status)
        except ConflictError as exc:
            raise StatusConflictError(
                f"{resource.key} changed since version {resource.resource_version}: {exc}") from exc

        resource.resource_version = str((updated.get("metadata") or {}).get("resourceVersion") or "")


class ReconcileContext:
    """
    Everything one reconcile pass works on.

    Attributes:
        resource: The managed resource being reconciled
        status: Its (mutable) status; None until ensure-status ran
        pods: Backing pods keyed by uid, refreshed by the inventory stage
    """

    def __init__(
            self,
            resource: ManagedCluster,
            platform: Platform,
            clients: ClientPool,
            store: StatusStore,
            config: Optional[Settings] = None,
    ):
        self.resource = resource
        self.platform = platform
        self.clients = clients
        self.store = store
        self.settings = config or default_settings
        self.status: Optional[ClusterStatus] = resource.status
        self.pods: Dict[str, Pod] = {}
        self._written: Optional[Dict[str, Any]] = self.status.to_dict() if self.status else None

    @property
    def spec(self) -> ClusterSpec:
        return self.resource.spec

    @property
    def cluster(self) -> Cluster:
        return self.status.cluster

    @property
    def name(self) -> str:
        return self.resource.key

    async def commit(self) -> bool:
        """
        Persist the status if it changed since the last write.

        Returns:
            True if a write happened
        """
        document = self.status.to_dict()
        if document == self._written:
            return False
        await self.store.save(self.resource, document)
        self._written = copy.deepcopy(document)
        return True

    async def set_condition(self, type_: str, status: str, reason: str = "", message: str = "") -> None:
        """Upsert a condition and persist it if it changed."""
        if self.status.set_condition(type_, status, reason, message):
            logger.info(f"[{self.name}] condition {type_}={status} {reason}".rstrip())
            await self.commit()

    async def client(self, node: Node) -> NodeClient:
        return await self.clients.get(node)

    def next_epoch(self, current_epoch: int) -> int:
        """Epoch for the next configured node."""
        return max(current_epoch, self.status.last_epoch) + 1

    def is_ready(self, node: Node) -> bool:
        """True if the node's pod is ready and addressable."""
        pod = self.pods.get(node.pod_uid)
        return pod is not None and pod.ready and bool(node.address)

    def available_orphans(self) -> List[Node]:
        """Unassigned nodes that can be configured now, in pod-name order."""
        return sorted((n for n in self.cluster.orphans() if self.is_ready(n)), key=lambda n: n.pod_name)
