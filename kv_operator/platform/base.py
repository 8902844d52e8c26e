"""
Platform Contract Module

The orchestration-platform operations the reconciler consumes. The
Kubernetes adapter lives in kubernetes.py; tests provide an in-memory one.

Errors:
    NotFoundError: the addressed object does not exist
    ConflictError: a versioned write lost against a concurrent update
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

from ..cluster.models import ManagedCluster


@dataclass
class Pod:
    """The parts of a pod the reconciler looks at."""
    uid: str
    name: str
    namespace: str
    host_name: str = ""
    pod_ip: str = ""
    ready: bool = False
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass
class Service:
    """A routable or headless service in front of the cluster pods."""
    name: str
    namespace: str
    headless: bool = False
    selector: Dict[str, str] = field(default_factory=dict)
    port: int = 0
    labels: Dict[str, str] = field(default_factory=dict)
    resource_version: str = ""

    def matches(self, other: "Service") -> bool:
        """True if ``other`` describes the same desired service."""
        return (self.headless, self.selector, self.port) == (other.headless, other.selector, other.port)


class Platform(ABC):
    """Operations on pods, services and the managed resource."""

    @abstractmethod
    async def list_pods(self, namespace: str, selector: Dict[str, str]) -> List[Pod]:
        """List pods in ``namespace`` matching every label in ``selector``."""

    @abstractmethod
    async def create_pod(self, cluster: ManagedCluster) -> Pod:
        """Create one new cluster node pod owned by ``cluster``."""

    @abstractmethod
    async def delete_pod(self, namespace: str, name: str) -> None:
        """Delete a pod; raises NotFoundError if it is already gone."""

    @abstractmethod
    async def read_service(self, namespace: str, name: str) -> Service:
        """Read a service; raises NotFoundError if absent."""

    @abstractmethod
    async def create_service(self, service: Service, cluster: ManagedCluster) -> Service:
        """Create a service owned by ``cluster``."""

    @abstractmethod
    async def replace_service(self, service: Service, cluster: ManagedCluster) -> Service:
        """Replace an existing service with the desired one."""

    @abstractmethod
    async def get_resource(self, namespace: str, name: str) -> Dict[str, Any]:
        """Read the managed resource; raises NotFoundError if deleted."""

    @abstractmethod
    async def replace_status(self, namespace: str, name: str, resource_version: str,
                             status: Dict[str, Any]) -> Dict[str, Any]:
        """
        Write the status sub-document guarded by ``resource_version``.

        Returns the updated resource; raises ConflictError if the stored
        version differs.
        """

    @abstractmethod
    def watch_pods(self, namespace: str, selector: Dict[str, str], timeout: float) -> AsyncIterator[Pod]:
        """Yield pods as they change until ``timeout`` seconds pass."""

    async def close(self) -> None:
        """Release platform resources."""


def desired_services(cluster: ManagedCluster, port: int) -> List[Service]:
    """The routable and the headless service every cluster needs."""
    selector = cluster.selector()
    selector.update(cluster.spec.additional_labels)
    return [
        Service(name=cluster.service_name, namespace=cluster.namespace, headless=False,
                selector=selector, port=port),
        Service(name=cluster.headless_service_name, namespace=cluster.namespace, headless=True,
                selector=selector, port=port),
    ]


def pod_name_for(cluster: ManagedCluster, suffix: Optional[str]) -> str:
    """Generated pod name: ``<cluster>-<suffix>``."""
    return f"{cluster.name}-{suffix}" if suffix else cluster.name
