"""
Kubernetes Platform Module

Platform implementation on top of the official ``kubernetes`` client. The
client is synchronous, so every API call runs in a worker thread and watch
streams are pumped from a thread into an asyncio queue.
"""

import asyncio
import functools
import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from contextlib import aclosing
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple

from kubernetes import client, config as kube_config, watch
from kubernetes.client.rest import ApiException

from ..cluster.models import ManagedCluster
from ..config.settings import (
    API_GROUP,
    API_VERSION,
    LABEL_CLUSTER_ID,
    LABEL_CLUSTER_NAME,
    LABEL_MANAGED_BY,
    LABEL_POD_NAME,
    OPERATOR_NAME,
    RESOURCE_KIND,
    RESOURCE_PLURAL,
    Settings,
    settings as default_settings,
)
from ..errors import ConflictError, NotFoundError
from .base import Platform, Pod, Service, pod_name_for

logger = logging.getLogger(__name__)

_DONE = object()

# Seconds to wait for a watch thread after its response was closed
WATCH_STOP_TIMEOUT = 5.0


def load_config(kubeconfig: Optional[str] = None) -> None:
    """Load in-cluster credentials, falling back to a kubeconfig file."""
    if kubeconfig:
        kube_config.load_kube_config(config_file=kubeconfig)
        return
    try:
        kube_config.load_incluster_config()
    except kube_config.ConfigException:
        logger.info("Not running in a cluster, loading kubeconfig")
        kube_config.load_kube_config()


def selector_string(selector: Dict[str, str]) -> str:
    return ",".join(f"{k}={v}" for k, v in sorted(selector.items()))


def pod_from_api(obj: client.V1Pod) -> Pod:
    status = obj.status or client.V1PodStatus()
    ready = any(c.type == "Ready" and c.status == "True" for c in status.conditions or [])
    return Pod(
        uid=obj.metadata.uid,
        name=obj.metadata.name,
        namespace=obj.metadata.namespace,
        host_name=(obj.spec.node_name if obj.spec else None) or "",
        pod_ip=status.pod_ip or "",
        ready=ready,
        labels=dict(obj.metadata.labels or {}),
    )


def service_from_api(obj: client.V1Service) -> Service:
    ports = obj.spec.ports or []
    return Service(
        name=obj.metadata.name,
        namespace=obj.metadata.namespace,
        headless=obj.spec.cluster_ip == "None",
        selector=dict(obj.spec.selector or {}),
        port=ports[0].port if ports else 0,
        labels=dict(obj.metadata.labels or {}),
        resource_version=obj.metadata.resource_version or "",
    )


def owner_reference(cluster: ManagedCluster) -> Dict[str, Any]:
    return {
        "apiVersion": f"{API_GROUP}/{API_VERSION}",
        "kind": RESOURCE_KIND,
        "name": cluster.name,
        "uid": cluster.uid,
        "controller": True,
        "blockOwnerDeletion": True,
    }


class KubernetesPlatform(Platform):
    """Platform backed by a live Kubernetes API server."""

    def __init__(self, api_client: Optional[client.ApiClient] = None, config: Optional[Settings] = None):
        self.settings = config or default_settings
        self.api_client = api_client or client.ApiClient()
        self.core = client.CoreV1Api(self.api_client)
        self.custom = client.CustomObjectsApi(self.api_client)
        # Watches block a thread each for their whole lifetime; keep them off
        # the default executor that API calls run on
        self._watch_executor = ThreadPoolExecutor(
            max_workers=self.settings.MAX_CONCURRENT_RECONCILES + 2, thread_name_prefix="kube-watch")

    async def _call(self, func: Callable[..., Any], *args, **kwargs) -> Any:
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except ApiException as exc:
            if exc.status == 404:
                raise NotFoundError(exc.reason or "not found") from exc
            if exc.status == 409:
                raise ConflictError(exc.reason or "conflict") from exc
            raise

    async def _stream(self, func: Callable[..., Any], timeout: float, **kwargs) -> AsyncIterator[Dict[str, Any]]:
        """
        Run a blocking watch in a thread and yield its events.

        Closing the generator stops the watch and closes the open response,
        which unblocks the thread; use it under ``contextlib.aclosing``.
        """
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        stream_watch = watch.Watch()
        responses: List[Any] = []
        stopping = threading.Event()

        @functools.wraps(func)
        def request(*args, **kw):
            response = func(*args, **kw)
            responses.append(response)
            return response

        def pump():
            try:
                for event in stream_watch.stream(request, timeout_seconds=max(1, int(timeout)), **kwargs):
                    if stopping.is_set():
                        break
                    loop.call_soon_threadsafe(queue.put_nowait, event)
            except Exception as exc:
                if not stopping.is_set():
                    loop.call_soon_threadsafe(queue.put_nowait, exc)
            finally:
                if not stopping.is_set():
                    loop.call_soon_threadsafe(queue.put_nowait, _DONE)

        pumping = loop.run_in_executor(self._watch_executor, pump)
        try:
            while True:
                item = await queue.get()
                if item is _DONE:
                    return
                if isinstance(item, Exception):
                    raise item
                yield item
        finally:
            stopping.set()
            stream_watch.stop()
            for response in responses:
                response.close()
            await asyncio.wait([pumping], timeout=WATCH_STOP_TIMEOUT)

    # ------------------------------------------------------------------
    # Pods
    # ------------------------------------------------------------------

    async def list_pods(self, namespace: str, selector: Dict[str, str]) -> List[Pod]:
        result = await self._call(self.core.list_namespaced_pod, namespace,
                                  label_selector=selector_string(selector))
        return [pod_from_api(item) for item in result.items]

    async def create_pod(self, cluster: ManagedCluster) -> Pod:
        name = pod_name_for(cluster, uuid.uuid4().hex[:5])
        body = self.pod_manifest(cluster, name)
        created = await self._call(self.core.create_namespaced_pod, cluster.namespace, body)
        logger.info(f"Created pod {cluster.namespace}/{name}")
        return pod_from_api(created)

    def pod_manifest(self, cluster: ManagedCluster, name: str) -> Dict[str, Any]:
        """Static pod template for one cluster node."""
        port = self.settings.NODE_PORT
        labels = dict(cluster.spec.additional_labels)
        labels.update({
            LABEL_MANAGED_BY: OPERATOR_NAME,
            LABEL_CLUSTER_ID: cluster.uid,
            LABEL_CLUSTER_NAME: cluster.name,
            LABEL_POD_NAME: name,
        })
        return {
            "apiVersion": "v1",
            "kind": "Pod",
            "metadata": {
                "name": name,
                "namespace": cluster.namespace,
                "labels": labels,
                "ownerReferences": [owner_reference(cluster)],
            },
            "spec": {
                "containers": [{
                    "name": "node",
                    "image": cluster.spec.image or self.settings.IMAGE,
                    "args": ["--cluster", "--port", str(port)] + list(cluster.spec.additional_args),
                    "ports": [{"name": "node", "containerPort": port, "protocol": "TCP"}],
                    "readinessProbe": {
                        "tcpSocket": {"port": port},
                        "periodSeconds": 5,
                    },
                }],
            },
        }

    async def delete_pod(self, namespace: str, name: str) -> None:
        await self._call(self.core.delete_namespaced_pod, name, namespace)
        logger.info(f"Deleted pod {namespace}/{name}")

    async def watch_pods(self, namespace: str, selector: Dict[str, str], timeout: float) -> AsyncIterator[Pod]:
        if namespace:
            func, kwargs = self.core.list_namespaced_pod, {"namespace": namespace}
        else:
            func, kwargs = self.core.list_pod_for_all_namespaces, {}
        events = self._stream(func, timeout, label_selector=selector_string(selector), **kwargs)
        async with aclosing(events):
            async for event in events:
                yield pod_from_api(event["object"])

    # ------------------------------------------------------------------
    # Services
    # ------------------------------------------------------------------

    async def read_service(self, namespace: str, name: str) -> Service:
        return service_from_api(await self._call(self.core.read_namespaced_service, name, namespace))

    def service_manifest(self, service: Service, cluster: ManagedCluster) -> Dict[str, Any]:
        spec: Dict[str, Any] = {
            "selector": dict(service.selector),
            "ports": [{"name": "node", "port": service.port, "targetPort": service.port, "protocol": "TCP"}],
        }
        if service.headless:
            spec["clusterIP"] = "None"
            spec["publishNotReadyAddresses"] = True
        return {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": {
                "name": service.name,
                "namespace": service.namespace,
                "labels": {LABEL_MANAGED_BY: OPERATOR_NAME, LABEL_CLUSTER_NAME: cluster.name},
                "ownerReferences": [owner_reference(cluster)],
            },
            "spec": spec,
        }

    async def create_service(self, service: Service, cluster: ManagedCluster) -> Service:
        created = await self._call(self.core.create_namespaced_service, service.namespace,
                                   self.service_manifest(service, cluster))
        logger.info(f"Created service {service.namespace}/{service.name}")
        return service_from_api(created)

    async def replace_service(self, service: Service, cluster: ManagedCluster) -> Service:
        # Patch rather than PUT so the allocated cluster IP is preserved
        patched = await self._call(self.core.patch_namespaced_service, service.name, service.namespace,
                                   self.service_manifest(service, cluster))
        logger.info(f"Updated service {service.namespace}/{service.name}")
        return service_from_api(patched)

    # ------------------------------------------------------------------
    # Managed resource
    # ------------------------------------------------------------------

    async def get_resource(self, namespace: str, name: str) -> Dict[str, Any]:
        return await self._call(
            self.custom.get_namespaced_custom_object,
            group=API_GROUP, version=API_VERSION, namespace=namespace, plural=RESOURCE_PLURAL, name=name,
        )

    async def replace_status(self, namespace: str, name: str, resource_version: str,
                             status: Dict[str, Any]) -> Dict[str, Any]:
        body = {
            "apiVersion": f"{API_GROUP}/{API_VERSION}",
            "kind": RESOURCE_KIND,
            "metadata": {"name": name, "namespace": namespace, "resourceVersion": resource_version},
            "status": status,
        }
        return await self._call(
            self.custom.replace_namespaced_custom_object_status,
            group=API_GROUP, version=API_VERSION, namespace=namespace, plural=RESOURCE_PLURAL,
            name=name, body=body,
        )

    async def watch_resources(self, namespace: str = "", timeout: float = 300) -> AsyncIterator[Tuple[str, Dict[str, Any]]]:
        """
        Yield (event type, resource) for every managed resource change.

        Restarts the underlying watch whenever it times out or its resource
        version expires.
        """
        if namespace:
            func = self.custom.list_namespaced_custom_object
            kwargs = {"group": API_GROUP, "version": API_VERSION, "plural": RESOURCE_PLURAL, "namespace": namespace}
        else:
            func = self.custom.list_cluster_custom_object
            kwargs = {"group": API_GROUP, "version": API_VERSION, "plural": RESOURCE_PLURAL}

        while True:
            try:
                async with aclosing(self._stream(func, timeout, **kwargs)) as events:
                    async for event in events:
                        yield event["type"], event["object"]
            except ApiException as exc:
                if exc.status != 410:
                    raise
                logger.info("Resource watch expired, restarting")

    async def close(self) -> None:
        self._watch_executor.shutdown(wait=False, cancel_futures=True)
        await asyncio.to_thread(self.api_client.close)
