"""
Integration Tests

End-to-end tests that run the controller, the reconciler, the client pool
and the simulated cluster together.

Run with: python -m pytest tests/test_integration.py -v
"""

import asyncio
import pytest

from kv_operator.cluster.models import ClusterStatus
from kv_operator.controller import Controller


async def run_until_idle(controller: Controller, timeout: float = 5.0) -> None:
    await asyncio.sleep(0)
    await asyncio.wait_for(controller.join(), timeout=timeout)


@pytest.mark.asyncio
@pytest.mark.integration
class TestControllerEndToEnd:
    """End-to-end integration tests."""

    async def test_cluster_lifecycle(self, reconciler, platform, network, fast_settings):
        """Create, reshape and shrink a cluster purely through enqueued events."""
        controller = Controller(reconciler, fast_settings)
        runner = asyncio.create_task(controller.run())
        try:
            platform.add_resource("demo", primaries=3, replication_factor=1)
            controller.enqueue("default/demo")
            await run_until_idle(controller)

            status = ClusterStatus.from_dict(platform.status_of("demo"))
            assert len(status.cluster.primaries()) == 3
            assert len(status.cluster.replicas()) == 3
            assert controller.failures("default/demo") == 0

            # Requeues after RequeueRequested carry the reshape to the end
            platform.update_spec("demo", numberOfPrimaries=2, replicationFactor=2)
            controller.enqueue("default/demo")
            await run_until_idle(controller)

            status = ClusterStatus.from_dict(platform.status_of("demo"))
            assert len(status.cluster.primaries()) == 2
            assert len(status.cluster.replicas()) == 4
            assert status.cluster.check_invariants() == []

            platform.update_spec("demo", numberOfPrimaries=1, replicationFactor=0)
            controller.enqueue("default/demo")
            await run_until_idle(controller)

            status = ClusterStatus.from_dict(platform.status_of("demo"))
            primary = status.cluster.primaries()[0]
            assert len(status.cluster.nodes) == 1
            assert primary.slots == [0, 16383]
            assert len(platform.pods) == 1
        finally:
            runner.cancel()
            await asyncio.gather(runner, return_exceptions=True)
            await controller.stop()

    async def test_clusters_reconcile_independently(self, reconciler, platform, network, fast_settings):
        """Two resources converge side by side without sharing nodes."""
        controller = Controller(reconciler, fast_settings)
        runner = asyncio.create_task(controller.run())
        try:
            platform.add_resource("alpha", primaries=2, replication_factor=1)
            platform.add_resource("beta", primaries=1, replication_factor=1)
            controller.enqueue("default/alpha")
            controller.enqueue("default/beta")
            await run_until_idle(controller)

            alpha = ClusterStatus.from_dict(platform.status_of("alpha")).cluster
            beta = ClusterStatus.from_dict(platform.status_of("beta")).cluster
            assert len(alpha.nodes) == 4
            assert len(beta.nodes) == 2
            assert not set(alpha.nodes) & set(beta.nodes)

            alpha_ids = {n.id for n in alpha.nodes.values()}
            for node in beta.nodes.values():
                assert not network.by_id(node.id).known & alpha_ids
        finally:
            runner.cancel()
            await asyncio.gather(runner, return_exceptions=True)
            await controller.stop()

    async def test_deleted_resource_stops_reconciling(self, reconciler, platform, fast_settings):
        controller = Controller(reconciler, fast_settings)
        runner = asyncio.create_task(controller.run())
        try:
            controller.enqueue("default/ghost")
            await run_until_idle(controller)
            assert controller.idle
            assert controller.failures("default/ghost") == 0
        finally:
            runner.cancel()
            await asyncio.gather(runner, return_exceptions=True)
            await controller.stop()
