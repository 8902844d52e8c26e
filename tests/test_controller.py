"""
Tests for the Controller Work Queue

These tests verify:
- A key is never reconciled twice at once; events during a pass coalesce
- Parallelism is bounded
- RequeueRequested, status conflicts and failures requeue the key
- An invalid spec is not retried
- Backoff grows exponentially and is capped
- Watches enqueue the right keys

Run with: python -m pytest tests/test_controller.py -v
"""

import asyncio
import pytest
import pytest_asyncio
from typing import AsyncGenerator

from kv_operator.config.settings import LABEL_CLUSTER_NAME, Settings
from kv_operator.controller import Controller, resource_key
from kv_operator.errors import InvalidSpecError, NotFoundError, RequeueRequested, StatusConflictError
from kv_operator.platform.base import Pod


class StubReconciler:
    """Records calls; behaviour per call is scripted through ``outcomes``."""

    def __init__(self, hold: float = 0.0):
        self.calls = []
        self.outcomes = {}
        self.hold = hold
        self.running = 0
        self.max_running = 0
        self.gate = None

    async def reconcile(self, namespace, name):
        key = resource_key(namespace, name)
        self.calls.append(key)
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            if self.gate is not None:
                await self.gate.wait()
            await asyncio.sleep(self.hold)
            scripted = self.outcomes.get(key)
            if scripted:
                outcome = scripted.pop(0)
                if outcome is not None:
                    raise outcome
        finally:
            self.running -= 1


@pytest.fixture
def controller_settings() -> Settings:
    return Settings(MAX_CONCURRENT_RECONCILES=2, REQUEUE_MIN_DELAY=0.01, REQUEUE_MAX_DELAY=0.04)


@pytest.fixture
def stub() -> StubReconciler:
    return StubReconciler()


@pytest_asyncio.fixture
async def controller(stub, controller_settings) -> AsyncGenerator[Controller, None]:
    """A running controller around the stub reconciler."""
    ctrl = Controller(stub, controller_settings)
    task = asyncio.create_task(ctrl.run())
    yield ctrl
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    await ctrl.stop()


@pytest.mark.asyncio
class TestSingleFlight:
    """Test per-key serialisation."""

    async def test_single_pass(self, controller, stub):
        controller.enqueue("default/a")
        await asyncio.wait_for(controller.join(), timeout=2)
        assert stub.calls == ["default/a"]

    async def test_events_during_pass_coalesce(self, controller, stub):
        """Any number of events while a pass runs produce one follow-up pass."""
        stub.gate = asyncio.Event()
        controller.enqueue("default/a")
        await asyncio.sleep(0.01)
        assert stub.running == 1

        for _ in range(5):
            controller.enqueue("default/a")
        await asyncio.sleep(0.01)
        assert stub.max_running == 1

        stub.gate.set()
        await asyncio.wait_for(controller.join(), timeout=2)
        assert stub.calls == ["default/a", "default/a"]
        assert stub.max_running == 1

    async def test_queued_duplicates_collapse(self, controller, stub):
        """Enqueueing a waiting key again does not add a pass."""
        for _ in range(3):
            controller.enqueue("default/a")
        await asyncio.wait_for(controller.join(), timeout=2)
        assert stub.calls == ["default/a"]


@pytest.mark.asyncio
class TestParallelism:
    """Test the concurrency bound."""

    async def test_bounded(self, controller, stub):
        stub.hold = 0.02
        for name in "abcde":
            controller.enqueue(f"default/{name}")
        await asyncio.wait_for(controller.join(), timeout=2)
        assert sorted(stub.calls) == [f"default/{n}" for n in "abcde"]
        assert stub.max_running == 2


@pytest.mark.asyncio
class TestRequeue:
    """Test requeue and backoff."""

    async def test_requeue_requested(self, controller, stub):
        """A non-converged pass runs again without counting as a failure."""
        stub.outcomes["default/a"] = [RequeueRequested("not yet", delay=0.01), None]
        controller.enqueue("default/a")
        await asyncio.wait_for(controller.join(), timeout=2)
        assert stub.calls == ["default/a", "default/a"]
        assert controller.failures("default/a") == 0

    async def test_failure_retries_with_backoff(self, controller, stub):
        """Failed passes are retried; success resets the failure count."""
        stub.outcomes["default/a"] = [RuntimeError("boom"), RuntimeError("boom"), None]
        controller.enqueue("default/a")
        await asyncio.wait_for(controller.join(), timeout=2)
        assert stub.calls == ["default/a"] * 3
        assert controller.failures("default/a") == 0

    async def test_failure_count_tracked(self, controller, stub, controller_settings):
        controller_settings.REQUEUE_MIN_DELAY = 30.0
        controller_settings.REQUEUE_MAX_DELAY = 60.0
        stub.outcomes["default/a"] = [RuntimeError("boom")]
        controller.enqueue("default/a")
        await asyncio.sleep(0.05)
        assert controller.failures("default/a") == 1
        assert not controller.idle

    async def test_status_conflict_restarts_at_once(self, controller, stub, controller_settings):
        """A pass that lost a status write runs again without backoff."""
        controller_settings.REQUEUE_MIN_DELAY = 30.0
        controller_settings.REQUEUE_MAX_DELAY = 60.0
        stub.outcomes["default/a"] = [StatusConflictError("default/a changed"), None]
        controller.enqueue("default/a")
        await asyncio.wait_for(controller.join(), timeout=2)
        assert stub.calls == ["default/a", "default/a"]
        assert controller.failures("default/a") == 0

    async def test_invalid_spec_is_not_retried(self, controller, stub):
        stub.outcomes["default/a"] = [InvalidSpecError("numberOfPrimaries must be at least 1")]
        controller.enqueue("default/a")
        await asyncio.wait_for(controller.join(), timeout=2)
        assert stub.calls == ["default/a"]
        assert controller.failures("default/a") == 0
        assert controller.idle

    async def test_deleted_resource_is_dropped(self, controller, stub):
        stub.outcomes["default/a"] = [NotFoundError("default/a")]
        controller.enqueue("default/a")
        await asyncio.wait_for(controller.join(), timeout=2)
        assert stub.calls == ["default/a"]
        assert controller.idle

    async def test_earlier_timer_wins(self, controller, stub):
        controller.enqueue("default/a", delay=10)
        controller.enqueue("default/a", delay=0.01)
        await asyncio.wait_for(controller.join(), timeout=2)
        assert stub.calls == ["default/a"]


class TestBackoff:
    """Test the failure backoff schedule."""

    def test_doubles_then_caps(self, stub):
        ctrl = Controller(stub, Settings(REQUEUE_MIN_DELAY=10.0, REQUEUE_MAX_DELAY=60.0))
        assert [ctrl.backoff(n) for n in range(1, 6)] == [10.0, 20.0, 40.0, 60.0, 60.0]


class FakeWatchPlatform:
    """Replays scripted watch events."""

    def __init__(self, resource_events=(), pods=()):
        self.resource_events = list(resource_events)
        self.pods = list(pods)
        self.pod_watches = 0

    async def watch_resources(self, namespace):
        for event in self.resource_events:
            yield event

    async def watch_pods(self, namespace, selector, timeout):
        self.pod_watches += 1
        if self.pod_watches > 1:
            await asyncio.Event().wait()
        for pod in self.pods:
            yield pod


@pytest.mark.asyncio
class TestWatches:
    """Test event sources."""

    async def test_resource_events(self, stub, controller_settings):
        ctrl = Controller(stub, controller_settings)
        platform = FakeWatchPlatform(resource_events=[
            ("ADDED", {"metadata": {"namespace": "default", "name": "a"}}),
            ("MODIFIED", {"metadata": {"namespace": "prod", "name": "b"}}),
            ("DELETED", {"metadata": {"namespace": "prod", "name": "c"}}),
        ])
        await ctrl.watch_resources(platform, "")
        assert sorted(ctrl._queued) == ["default/a", "prod/b"]

    async def test_pod_events_map_to_owner(self, stub, controller_settings):
        ctrl = Controller(stub, controller_settings)
        platform = FakeWatchPlatform(pods=[
            Pod(uid="1", name="a-0", namespace="default", labels={LABEL_CLUSTER_NAME: "a"}),
            Pod(uid="2", name="stray", namespace="default", labels={}),
        ])
        task = asyncio.create_task(ctrl.watch_pods(platform, ""))
        await asyncio.sleep(0.01)
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        assert ctrl._queued == {"default/a"}
