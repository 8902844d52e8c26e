"""
Controller Module

Work queue in front of the Reconciler.

Guarantees:
- A resource key is never reconciled twice at the same time; events that
  arrive while it runs are coalesced into one follow-up pass.
- At most MAX_CONCURRENT_RECONCILES keys are reconciled in parallel.
- RequeueRequested requeues after its own delay and a status write conflict
  requeues at once; any other failure requeues with exponential backoff
  bounded by REQUEUE_MAX_DELAY. An invalid spec is not retried.
"""

import asyncio
import logging
from contextlib import aclosing
from typing import Dict, Optional, Set

from .config.settings import (
    LABEL_CLUSTER_NAME,
    LABEL_MANAGED_BY,
    OPERATOR_NAME,
    Settings,
    settings as default_settings,
)
from .errors import InvalidSpecError, NotFoundError, RequeueRequested, StatusConflictError
from .reconcile.pipeline import Reconciler

logger = logging.getLogger(__name__)


def resource_key(namespace: str, name: str) -> str:
    return f"{namespace}/{name}"


class Controller:
    """
    Single-flight, bounded-parallelism reconcile loop.

    Usage:
        controller = Controller(reconciler)
        task = asyncio.create_task(controller.run())
        controller.enqueue("default/my-cluster")
    """

    def __init__(self, reconciler: Reconciler, config: Optional[Settings] = None):
        self.reconciler = reconciler
        self.settings = config or default_settings
        self._queue: asyncio.Queue = asyncio.Queue()
        self._queued: Set[str] = set()
        self._active: Set[str] = set()
        self._dirty: Set[str] = set()
        self._failures: Dict[str, int] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._semaphore = asyncio.Semaphore(self.settings.MAX_CONCURRENT_RECONCILES)

    # ------------------------------------------------------------------
    # Queueing
    # ------------------------------------------------------------------

    def enqueue(self, key: str, delay: float = 0.0) -> None:
        """
        Schedule a pass for ``key``.

        Args:
            key: "<namespace>/<name>"
            delay: Seconds to wait first; an earlier pending timer wins
        """
        if delay > 0:
            loop = asyncio.get_running_loop()
            when = loop.time() + delay
            pending = self._timers.get(key)
            if pending is not None:
                if pending.when() <= when:
                    return
                pending.cancel()
            self._timers[key] = loop.call_at(when, self._fire, key)
            return

        if key in self._active:
            self._dirty.add(key)
            return
        if key in self._queued:
            return
        self._queued.add(key)
        self._queue.put_nowait(key)

    def _fire(self, key: str) -> None:
        self._timers.pop(key, None)
        self.enqueue(key)

    def backoff(self, failures: int) -> float:
        """Delay after ``failures`` consecutive failed passes."""
        delay = self.settings.REQUEUE_MIN_DELAY * (2 ** max(0, failures - 1))
        return min(self.settings.REQUEUE_MAX_DELAY, delay)

    def failures(self, key: str) -> int:
        return self._failures.get(key, 0)

    @property
    def idle(self) -> bool:
        """True when nothing is queued, running or waiting on a timer."""
        return not (self._queued or self._active or self._timers)

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Dispatch queued keys until cancelled."""
        logger.info(f"Controller started (max {self.settings.MAX_CONCURRENT_RECONCILES} concurrent reconciles)")
        while True:
            key = await self._queue.get()
            self._queued.discard(key)
            if key in self._active:
                self._dirty.add(key)
                continue
            self._active.add(key)
            task = asyncio.create_task(self._process(key))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _process(self, key: str) -> None:
        try:
            async with self._semaphore:
                delay = await self._reconcile_once(key)
        finally:
            self._active.discard(key)

        if key in self._dirty:
            self._dirty.discard(key)
            self.enqueue(key)
        elif delay is not None:
            self.enqueue(key, delay)

    async def _reconcile_once(self, key: str) -> Optional[float]:
        """Run one pass; return the requeue delay, or None when done."""
        namespace, name = key.split("/", 1)
        try:
            await self.reconciler.reconcile(namespace, name)
        except NotFoundError:
            logger.info(f"{key} no longer exists")
            self._failures.pop(key, None)
            return None
        except RequeueRequested as exc:
            logger.info(f"{key} not converged yet ({exc.reason}), requeueing")
            self._failures.pop(key, None)
            return exc.delay
        except StatusConflictError as exc:
            logger.info(f"{key} was modified during the pass ({exc}), restarting from a fresh read")
            return 0.0
        except InvalidSpecError as exc:
            # Retrying cannot help; the next edit of the resource enqueues it again
            logger.error(f"{key} has an invalid spec: {exc}")
            self._failures.pop(key, None)
            return None
        except Exception:
            failures = self._failures.get(key, 0) + 1
            self._failures[key] = failures
            delay = self.backoff(failures)
            logger.exception(f"Reconcile of {key} failed ({failures} in a row), retrying in {delay:.0f}s")
            return delay

        self._failures.pop(key, None)
        return None

    async def join(self, poll: float = 0.01) -> None:
        """Wait until the controller is idle."""
        while not self.idle:
            await asyncio.sleep(poll)

    async def stop(self) -> None:
        """Cancel timers and in-flight passes."""
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Controller stopped")

    # ------------------------------------------------------------------
    # Event sources
    # ------------------------------------------------------------------

    async def watch_resources(self, platform, namespace: str = "") -> None:
        """Enqueue every managed resource that changes."""
        async with aclosing(platform.watch_resources(namespace)) as events:
            async for event_type, obj in events:
                metadata = obj.get("metadata") or {}
                key = resource_key(metadata.get("namespace", ""), metadata.get("name", ""))
                if event_type == "DELETED":
                    logger.info(f"{key} deleted")
                    self._failures.pop(key, None)
                    continue
                logger.debug(f"{event_type} {key}")
                self.enqueue(key)

    async def watch_pods(self, platform, namespace: str = "", timeout: float = 300) -> None:
        """Enqueue the owning resource of every operator pod that changes."""
        selector = {LABEL_MANAGED_BY: OPERATOR_NAME}
        while True:
            async with aclosing(platform.watch_pods(namespace, selector, timeout)) as pods:
                async for pod in pods:
                    cluster_name = pod.labels.get(LABEL_CLUSTER_NAME)
                    if cluster_name:
                        self.enqueue(resource_key(pod.namespace, cluster_name))
