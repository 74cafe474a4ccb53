from __future__ import annotations

import logging
import time
from collections.abc import Mapping, Sequence
from threading import Event, Thread
from typing import Any, Protocol

from .errors import ControllerError
from .k8s_models import Endpoints, EndpointSlice
from .mirror import Mirror
from .workqueue import RateLimitingQueue

log = logging.getLogger(__name__)

# The only work item. Every change means "the backend may be stale".
QUEUE_KEY = "ingress-backends"

STOPPED = "stopped"
STARTING = "starting"
RUNNING = "running"


class BackendSyncer(Protocol):
    def sync(
        self,
        slices: Sequence[EndpointSlice],
        endpoints: Sequence[Endpoints],
        host_addresses: Mapping[str, str] | None = None,
    ) -> Any: ...


class Controller:
    """Keeps the HAProxy backend converged on the mirrored membership.

    Change notifications only enqueue ``QUEUE_KEY``; the queue collapses any
    burst of them into one pending pass. Failed passes are re-queued with
    exponential backoff and retried for as long as the process runs.
    """

    def __init__(
        self,
        mirror: Mirror,
        syncer: BackendSyncer,
        worker_count: int = 2,
        resync_period_s: float = 0.0,
        cache_sync_timeout_s: float = 60.0,
        queue: RateLimitingQueue | None = None,
    ):
        self.mirror = mirror
        self.syncer = syncer
        self.worker_count = max(1, int(worker_count))
        self.resync_period_s = resync_period_s
        self.cache_sync_timeout_s = cache_sync_timeout_s
        self.queue = queue if queue is not None else RateLimitingQueue()
        self.state = STOPPED
        self._workers: list[Thread] = []
        self._running = Event()
        mirror.subscribe(self._on_change)

    @property
    def ready(self) -> bool:
        return self._running.is_set()

    def enqueue(self) -> None:
        self.queue.add(QUEUE_KEY)

    def _on_change(self, event_type: str, obj: object) -> None:
        log.debug("Membership %s event, scheduling resync", event_type)
        self.enqueue()

    def run(self, stop: Event) -> None:
        """Start the mirror and workers, then block until ``stop`` is set."""
        self.state = STARTING
        try:
            self.mirror.start(stop)
            if not self._wait_for_sync(stop):
                if stop.is_set():
                    return
                raise ControllerError("failed to sync mirror caches")

            # At least one pass even if no event arrives after startup.
            self.enqueue()

            for i in range(self.worker_count):
                t = Thread(target=self._run_worker, name=f"worker-{i}", daemon=True)
                t.start()
                self._workers.append(t)
            if self.resync_period_s > 0:
                Thread(target=self._resync_loop, args=(stop,), name="resync", daemon=True).start()

            self.state = RUNNING
            self._running.set()
            log.info("Controller running with %d workers", self.worker_count)
            stop.wait()
        finally:
            self._running.clear()
            self.queue.shut_down()
            for t in self._workers:
                t.join()
            self._workers.clear()
            self.state = STOPPED
            log.info("Controller stopped")

    def _wait_for_sync(self, stop: Event) -> bool:
        deadline = time.monotonic() + self.cache_sync_timeout_s
        while not stop.is_set():
            if self.mirror.wait_for_sync(min(0.5, max(0.0, deadline - time.monotonic()))):
                return True
            if time.monotonic() >= deadline:
                return False
        return False

    def _resync_loop(self, stop: Event) -> None:
        while not stop.wait(self.resync_period_s):
            self.enqueue()

    def _run_worker(self) -> None:
        while self.process_next_work_item():
            pass

    def process_next_work_item(self) -> bool:
        """Handle one queue item. False once the queue has shut down."""
        item, shutdown = self.queue.get()
        if shutdown:
            return False
        try:
            self.sync()
        except Exception as e:
            log.error(
                "Sync failed (retry %d): %s: %s",
                self.queue.num_requeues(item) + 1, type(e).__name__, e,
            )
            self.queue.add_rate_limited(item)
        else:
            self.queue.forget(item)
        finally:
            self.queue.done(item)
        return True

    def sync(self) -> None:
        slices = self.mirror.list_endpoint_slices()
        endpoints = self.mirror.list_endpoints()
        host_addresses = self.mirror.host_addresses()
        log.info("Reconciling backends: %d endpoint slices, %d endpoints", len(slices), len(endpoints))
        self.syncer.sync(slices, endpoints, host_addresses)
