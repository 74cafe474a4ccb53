import threading
import time

import pytest

from conftest import make_node, make_slice
from hbs.controller import QUEUE_KEY, RUNNING, STOPPED, Controller
from hbs.errors import ControllerError, SyncError, TransportError
from hbs.mirror import InMemoryMirror
from hbs.workqueue import ItemExponentialFailureRateLimiter, RateLimitingQueue


class RecordingSyncer:
    def __init__(self, failures=0):
        self.failures = failures
        self.calls = []
        self.called = threading.Event()

    def sync(self, slices, endpoints, host_addresses=None):
        self.calls.append(([s.name for s in slices], dict(host_addresses or {})))
        self.called.set()
        if self.failures > 0:
            self.failures -= 1
            raise SyncError("commit", TransportError("connection refused"))
        return []


class NeverSyncedMirror(InMemoryMirror):
    def start(self, stop):
        pass


def fast_queue():
    return RateLimitingQueue(ItemExponentialFailureRateLimiter(base_delay=0.01, max_delay=0.05))


def wait_for(cond, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if cond():
            return True
        time.sleep(0.01)
    return False


def test_notification_burst_collapses_to_one_item():
    mirror = InMemoryMirror()
    controller = Controller(mirror, RecordingSyncer())
    for i in range(25):
        mirror.apply(make_slice(f"slice-{i}", [([f"10.0.0.{i}"], True, None)]))
    mirror.apply(make_node("node-a", "192.168.0.1"))
    assert len(controller.queue) == 1


def test_unchanged_object_does_not_enqueue():
    mirror = InMemoryMirror()
    controller = Controller(mirror, RecordingSyncer())
    s = make_slice("slice", [(["10.0.0.1"], True, None)])
    mirror.apply(s)
    controller.queue.get()
    controller.queue.done(QUEUE_KEY)

    mirror.apply(make_slice("slice", [(["10.0.0.1"], True, None)]))
    assert len(controller.queue) == 0


def test_successful_pass_forgets_failures():
    mirror = InMemoryMirror()
    mirror.apply(make_slice("slice", [(["10.0.0.1"], True, "node-a")]))
    mirror.apply(make_node("node-a", "192.168.0.1"))
    syncer = RecordingSyncer()
    controller = Controller(mirror, syncer, queue=fast_queue())
    controller.queue.rate_limiter.when(QUEUE_KEY)
    controller.enqueue()

    assert controller.process_next_work_item() is True
    assert syncer.calls == [(["slice"], {"node-a": "192.168.0.1"})]
    assert controller.queue.num_requeues(QUEUE_KEY) == 0
    assert len(controller.queue) == 0


def test_failed_pass_is_retried_after_backoff():
    mirror = InMemoryMirror()
    syncer = RecordingSyncer(failures=1)
    controller = Controller(mirror, syncer, queue=fast_queue())
    controller.enqueue()

    assert controller.process_next_work_item() is True
    assert len(controller.queue) == 0  # not requeued immediately
    assert controller.queue.num_waiting() == 1
    assert controller.queue.num_requeues(QUEUE_KEY) == 1

    item, shutdown = controller.queue.get(timeout=1)
    assert (item, shutdown) == (QUEUE_KEY, False)
    controller.queue.done(item)


def test_process_returns_false_after_shutdown():
    controller = Controller(InMemoryMirror(), RecordingSyncer())
    controller.queue.shut_down()
    assert controller.process_next_work_item() is False


def test_run_syncs_on_start_and_on_change():
    mirror = InMemoryMirror()
    mirror.apply(make_slice("slice-a", [(["10.0.0.1"], True, None)]))
    syncer = RecordingSyncer()
    controller = Controller(mirror, syncer, worker_count=2, queue=fast_queue())
    stop = threading.Event()
    t = threading.Thread(target=controller.run, args=(stop,))
    t.start()
    try:
        assert wait_for(lambda: controller.ready)
        assert controller.state == RUNNING
        assert syncer.called.wait(2)

        mirror.apply(make_slice("slice-b", [(["10.0.0.2"], True, None)]))
        assert wait_for(lambda: any(names == ["slice-a", "slice-b"] for names, _ in syncer.calls))
    finally:
        stop.set()
        t.join(timeout=5)
    assert not t.is_alive()
    assert controller.state == STOPPED
    assert not controller.ready


def test_run_retries_failed_passes_until_success():
    mirror = InMemoryMirror()
    syncer = RecordingSyncer(failures=3)
    controller = Controller(mirror, syncer, worker_count=1, queue=fast_queue())
    stop = threading.Event()
    t = threading.Thread(target=controller.run, args=(stop,))
    t.start()
    try:
        assert wait_for(lambda: len(syncer.calls) >= 4)
        assert wait_for(lambda: controller.queue.num_requeues(QUEUE_KEY) == 0)
    finally:
        stop.set()
        t.join(timeout=5)


def test_periodic_resync_without_events():
    syncer = RecordingSyncer()
    controller = Controller(InMemoryMirror(), syncer, worker_count=1, resync_period_s=0.05)
    stop = threading.Event()
    t = threading.Thread(target=controller.run, args=(stop,))
    t.start()
    try:
        assert wait_for(lambda: len(syncer.calls) >= 3)
    finally:
        stop.set()
        t.join(timeout=5)


def test_run_fails_when_mirror_never_syncs():
    syncer = RecordingSyncer()
    controller = Controller(NeverSyncedMirror(), syncer, cache_sync_timeout_s=0.1)
    with pytest.raises(ControllerError):
        controller.run(threading.Event())
    assert syncer.calls == []
    assert controller.state == STOPPED


def test_stop_during_startup_is_not_an_error():
    stop = threading.Event()
    stop.set()
    syncer = RecordingSyncer()
    controller = Controller(NeverSyncedMirror(), syncer, cache_sync_timeout_s=5)
    controller.run(stop)
    assert syncer.calls == []
    assert controller.state == STOPPED


def test_injected_queue_is_used_even_when_empty():
    q = RateLimitingQueue(ItemExponentialFailureRateLimiter(base_delay=5.0))
    controller = Controller(InMemoryMirror(), RecordingSyncer(), queue=q)
    assert controller.queue is q
    assert controller.queue.rate_limiter.base_delay == 5.0


class BlockingSyncer:
    """Holds its pass open until the stop event fires, then finishes it."""

    def __init__(self, stop):
        self.stop = stop
        self.started = threading.Event()
        self.log = []

    def sync(self, slices, endpoints, host_addresses=None):
        self.started.set()
        self.stop.wait(5)
        time.sleep(0.1)
        self.log.append("pass finished")


def test_stop_lets_the_running_pass_finish():
    stop = threading.Event()
    syncer = BlockingSyncer(stop)
    controller = Controller(InMemoryMirror(), syncer, worker_count=2)

    def run():
        controller.run(stop)
        syncer.log.append("run returned")

    t = threading.Thread(target=run)
    t.start()
    assert syncer.started.wait(2)
    stop.set()
    t.join(timeout=5)

    assert not t.is_alive()
    assert syncer.log == ["pass finished", "run returned"]
    assert controller.state == STOPPED
    assert controller.queue.shutting_down()
    controller.enqueue()
    assert len(controller.queue) == 0


def test_mirror_start_failure_propagates():
    class BrokenMirror(InMemoryMirror):
        def start(self, stop):
            raise ControllerError("load Kubernetes config from in-cluster config: no service host")

    controller = Controller(BrokenMirror(), RecordingSyncer())
    with pytest.raises(ControllerError):
        controller.run(threading.Event())
    assert controller.state == STOPPED
